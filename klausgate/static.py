"""A lifecycle manager serving a fixed set of instances declared at startup.

Create returns the existing entry when the name matches; when exactly one
instance is configured it is used for any name. It never provisions new
instances.
"""

from __future__ import annotations

import threading

from klausgate.lifecycle import CreateSpec, InstanceNotFoundError, InstanceRef, Manager


class StaticManager(Manager):
    """Holds the instance mapping in memory."""

    def __init__(self, spec: str = "") -> None:
        """Parse a comma-separated ``name=baseURL[,...]`` spec."""
        self._lock = threading.RLock()
        self._instances: dict[str, InstanceRef] = {}
        for raw in spec.split(","):
            entry = raw.strip()
            if not entry:
                continue
            name, sep, url = entry.partition("=")
            name, url = name.strip(), url.strip()
            if not sep or not name or not url:
                raise ValueError(f"static: invalid entry {raw!r}: expected name=baseURL")
            self._instances[name] = InstanceRef(name=name, base_url=url, status="ready")

    def get(self, name: str) -> InstanceRef:
        with self._lock:
            try:
                return self._instances[name]
            except KeyError:
                raise InstanceNotFoundError(name) from None

    def create(self, spec: CreateSpec) -> InstanceRef:
        with self._lock:
            ref = self._instances.get(spec.name)
            if ref is not None:
                return ref
            if len(self._instances) == 1:
                return next(iter(self._instances.values()))
        raise ValueError(
            f"static: refusing to create {spec.name!r}: not in the pre-configured instance set"
        )

    def list(self) -> list[InstanceRef]:
        with self._lock:
            return [*self._instances.values()]

    def stop(self, name: str) -> None:
        """Do nothing; static instances are managed externally."""