"""Routing store kept in a single Kubernetes-style ConfigMap.

Every entry lives as one key of the ConfigMap's data. Writes use optimistic
concurrency via the resource version and are retried on conflict.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from klausgate.store import Entry, Key, KeyEntry, Store, parse_key

DEFAULT_CONFIGMAP_NAME = "klaus-gateway-routes"
DEFAULT_RETRIES = 5


class ConfigMapNotFoundError(LookupError):
    """Raised by a client when the ConfigMap does not exist."""


class ConfigMapExistsError(Exception):
    """Raised by a client when creating a ConfigMap that already exists."""


class ConfigMapConflictError(Exception):
    """Raised when a write loses an optimistic-concurrency race."""


@dataclass
class ConfigMap:
    """A named string-to-string mapping with a resource version."""

    name: str
    namespace: str = ""
    data: dict[str, str] = field(default_factory=dict)
    resource_version: str = ""


class ConfigMapClient(ABC):
    """The subset of the cluster API the store needs."""

    @abstractmethod
    def get(self, namespace: str, name: str) -> ConfigMap:
        """Return the ConfigMap or raise ConfigMapNotFoundError."""

    @abstractmethod
    def create(self, config_map: ConfigMap) -> ConfigMap:
        """Create the ConfigMap or raise ConfigMapExistsError."""

    @abstractmethod
    def update(self, config_map: ConfigMap) -> ConfigMap:
        """Write the ConfigMap back or raise ConfigMapConflictError."""


class ConfigMapStore(Store):
    """Persists routes in one ConfigMap."""

    def __init__(
        self,
        client: ConfigMapClient,
        namespace: str = "",
        name: str = DEFAULT_CONFIGMAP_NAME,
        retries: int = DEFAULT_RETRIES,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._name = name or DEFAULT_CONFIGMAP_NAME
        self._retries = retries if retries > 0 else DEFAULT_RETRIES
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        """The name of the backing ConfigMap."""
        return self._name

    def get(self, key: Key) -> Optional[Entry]:
        try:
            config_map = self._client.get(self._namespace, self._name)
        except ConfigMapNotFoundError:
            return None
        raw = config_map.data.get(str(key))
        if raw is None:
            return None
        entry = Entry.from_json(raw)
        if entry.expired(datetime.now(timezone.utc)):
            return None
        return entry

    def put(self, key: Key, entry: Entry) -> None:
        encoded = entry.to_json()

        def apply(config_map: ConfigMap) -> None:
            config_map.data[str(key)] = encoded

        with self._lock:
            self._mutate(apply)

    def delete(self, key: Key) -> None:
        def apply(config_map: ConfigMap) -> None:
            config_map.data.pop(str(key), None)

        with self._lock:
            self._mutate(apply)

    def list(self) -> list[KeyEntry]:
        try:
            config_map = self._client.get(self._namespace, self._name)
        except ConfigMapNotFoundError:
            return []
        now = datetime.now(timezone.utc)
        out = []
        for text, raw in config_map.data.items():
            key = parse_key(text)
            entry = Entry.from_json(raw)
            if entry.expired(now):
                continue
            out.append(KeyEntry(key, entry))
        return out

    def close(self) -> None:
        """Do nothing; the client belongs to the caller."""

    def _mutate(self, apply: Callable[[ConfigMap], None]) -> None:
        for _ in range(self._retries):
            try:
                config_map = self._client.get(self._namespace, self._name)
            except ConfigMapNotFoundError:
                config_map = ConfigMap(name=self._name, namespace=self._namespace)
                apply(config_map)
                try:
                    self._client.create(config_map)
                except ConfigMapExistsError:
                    continue
                return
            if config_map.data is None:
                config_map.data = {}
            apply(config_map)
            try:
                self._client.update(config_map)
            except ConfigMapConflictError:
                continue
            return
        raise ConfigMapConflictError(
            f"configmap {self._namespace}/{self._name}: conflict retry limit exceeded"
        )