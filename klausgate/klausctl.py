"""Lifecycle manager backed by the local klausctl command-line tool.

It runs ``klausctl <subcommand> -o json`` and parses the output.
"""

from __future__ import annotations

import json
import subprocess
from abc import ABC, abstractmethod
from typing import Any, Optional

from klausgate.lifecycle import CreateSpec, InstanceNotFoundError, InstanceRef, Manager


class KlausctlError(RuntimeError):
    """Raised when klausctl fails or prints output that cannot be decoded."""


class Runner(ABC):
    """Executes a command and returns its standard output."""

    @abstractmethod
    def run(self, name: str, *args: str) -> bytes:
        """Run name with args; raise on failure."""


class SubprocessRunner(Runner):
    """Runs commands as child processes."""

    def run(self, name: str, *args: str) -> bytes:
        try:
            result = subprocess.run([name, *args], capture_output=True, check=False)
        except OSError as exc:
            raise KlausctlError(f"klausctl {' '.join(args)}: {exc}") from exc
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise KlausctlError(
                f"klausctl {' '.join(args)}: exit status {result.returncode}: {stderr}"
            )
        return result.stdout


def _to_ref(raw: Any, what: str) -> InstanceRef:
    if not isinstance(raw, dict):
        raise KlausctlError(f"decode klausctl {what}: expected a JSON object")
    return InstanceRef(
        name=str(raw.get("name") or ""),
        base_url=str(raw.get("base_url") or ""),
        mcp_url=str(raw.get("mcp_url") or ""),
        status=str(raw.get("status") or ""),
    )


def _decode(out: bytes, what: str) -> Any:
    try:
        return json.loads(out)
    except ValueError as exc:
        raise KlausctlError(f"decode klausctl {what}: {exc}") from exc


class KlausctlManager(Manager):
    """Manages instances by running klausctl."""

    def __init__(self, binary: str = "klausctl", runner: Optional[Runner] = None) -> None:
        self.binary = binary or "klausctl"
        self.runner = runner or SubprocessRunner()

    def get(self, name: str) -> InstanceRef:
        """Look the instance up via ``klausctl status``."""
        try:
            out = self.runner.run(self.binary, "status", name, "-o", "json")
        except Exception as exc:
            if "not found" in str(exc):
                raise InstanceNotFoundError(name) from exc
            raise
        ref = _to_ref(_decode(out, "status"), "status")
        if not ref.name:
            raise InstanceNotFoundError(name)
        return ref

    def create(self, spec: CreateSpec) -> InstanceRef:
        """Start an instance via ``klausctl run`` with the spec as flags."""
        if not spec.name:
            raise ValueError("klausctl: spec.name is required")
        args = ["run", spec.name, "-o", "json"]
        for flag, value in (
            ("--channel", spec.channel),
            ("--channel-id", spec.channel_id),
            ("--user", spec.user_id),
            ("--thread", spec.thread_id),
        ):
            if value:
                args += [flag, value]
        out = self.runner.run(self.binary, *args)
        return _to_ref(_decode(out, "run"), "run")

    def list(self) -> list[InstanceRef]:
        """List instances via ``klausctl list``."""
        raw = _decode(self.runner.run(self.binary, "list", "-o", "json"), "list")
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise KlausctlError("decode klausctl list: expected a JSON array")
        return [_to_ref(item, "list") for item in raw]

    def stop(self, name: str) -> None:
        """Stop an instance via ``klausctl stop``."""
        self.runner.run(self.binary, "stop", name)