"""Lifecycle manager backed by the klaus-operator MCP endpoint.

It speaks JSON-RPC over HTTP and calls the MCP tools ``create_instance``,
``get_instance``, ``list_instances`` and ``stop_instance``.
"""

from __future__ import annotations

import itertools
import json
import threading
from typing import Any, Optional

import requests

from klausgate.lifecycle import CreateSpec, InstanceNotFoundError, InstanceRef, Manager

_SNIPPET_LIMIT = 1024


class OperatorError(RuntimeError):
    """Raised when the operator rejects a call or replies with something unusable."""


def _to_ref(raw: Any, tool: str) -> InstanceRef:
    if raw is None:
        return InstanceRef(name="")
    if not isinstance(raw, dict):
        raise OperatorError(f"decode {tool}: expected a JSON object")
    return InstanceRef(
        name=str(raw.get("name") or ""),
        base_url=str(raw.get("base_url") or ""),
        mcp_url=str(raw.get("mcp_url") or ""),
        status=str(raw.get("status") or ""),
    )


class OperatorManager(Manager):
    """Manages instances through the operator's MCP tools."""

    def __init__(
        self,
        endpoint: str,
        token: str = "",
        session: Optional[requests.Session] = None,
    ) -> None:
        if not endpoint:
            raise ValueError("operator: endpoint is required")
        self._endpoint = endpoint
        self._token = token
        self._session = session or requests.Session()
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    def _call(self, tool: str, args: dict[str, Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": "tools/call",
            "params": {"name": tool, "arguments": args},
        }
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        with self._session.post(
            self._endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            stream=True,
        ) as response:
            if response.status_code >= 300:
                snippet = next(response.iter_content(_SNIPPET_LIMIT), b"")
                raise OperatorError(
                    f"operator {tool}: status {response.status_code}: "
                    f"{snippet.decode('utf-8', errors='replace')}"
                )
            try:
                reply = json.loads(response.content)
            except ValueError as exc:
                raise OperatorError(f"decode {tool}: {exc}") from exc
        if not isinstance(reply, dict):
            raise OperatorError(f"decode {tool}: expected a JSON object")
        error = reply.get("error")
        if error is not None:
            if not isinstance(error, dict):
                raise OperatorError(f"decode {tool}: malformed error")
            if error.get("code") == 404:
                raise InstanceNotFoundError()
            raise OperatorError(f"operator {tool}: {error.get('message', '')}")
        return reply.get("result")

    def get(self, name: str) -> InstanceRef:
        """Look an instance up via get_instance."""
        ref = _to_ref(self._call("get_instance", {"name": name}), "get_instance")
        if not ref.name:
            raise InstanceNotFoundError(name)
        return ref

    def create(self, spec: CreateSpec) -> InstanceRef:
        """Create an instance via create_instance."""
        args: dict[str, Any] = {
            "name": spec.name,
            "channel": spec.channel,
            "channel_id": spec.channel_id,
            "user_id": spec.user_id,
            "thread_id": spec.thread_id,
        }
        if spec.metadata:
            args["metadata"] = dict(spec.metadata)
        return _to_ref(self._call("create_instance", args), "create_instance")

    def list(self) -> list[InstanceRef]:
        """List instances via list_instances."""
        raw = self._call("list_instances", {})
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise OperatorError("decode list_instances: expected a JSON array")
        return [_to_ref(item, "list_instances") for item in raw]

    def stop(self, name: str) -> None:
        """Stop an instance via stop_instance."""
        self._call("stop_instance", {"name": name})