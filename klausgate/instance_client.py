"""HTTP client for a klaus instance's chat-completions and MCP endpoints."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Optional, Protocol
from urllib.parse import urlsplit, urlunsplit

import requests

from klausgate.lifecycle import InstanceRef
from klausgate.upstream import OutgoingRequest

_SNIPPET_LIMIT = 1024
_PLACEHOLDER_ORIGIN = "http://upstream.invalid"


class InstanceError(RuntimeError):
    """Raised when an instance call fails."""


class UpstreamRewriter(Protocol):
    """Adapts an outgoing request for a fronting proxy."""

    def apply(self, request: OutgoingRequest, ref: InstanceRef) -> None: ...


@dataclass
class Message:
    """A single stored turn as returned by the MCP ``messages`` tool."""

    role: str = ""
    content: str = ""
    extra: Any = None


@dataclass
class MessagesResponse:
    """What the MCP ``messages`` tool returns."""

    messages: list[Message] = field(default_factory=list)


def _snippet(response: requests.Response) -> str:
    return next(response.iter_content(_SNIPPET_LIMIT), b"").decode("utf-8", errors="replace")


class InstanceClient:
    """Issues HTTP calls to klaus instances; safe to share."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        upstream: Optional[UpstreamRewriter] = None,
    ) -> None:
        self.session = session or requests.Session()
        self.upstream = upstream

    def _new_request(self, method: str, ref: InstanceRef, path: str, body: bytes) -> OutgoingRequest:
        if self.upstream is not None:
            request = OutgoingRequest(method, _PLACEHOLDER_ORIGIN + path, body=body)
            self.upstream.apply(request, ref)
            return request
        try:
            base = urlsplit(ref.base_url)
        except ValueError as exc:
            raise InstanceError(f"parse base url: {exc}") from exc
        url = urlunsplit(base._replace(path=base.path.rstrip("/") + path))
        return OutgoingRequest(method, url, body=body)

    def _send(self, request: OutgoingRequest) -> requests.Response:
        return self.session.request(
            request.method,
            request.url,
            headers=dict(request.headers),
            data=request.body,
            stream=True,
        )

    def stream_completion(self, ref: InstanceRef, body: bytes) -> BinaryIO:
        """POST body to /v1/chat/completions and return the raw response stream.

        The stream is usually server-sent events; the caller closes it.
        """
        if not ref.base_url and self.upstream is None:
            raise InstanceError("instance: base URL is empty and no upstream is configured")
        request = self._new_request("POST", ref, "/v1/chat/completions", body)
        request.headers["Content-Type"] = "application/json"
        request.headers["Accept"] = "text/event-stream"
        response = self._send(request)
        if response.status_code >= 300:
            snippet = _snippet(response)
            response.close()
            raise InstanceError(
                f"instance {ref.name}: status {response.status_code}: {snippet.strip()}"
            )
        response.raw.decode_content = True
        return response.raw

    def call_mcp_tool(
        self, ref: InstanceRef, tool: str, args: Optional[dict[str, Any]] = None
    ) -> Any:
        """POST a tools/call request to the instance's MCP endpoint; return the result."""
        endpoint = ref.mcp_url
        if not endpoint:
            if not ref.base_url:
                raise InstanceError("instance: neither MCP URL nor base URL is set")
            endpoint = ref.base_url.rstrip("/") + "/mcp"
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "tools/call",
            "params": {"name": tool, "arguments": args},
        }
        request = OutgoingRequest("POST", endpoint, body=json.dumps(payload).encode("utf-8"))
        request.headers["Content-Type"] = "application/json"
        if self.upstream is not None:
            self.upstream.apply(request, ref)
        with self._send(request) as response:
            if response.status_code >= 300:
                raise InstanceError(
                    f"mcp {tool}: status {response.status_code}: {_snippet(response)}"
                )
            try:
                envelope = json.loads(response.content)
            except ValueError as exc:
                raise InstanceError(f"mcp {tool}: decode: {exc}") from exc
        if not isinstance(envelope, dict):
            raise InstanceError(f"mcp {tool}: decode: expected a JSON object")
        error = envelope.get("error")
        if error is not None:
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            raise InstanceError(f"mcp {tool}: {message}")
        return envelope.get("result")

    def messages(self, ref: InstanceRef, thread_id: str = "") -> MessagesResponse:
        """Fetch the stored conversation backlog of an instance."""
        args: dict[str, Any] = {}
        if thread_id:
            args["thread_id"] = thread_id
        raw = self.call_mcp_tool(ref, "messages", args)
        if raw is None:
            return MessagesResponse()
        if not isinstance(raw, dict):
            raise InstanceError("mcp messages: expected a JSON object")
        items = raw.get("messages") or []
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            raise InstanceError("mcp messages: malformed messages list")
        return MessagesResponse(
            messages=[
                Message(
                    role=str(item.get("role") or ""),
                    content=str(item.get("content") or ""),
                    extra=item.get("extra"),
                )
                for item in items
            ]
        )