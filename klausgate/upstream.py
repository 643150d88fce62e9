"""Route instance requests directly or through an agentgateway upstream."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from requests.structures import CaseInsensitiveDict

from klausgate.lifecycle import InstanceRef

INSTANCE_HEADER = "X-Klaus-Instance"
"""The header agentgateway inspects to pick a backend."""


@dataclass
class OutgoingRequest:
    """An HTTP request about to be sent to an instance."""

    method: str
    url: str
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: bytes = b""


@dataclass(frozen=True)
class Agentgateway:
    """Rewrites instance requests to go through an agentgateway deployment."""

    base_url: str

    def apply(self, request: OutgoingRequest, ref: InstanceRef) -> None:
        """Point request at the agentgateway and add the instance header.

        The original path is kept, behind the base URL's path if it has one.
        """
        base = urlsplit(self.base_url)
        target = urlsplit(request.url)
        base_path = base.path.rstrip("/")
        path = base_path + target.path if base_path else target.path
        host = base.netloc.rpartition("@")[2]
        request.url = urlunsplit((base.scheme, host, path, target.query, target.fragment))
        request.headers[INSTANCE_HEADER] = ref.name

    def url(self) -> str:
        """The configured base URL."""
        return self.base_url


def parse_upstream(raw: str) -> Optional[Agentgateway]:
    """Return an Agentgateway for raw, or None when raw is blank (direct mode)."""
    raw = raw.strip()
    if not raw:
        return None
    urlsplit(raw)
    return Agentgateway(base_url=raw)