"""Resolve (channel, channel id, user, thread) to a klaus instance."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from klausgate.lifecycle import CreateSpec, InstanceNotFoundError, InstanceRef, Manager
from klausgate.store import Entry, Key, Store


class RouteNotFoundError(LookupError):
    """Raised when a key is absent and auto-create is off."""

    def __init__(self, message: str = "route not found") -> None:
        super().__init__(message)


@dataclass
class InboundMessage:
    """Routing input. name_hint names the instance if one is created."""

    channel: str = ""
    channel_id: str = ""
    user_id: str = ""
    thread_id: str = ""
    name_hint: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    def key(self) -> Key:
        """The store key for this message."""
        return Key(self.channel, self.channel_id, self.user_id, self.thread_id)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _safe(text: str) -> str:
    out = []
    for byte in text.encode("utf-8"):
        char = chr(byte)
        if "a" <= char <= "z" or "0" <= char <= "9" or char == "-":
            out.append(char)
        elif "A" <= char <= "Z":
            out.append(char.lower())
        else:
            out.append("-")
    return "".join(out) or "x"


def synth_name(msg: InboundMessage) -> str:
    """A deterministic instance name derived from the message's key."""
    base = f"{_safe(msg.channel)}-{_safe(msg.channel_id)}-{_safe(msg.thread_id)}"
    return "klaus-" + base[:60]


class Router:
    """Resolves inbound messages to instances."""

    def __init__(
        self,
        store: Store,
        lifecycle: Manager,
        auto_create: bool = False,
        default_ttl: timedelta = timedelta(0),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.auto_create = auto_create
        self.default_ttl = default_ttl
        self._clock = clock or _utcnow

    def resolve(self, msg: InboundMessage) -> InstanceRef:
        """Return the instance for msg, creating one on a miss when enabled.

        On a hit the entry's last_seen is refreshed.
        """
        key = msg.key()
        entry = self.store.get(key)
        if entry is not None:
            self.store.put(key, dataclasses.replace(entry, last_seen=self._clock()))
            try:
                return self.lifecycle.get(entry.instance)
            except InstanceNotFoundError:
                if not self.auto_create:
                    raise RouteNotFoundError() from None

        if not self.auto_create:
            raise RouteNotFoundError()

        ref = self.lifecycle.create(
            CreateSpec(
                name=msg.name_hint or synth_name(msg),
                channel=msg.channel,
                channel_id=msg.channel_id,
                user_id=msg.user_id,
                thread_id=msg.thread_id,
                metadata=msg.metadata,
            )
        )
        now = self._clock()
        self.store.put(
            key,
            Entry(instance=ref.name, created_at=now, last_seen=now, ttl=self.default_ttl),
        )
        return ref