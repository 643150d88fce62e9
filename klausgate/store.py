"""Routing table keys, entries and the store interface.

A routing entry maps (channel, channel id, user, thread) to the klaus
instance that owns the conversation.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_FRACTION = re.compile(r"\.(\d+)")


class EntryNotFoundError(LookupError):
    """Raised when no routing entry matches a key."""

    def __init__(self, message: str = "routing entry not found") -> None:
        super().__init__(message)


def _escape(part: str) -> str:
    return part.replace("\\", "\\\\").replace("|", "\\p")


def _unescape(part: str) -> str:
    return part.replace("\\p", "|").replace("\\\\", "\\")


@dataclass(frozen=True)
class Key:
    """Identifies a conversation across channels."""

    channel: str = ""
    channel_id: str = ""
    user_id: str = ""
    thread_id: str = ""

    def __str__(self) -> str:
        """Canonical serialised form; stable, used as the storage key."""
        parts = (self.channel, self.channel_id, self.user_id, self.thread_id)
        return "|".join(_escape(part) for part in parts)


def parse_key(s: str) -> Key:
    """Invert str(Key)."""
    parts = s.split("|")
    if len(parts) != 4:
        raise ValueError(f"invalid key {s!r}: expected 4 parts")
    return Key(*(_unescape(part) for part in parts))


def _to_nanoseconds(delta: timedelta) -> int:
    return (delta // timedelta(microseconds=1)) * 1000


def _parse_time(value: str) -> datetime:
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Entry:
    """An instance assignment. Datetimes are timezone-aware."""

    instance: str = ""
    created_at: datetime = ZERO_TIME
    last_seen: datetime = ZERO_TIME
    ttl: timedelta = timedelta(0)

    def expired(self, now: datetime) -> bool:
        """Whether the entry has aged past its TTL; a zero TTL never expires."""
        if self.ttl <= timedelta(0):
            return False
        return now - self.last_seen > self.ttl

    def to_json(self) -> str:
        """Serialise to JSON; the TTL is written in nanoseconds."""
        return json.dumps(
            {
                "instance": self.instance,
                "created_at": self.created_at.isoformat(),
                "last_seen": self.last_seen.isoformat(),
                "ttl": _to_nanoseconds(self.ttl),
            }
        )

    @staticmethod
    def from_json(data: str | bytes) -> "Entry":
        """Parse the JSON produced by to_json; missing fields take zero values."""
        raw = json.loads(data)
        if not isinstance(raw, dict):
            raise ValueError("routing entry must be a JSON object")
        created = raw.get("created_at")
        seen = raw.get("last_seen")
        return Entry(
            instance=str(raw.get("instance") or ""),
            created_at=_parse_time(created) if created else ZERO_TIME,
            last_seen=_parse_time(seen) if seen else ZERO_TIME,
            ttl=timedelta(microseconds=int(raw.get("ttl") or 0) // 1000),
        )


@dataclass(frozen=True)
class KeyEntry:
    """A key paired with its entry, as returned by Store.list."""

    key: Key
    entry: Entry


class Store(ABC):
    """A routing-table backend."""

    @abstractmethod
    def get(self, key: Key) -> Optional[Entry]:
        """Return the live entry for key, or None when absent or expired."""

    @abstractmethod
    def put(self, key: Key, entry: Entry) -> None:
        """Insert or replace the entry for key."""

    @abstractmethod
    def delete(self, key: Key) -> None:
        """Remove the entry for key; missing keys are not an error."""

    @abstractmethod
    def list(self) -> list[KeyEntry]:
        """Return every live entry."""

    @abstractmethod
    def close(self) -> None:
        """Release resources held by the store."""