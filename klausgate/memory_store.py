"""In-process routing store with TTL eviction."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from klausgate.store import Entry, Key, KeyEntry, Store, parse_key

EVICTION_INTERVAL = 60.0
"""Seconds between background eviction passes."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore(Store):
    """A thread-safe in-memory routing store.

    A background eviction thread starts on the first put and stops on close.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._lock = threading.RLock()
        self._data: dict[str, Entry] = {}
        self._clock = clock or _utcnow
        self._stop = threading.Event()
        self._evictor: Optional[threading.Thread] = None

    def get(self, key: Key) -> Optional[Entry]:
        with self._lock:
            entry = self._data.get(str(key))
            if entry is None or entry.expired(self._clock()):
                return None
            return entry

    def put(self, key: Key, entry: Entry) -> None:
        with self._lock:
            self._data[str(key)] = entry
            if self._evictor is None and not self._stop.is_set():
                self._evictor = threading.Thread(
                    target=self._evict_loop, name="memory-store-evict", daemon=True
                )
                self._evictor.start()

    def delete(self, key: Key) -> None:
        with self._lock:
            self._data.pop(str(key), None)

    def list(self) -> list[KeyEntry]:
        with self._lock:
            now = self._clock()
            return [
                KeyEntry(parse_key(text), entry)
                for text, entry in self._data.items()
                if not entry.expired(now)
            ]

    def close(self) -> None:
        self._stop.set()
        evictor = self._evictor
        if evictor is not None and evictor is not threading.current_thread():
            evictor.join()

    def evict_now(self) -> None:
        """Delete every expired entry synchronously."""
        with self._lock:
            now = self._clock()
            for text in [t for t, e in self._data.items() if e.expired(now)]:
                del self._data[text]

    def _evict_loop(self) -> None:
        while not self._stop.wait(EVICTION_INTERVAL):
            self.evict_now()

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()