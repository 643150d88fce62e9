"""SQLite-backed routing store that survives process restarts."""

from __future__ import annotations

import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from klausgate.store import Entry, Key, KeyEntry, Store, parse_key

EVICTION_INTERVAL = 60.0
"""Seconds between background eviction passes."""

_SCHEMA = "CREATE TABLE IF NOT EXISTS routes (key TEXT PRIMARY KEY, value TEXT NOT NULL)"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqliteStore(Store):
    """A routing store persisted in one SQLite table ("routes").

    Keys are canonical key strings; values are JSON-encoded entries.
    """

    def __init__(
        self,
        path: Union[str, "os.PathLike[str]"],
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._path = os.fspath(path)
        self._clock = clock or _utcnow
        if self._path != ":memory:" and not os.path.exists(self._path):
            os.close(os.open(self._path, os.O_CREAT | os.O_RDWR, 0o600))
        self._conn = sqlite3.connect(self._path, timeout=5.0, check_same_thread=False)
        try:
            with self._conn:
                self._conn.execute(_SCHEMA)
        except sqlite3.Error:
            self._conn.close()
            raise
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._evictor = threading.Thread(
            target=self._evict_loop, name="sqlite-store-evict", daemon=True
        )
        self._evictor.start()

    def get(self, key: Key) -> Optional[Entry]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM routes WHERE key = ?", (str(key),)
            ).fetchone()
        if row is None:
            return None
        entry = Entry.from_json(row[0])
        if entry.expired(self._clock()):
            return None
        return entry

    def put(self, key: Key, entry: Entry) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO routes (key, value) VALUES (?, ?)",
                (str(key), entry.to_json()),
            )

    def delete(self, key: Key) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM routes WHERE key = ?", (str(key),))

    def list(self) -> list[KeyEntry]:
        """Return live entries ordered by key; expired ones are left for evict."""
        now = self._clock()
        with self._lock:
            rows = self._conn.execute("SELECT key, value FROM routes ORDER BY key").fetchall()
        out = []
        for text, value in rows:
            entry = Entry.from_json(value)
            if entry.expired(now):
                continue
            out.append(KeyEntry(parse_key(text), entry))
        return out

    def evict(self) -> None:
        """Delete every expired entry."""
        now = self._clock()
        with self._lock:
            rows = self._conn.execute("SELECT key, value FROM routes").fetchall()
            stale = [(text,) for text, value in rows if Entry.from_json(value).expired(now)]
            if not stale:
                return
            with self._conn:
                self._conn.executemany("DELETE FROM routes WHERE key = ?", stale)

    def close(self) -> None:
        """Stop the eviction thread and close the database."""
        self._stop.set()
        if self._evictor is not threading.current_thread():
            self._evictor.join()
        with self._lock:
            self._conn.close()

    def _evict_loop(self) -> None:
        while not self._stop.wait(EVICTION_INTERVAL):
            try:
                self.evict()
            except (sqlite3.Error, ValueError):
                continue

    def __enter__(self) -> "SqliteStore":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()