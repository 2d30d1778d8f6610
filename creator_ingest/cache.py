from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Protocol

from .errors import StorageError

ClockFn = Callable[[], float]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: float


class ResponseCache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    def clear(self, prefix: str | None = None) -> int: ...


def cache_key(platform: str, call: str, identity: str, cursor: str | None = None) -> str:
    """
    Build a cache key for one logical upstream request.

    The cursor is part of the key only for non-first pages.
    """
    base = f"{platform}:{call}:{(identity or '').strip()}"
    c = (cursor or "").strip()
    return f"{base}:{c}" if c else base


class MemoryResponseCache:
    """
    Process-wide TTL cache held in a dict.

    Expiry is passive: an expired entry is dropped when it is next read.
    """

    def __init__(self, *, clock: ClockFn | None = None) -> None:
        self._clock = clock or time.monotonic
        self._entries: dict[str, CacheEntry] = {}
        self._lock = Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        expires_at = self._clock() + max(0.0, float(ttl_seconds))
        with self._lock:
            self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)

    def clear(self, prefix: str | None = None) -> int:
        with self._lock:
            if not prefix:
                n = len(self._entries)
                self._entries.clear()
                return n
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SQLiteResponseCache:
    """
    TTL cache persisted in the `cache_entries` table of the content database.

    Uses wall-clock time so entries survive process restarts.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        lock: Any | None = None,
        clock: ClockFn | None = None,
    ) -> None:
        self._conn = conn
        self._lock = lock or Lock()
        self._clock = clock or time.time

    def get(self, key: str) -> Any | None:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value_json, expires_at FROM cache_entries WHERE key = ?",
                    (key,),
                ).fetchone()
                if row is None:
                    return None
                if self._clock() >= float(row[1]):
                    with self._conn:
                        self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                    return None
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to read cache entry: {e}") from e

        return json.loads(row[0])

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        expires_at = self._clock() + max(0.0, float(ttl_seconds))
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO cache_entries(key, value_json, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                      value_json = excluded.value_json,
                      expires_at = excluded.expires_at
                    """.strip(),
                    (key, payload, expires_at),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to write cache entry: {e}") from e

    def clear(self, prefix: str | None = None) -> int:
        try:
            with self._lock, self._conn:
                if prefix:
                    cur = self._conn.execute(
                        "DELETE FROM cache_entries WHERE substr(key, 1, ?) = ?",
                        (len(prefix), prefix),
                    )
                else:
                    cur = self._conn.execute("DELETE FROM cache_entries")
                return int(cur.rowcount)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to clear cache entries: {e}") from e
