"""
cache/store.py -- Pluggable, non-authoritative cache for the auth core.

Two backends with the same interface:
  MemoryCache  -- process-local dict with per-key locks (default).
  SQLiteCache  -- SQLite file shared by every worker process on one host.

Used to accelerate revocation lookups and to hold rate-limit windows. The
persistent auth store stays the source of truth for anything security
relevant: a cache miss or a cache failure never turns a deny into an allow.

Every operation is bounded by `timeout` seconds. Backend failures surface as
CacheUnavailableError so callers can apply their configured fail mode.

Usage:
    cache = MemoryCache(clock=SystemClock())
    cache.set("revoked:abc", True, ttl=3600)
    cache.get("revoked:abc")                 # True, or None once expired
    cache.update("rl:ip:1.2.3.4", mutate, ttl=60)
    cache.purge_expired()                    # call periodically to trim old entries
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Optional

from auth.errors import CacheUnavailableError
from core.clock import Clock, SystemClock
from core.config import Settings

# mutate(current_value_or_None) -> (new_value_or_None, result)
# A new value of None deletes the entry.
Mutator = Callable[[Optional[Any]], "tuple[Optional[Any], Any]"]


class MemoryCache:
    """Process-local cache. Keys hash onto a fixed pool of striped locks,
    so lock memory stays constant however many keys (jtis, IPs) pass through.
    """

    def __init__(self, clock: Optional[Clock] = None, timeout: float = 5.0, stripes: int = 64) -> None:
        self.clock = clock or SystemClock()
        self.timeout = timeout
        self._data: dict[str, tuple[Any, float]] = {}
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def _acquire(self, key: str) -> threading.Lock:
        lock = self._lock_for(key)
        if not lock.acquire(timeout=self.timeout):
            raise CacheUnavailableError(f"timed out waiting for cache key {key!r}")
        return lock

    def _live(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock.now() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value if present and not expired."""
        lock = self._acquire(key)
        try:
            return self._live(key)
        finally:
            lock.release()

    def set(self, key: str, value: Any, ttl: float) -> None:
        lock = self._acquire(key)
        try:
            self._data[key] = (value, self.clock.now() + ttl)
        finally:
            lock.release()

    def delete(self, key: str) -> None:
        lock = self._acquire(key)
        try:
            self._data.pop(key, None)
        finally:
            lock.release()

    def update(self, key: str, mutate: Mutator, ttl: float) -> Any:
        """Atomic read-modify-write of one key. Returns mutate()'s result."""
        lock = self._acquire(key)
        try:
            new_value, result = mutate(self._live(key))
            if new_value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = (new_value, self.clock.now() + ttl)
            return result
        finally:
            lock.release()

    def purge_expired(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self.clock.now()
        removed = 0
        for key in [k for k, (_, exp) in list(self._data.items()) if now >= exp]:
            lock = self._acquire(key)
            try:
                entry = self._data.get(key)
                if entry is not None and now >= entry[1]:
                    del self._data[key]
                    removed += 1
            finally:
                lock.release()
        return removed

    def close(self) -> None:
        self._data.clear()


_DDL = """
CREATE TABLE IF NOT EXISTS auth_cache (
    key         TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class SQLiteCache:
    """SQLite-backed cache. Values must be JSON-serializable.

    update() runs inside BEGIN IMMEDIATE so the read-modify-write is atomic
    across processes sharing the file, not just across threads.
    """

    def __init__(self, db_path: Path | str, clock: Optional[Clock] = None, timeout: float = 5.0) -> None:
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._timeout = timeout
        try:
            # isolation_level=None: we issue BEGIN/COMMIT ourselves.
            self._conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False, isolation_level=None)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(_DDL)
        except sqlite3.Error as exc:
            raise CacheUnavailableError(f"cannot open cache: {exc}") from exc

    def _locked(self) -> None:
        if not self._lock.acquire(timeout=self._timeout):
            raise CacheUnavailableError("timed out waiting for cache connection")

    def get(self, key: str) -> Optional[Any]:
        self._locked()
        try:
            row = self._conn.execute("SELECT data, expires_at FROM auth_cache WHERE key = ?", (key,)).fetchone()
            if row is None:
                return None
            data, expires_at = row
            if self.clock.now() >= expires_at:
                self._conn.execute("DELETE FROM auth_cache WHERE key = ?", (key,))
                return None
            return json.loads(data)
        except sqlite3.Error as exc:
            raise CacheUnavailableError(str(exc)) from exc
        finally:
            self._lock.release()

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._locked()
        try:
            self._conn.execute(
                "INSERT OR REPLACE INTO auth_cache (key, data, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), self.clock.now() + ttl),
            )
        except sqlite3.Error as exc:
            raise CacheUnavailableError(str(exc)) from exc
        finally:
            self._lock.release()

    def delete(self, key: str) -> None:
        self._locked()
        try:
            self._conn.execute("DELETE FROM auth_cache WHERE key = ?", (key,))
        except sqlite3.Error as exc:
            raise CacheUnavailableError(str(exc)) from exc
        finally:
            self._lock.release()

    def update(self, key: str, mutate: Mutator, ttl: float) -> Any:
        self._locked()
        try:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT data, expires_at FROM auth_cache WHERE key = ?", (key,)
                ).fetchone()
                now = self.clock.now()
                current = json.loads(row[0]) if row is not None and now < row[1] else None
                new_value, result = mutate(current)
                if new_value is None:
                    self._conn.execute("DELETE FROM auth_cache WHERE key = ?", (key,))
                else:
                    self._conn.execute(
                        "INSERT OR REPLACE INTO auth_cache (key, data, expires_at) VALUES (?, ?, ?)",
                        (key, json.dumps(new_value), now + ttl),
                    )
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            return result
        except sqlite3.Error as exc:
            raise CacheUnavailableError(str(exc)) from exc
        finally:
            self._lock.release()

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        self._locked()
        try:
            cursor = self._conn.execute("DELETE FROM auth_cache WHERE expires_at <= ?", (self.clock.now(),))
            return cursor.rowcount
        except sqlite3.Error as exc:
            raise CacheUnavailableError(str(exc)) from exc
        finally:
            self._lock.release()

    def close(self) -> None:
        self._conn.close()


def build_cache(settings: Settings, clock: Optional[Clock] = None):
    """Instantiate the backend named by settings.cache_backend."""
    if settings.cache_backend == "sqlite":
        return SQLiteCache(settings.cache_path, clock=clock, timeout=settings.store_timeout)
    return MemoryCache(clock=clock, timeout=settings.store_timeout)
