"""Single-flight memoization store with per-key time-to-live.

Two backing tiers:
  - in-memory dict (volatile, lost on restart)
  - durable SQLite file (survives restart); every read is a snapshot SELECT,
    every write an IMMEDIATE transaction so concurrent writers never interleave

Every value handed out is a deep copy, so callers may mutate what they get
without corrupting the cached entry.

Single-flight: `fetch` holds one global lock around the whole
"return cached or generate" decision, which also serializes generators for
unrelated keys (and, through them, the shared browser session). A `fetch`
nested inside a running generator does not re-acquire the lock. Held locks
are tracked in a ContextVar, so tasks a generator spawns (`asyncio.gather`,
`create_task`) copy that context and share its locks: they run inside the
generator's critical section instead of deadlocking on it, and must be
awaited before the generator returns.

Durable reads and writes inside `fetch` run in a worker thread
(`asyncio.to_thread`); the synchronous `get`/`set`/`clear` stay on the caller's
thread.
"""

import asyncio
import copy
import pickle
import sqlite3
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, NamedTuple

from src.timetable.logging import get_logger

log = get_logger(__name__)

DEFAULT_CACHE_EXPIRATION = 15 * 60  # 15 minutes

# Sentinel: "use the cache's configured default TTL"
DEFAULT_TTL: Any = object()

_GLOBAL_LOCK = "*"

# Lock ids held by the current task context, for reentrant fetches
_held_locks: ContextVar[frozenset[str]] = ContextVar(
    "timetable_cache_held_locks", default=frozenset()
)


class CacheEntry(NamedTuple):
    value: Any
    timestamp: float


class Cache:
    """Memoization store exposed as compute-if-stale-or-absent.

    TTL semantics: ``None`` never expires, ``0`` always regenerates.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        default_ttl: float | None = DEFAULT_CACHE_EXPIRATION,
        disabled: bool = False,
        per_key: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            path: SQLite file for the durable tier; durable access fails without it.
            default_ttl: Lifetime applied when a call does not pass ``ttl``.
            disabled: Skip storage entirely for zero-TTL fetches.
            per_key: Use one lock per key instead of the global lock.
            clock: Wall-clock source, seconds since epoch.
        """
        self.path = Path(path) if path is not None else None
        self.default_ttl = default_ttl
        self.disabled = disabled
        self.per_key = per_key
        self._clock = clock
        self._data: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._transaction(immediate=True) as conn:
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS entries ("
                    " key TEXT PRIMARY KEY, value BLOB NOT NULL, timestamp REAL NOT NULL)"
                )

    async def fetch(
        self,
        key: str,
        generator: Callable[[], Awaitable[Any]],
        *,
        ttl: float | None = DEFAULT_TTL,
        allow_none: bool = False,
        durable: bool = False,
    ) -> Any:
        """Return a fresh cached value for ``key`` or generate and store a new one.

        A failing generator propagates its exception and leaves any previous
        entry untouched.
        """
        if ttl is DEFAULT_TTL:
            ttl = self.default_ttl

        if self.disabled and ttl == 0:
            log.debug("cache_bypassed", key=key, reason="caching_disabled")
            return await generator()

        lock_id = key if self.per_key else _GLOBAL_LOCK
        held = _held_locks.get()
        if lock_id in held:
            return await self._fetch_locked(key, generator, ttl, allow_none, durable)

        async with self._lock_for(lock_id):
            token = _held_locks.set(held | {lock_id})
            try:
                return await self._fetch_locked(key, generator, ttl, allow_none, durable)
            finally:
                _held_locks.reset(token)

    async def _fetch_locked(
        self,
        key: str,
        generator: Callable[[], Awaitable[Any]],
        ttl: float | None,
        allow_none: bool,
        durable: bool,
    ) -> Any:
        if durable:
            entry = await asyncio.to_thread(self._get_entry, key, durable=True)
        else:
            entry = self._get_entry(key, durable=False)
        if self._is_actual(entry, ttl, allow_none):
            log.debug("cache_hit", key=key, durable=durable)
            return copy.deepcopy(entry.value)

        log.debug("cache_generating", key=key, durable=durable)
        value = await generator()
        if durable:
            return await asyncio.to_thread(self.set, key, value, durable=True)
        return self.set(key, value)

    def actual(
        self,
        key: str,
        *,
        ttl: float | None = DEFAULT_TTL,
        allow_none: bool = False,
        durable: bool = False,
    ) -> bool:
        """True if ``key`` holds an entry that ``fetch`` would return as-is."""
        if ttl is DEFAULT_TTL:
            ttl = self.default_ttl
        return self._is_actual(self._get_entry(key, durable=durable), ttl, allow_none)

    def get(self, key: str, *, durable: bool = False) -> Any:
        entry = self._get_entry(key, durable=durable)
        if entry is None:
            return None
        return copy.deepcopy(entry.value)

    def set(self, key: str, value: Any, *, durable: bool = False) -> Any:
        """Replace the entry for ``key`` wholesale and return a copy of ``value``."""
        entry = CacheEntry(copy.deepcopy(value), self._clock())
        if durable:
            payload = pickle.dumps(entry.value)
            with self._transaction(immediate=True) as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO entries (key, value, timestamp) VALUES (?, ?, ?)",
                    (key, payload, entry.timestamp),
                )
        else:
            self._data[key] = entry
        return copy.deepcopy(value)

    def clear(self, *, durable: bool = False) -> None:
        """Drop every in-memory entry, and the durable ones if requested."""
        self._data.clear()
        if durable:
            with self._transaction(immediate=True) as conn:
                conn.execute("DELETE FROM entries")
        log.info("cache_cleared", durable=durable)

    def _is_actual(
        self, entry: CacheEntry | None, ttl: float | None, allow_none: bool
    ) -> bool:
        if entry is None:
            return False
        if not allow_none and entry.value is None:
            return False
        return ttl is None or self._clock() - entry.timestamp < ttl

    def _get_entry(self, key: str, *, durable: bool) -> CacheEntry | None:
        if not durable:
            return self._data.get(key)

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT value, timestamp FROM entries WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return CacheEntry(pickle.loads(row[0]), row[1])

    def _lock_for(self, lock_id: str) -> asyncio.Lock:
        lock = self._locks.get(lock_id)
        if lock is None:
            lock = self._locks[lock_id] = asyncio.Lock()
        return lock

    @contextmanager
    def _transaction(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        if self.path is None:
            raise RuntimeError("Durable cache tier requested but no cache path configured")

        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
