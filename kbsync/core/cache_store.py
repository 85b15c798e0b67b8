"""Key/value + set stores backing the response and embedding caches.

Backends:
- RedisStore: remote store shared by every process and host (REDIS_URL)
- SQLiteStore: shared on-disk store with TTLs on items and sets; other
  processes on the same host see the same cache
- MemoryStore: bounded in-process LRU with TTL and eviction listeners

NullStore is the no-op fallback used when a backend cannot be opened.
Values are strings (JSON or base64); callers do their own encoding.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Iterable

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from kbsync.core.errors import CacheBackendUnavailable

logger = logging.getLogger(__name__)

EvictionListener = Callable[[str, str], None]


class CacheStore(ABC):
    """Abstract base class for cache backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        """Store value under key. ttl_seconds <= 0 means no expiry."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def sadd(self, key: str, member: str, ttl_seconds: int = 0) -> None:
        """Add member to the set at key and refresh the set's TTL."""
        ...

    @abstractmethod
    async def sunion(self, keys: Iterable[str]) -> list[str]:
        """Members of all sets, deduplicated, in order of the keys given."""
        ...

    @abstractmethod
    async def srem(self, key: str, members: Iterable[str]) -> None:
        ...

    @abstractmethod
    async def trim_set(self, key: str, max_size: int) -> int:
        """Drop members until the set holds at most max_size. Returns how many were dropped.

        Which members go is up to the backend: MemoryStore drops the oldest,
        SQLiteStore and RedisStore drop random ones.
        """
        ...

    def count(self) -> int | None:
        """Number of live items, where the backend can tell cheaply."""
        return None

    def add_eviction_listener(self, listener: EvictionListener) -> None:
        """Register a callback for items the store drops on its own. Only MemoryStore evicts."""


class MemoryStore(CacheStore):
    """Bounded in-process store: LRU over items, TTL per item.

    Items dropped by LRU pressure or expiry are reported to eviction
    listeners so indexes built on top (bucket sets) can forget them.
    Sets are not bounded themselves.
    """

    def __init__(self, max_items: int = 1000, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_items = max_items
        self._clock = clock
        self._items: OrderedDict[str, tuple[str, float | None]] = OrderedDict()
        self._sets: dict[str, dict[str, None]] = {}
        self._listeners: list[EvictionListener] = []

    @property
    def name(self) -> str:
        return "memory"

    def add_eviction_listener(self, listener: EvictionListener) -> None:
        self._listeners.append(listener)

    def _evict(self, key: str) -> None:
        value, _ = self._items.pop(key)
        for listener in self._listeners:
            listener(key, value)

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def _purge_expired(self) -> None:
        for key in [k for k, (_, exp) in self._items.items() if self._expired(exp)]:
            self._evict(key)

    async def get(self, key: str) -> str | None:
        entry = self._items.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            self._evict(key)
            return None
        self._items.move_to_end(key)
        return value

    async def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        self._items[key] = (value, expires_at)
        self._items.move_to_end(key)
        self._purge_expired()
        while len(self._items) > self.max_items:
            oldest = next(iter(self._items))
            self._evict(oldest)

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)
        self._sets.pop(key, None)

    async def sadd(self, key: str, member: str, ttl_seconds: int = 0) -> None:
        self._sets.setdefault(key, {})[member] = None

    async def sunion(self, keys: Iterable[str]) -> list[str]:
        members: dict[str, None] = {}
        for key in keys:
            members.update(self._sets.get(key, {}))
        return list(members)

    async def srem(self, key: str, members: Iterable[str]) -> None:
        current = self._sets.get(key)
        if current is None:
            return
        for member in members:
            current.pop(member, None)
        if not current:
            del self._sets[key]

    async def trim_set(self, key: str, max_size: int) -> int:
        current = self._sets.get(key)
        if not current or len(current) <= max_size:
            return 0
        excess = list(current)[: len(current) - max_size]
        for member in excess:
            del current[member]
        return len(excess)

    def count(self) -> int:
        return len(self._items)

    def set_size(self, key: str) -> int:
        return len(self._sets.get(key, {}))

    def discard_member(self, key: str, member: str) -> None:
        """Synchronous srem for a single member, safe to call from an eviction listener."""
        current = self._sets.get(key)
        if current is None:
            return
        current.pop(member, None)
        if not current:
            del self._sets[key]


CACHE_SQL = """
CREATE TABLE IF NOT EXISTS cache_items (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  expires_at REAL
);

CREATE TABLE IF NOT EXISTS cache_sets (
  key TEXT NOT NULL,
  member TEXT NOT NULL,
  expires_at REAL,
  PRIMARY KEY (key, member)
);

CREATE INDEX IF NOT EXISTS idx_cache_items_expires ON cache_items(expires_at);
"""


class SQLiteStore(CacheStore):
    """Shared store in a SQLite file.

    Items and sets carry their own expiry; expired rows are ignored on read
    and removed lazily. Set members whose item has expired are pruned by the
    caller (the response cache) when it notices the item is gone.
    """

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], float] = time.time) -> None:
        self.conn = conn
        self._clock = clock

    @property
    def name(self) -> str:
        return "sqlite"

    def init(self) -> None:
        try:
            self.conn.executescript(CACHE_SQL)
            self.conn.commit()
        except sqlite3.Error as e:
            raise CacheBackendUnavailable(f"Cannot initialize cache tables: {e}") from e

    def _expiry(self, ttl_seconds: int) -> float | None:
        return self._clock() + ttl_seconds if ttl_seconds > 0 else None

    async def get(self, key: str) -> str | None:
        now = self._clock()
        try:
            cur = self.conn.execute("SELECT value, expires_at FROM cache_items WHERE key = ?", (key,))
            row = cur.fetchone()
            if row is None:
                return None
            if row[1] is not None and row[1] <= now:
                with self.conn:
                    self.conn.execute("DELETE FROM cache_items WHERE key = ?", (key,))
                return None
            return row[0]
        except sqlite3.Error as e:
            raise CacheBackendUnavailable(f"Cache read failed: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO cache_items (key, value, expires_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                    """,
                    (key, value, self._expiry(ttl_seconds)),
                )
        except sqlite3.Error as e:
            raise CacheBackendUnavailable(f"Cache write failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            with self.conn:
                self.conn.execute("DELETE FROM cache_items WHERE key = ?", (key,))
                self.conn.execute("DELETE FROM cache_sets WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise CacheBackendUnavailable(f"Cache delete failed: {e}") from e

    async def sadd(self, key: str, member: str, ttl_seconds: int = 0) -> None:
        expires_at = self._expiry(ttl_seconds)
        try:
            with self.conn:
                self.conn.execute(
                    "INSERT OR IGNORE INTO cache_sets (key, member, expires_at) VALUES (?, ?, ?)",
                    (key, member, expires_at),
                )
                # The whole set shares one expiry, refreshed on every add
                self.conn.execute("UPDATE cache_sets SET expires_at = ? WHERE key = ?", (expires_at, key))
        except sqlite3.Error as e:
            raise CacheBackendUnavailable(f"Cache set write failed: {e}") from e

    async def sunion(self, keys: Iterable[str]) -> list[str]:
        now = self._clock()
        members: dict[str, None] = {}
        try:
            for key in keys:
                cur = self.conn.execute(
                    """
                    SELECT member FROM cache_sets
                    WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)
                    ORDER BY rowid
                    """,
                    (key, now),
                )
                for row in cur.fetchall():
                    members[row[0]] = None
        except sqlite3.Error as e:
            raise CacheBackendUnavailable(f"Cache set read failed: {e}") from e
        return list(members)

    async def srem(self, key: str, members: Iterable[str]) -> None:
        members = list(members)
        if not members:
            return
        try:
            with self.conn:
                self.conn.executemany(
                    "DELETE FROM cache_sets WHERE key = ? AND member = ?",
                    [(key, member) for member in members],
                )
        except sqlite3.Error as e:
            raise CacheBackendUnavailable(f"Cache set delete failed: {e}") from e

    async def trim_set(self, key: str, max_size: int) -> int:
        try:
            cur = self.conn.execute("SELECT COUNT(*) FROM cache_sets WHERE key = ?", (key,))
            size = cur.fetchone()[0]
            if size <= max_size:
                return 0
            with self.conn:
                self.conn.execute(
                    """
                    DELETE FROM cache_sets WHERE key = ? AND member IN (
                        SELECT member FROM cache_sets WHERE key = ? ORDER BY RANDOM() LIMIT ?
                    )
                    """,
                    (key, key, size - max_size),
                )
            return size - max_size
        except sqlite3.Error as e:
            raise CacheBackendUnavailable(f"Cache set trim failed: {e}") from e

    def purge_expired(self) -> int:
        """Remove every expired item and set member. Returns rows removed."""
        now = self._clock()
        try:
            with self.conn:
                items = self.conn.execute(
                    "DELETE FROM cache_items WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
                ).rowcount
                members = self.conn.execute(
                    "DELETE FROM cache_sets WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
                ).rowcount
        except sqlite3.Error as e:
            raise CacheBackendUnavailable(f"Cache purge failed: {e}") from e
        return items + members

    def count(self) -> int:
        try:
            cur = self.conn.execute(
                "SELECT COUNT(*) FROM cache_items WHERE expires_at IS NULL OR expires_at > ?",
                (self._clock(),),
            )
            return cur.fetchone()[0]
        except sqlite3.Error as e:
            raise CacheBackendUnavailable(f"Cache count failed: {e}") from e


class RedisStore(CacheStore):
    """Remote store on Redis, shared by every process that points at the same server.

    Item TTLs are Redis key expiries. A set's TTL is refreshed on every add,
    so a bucket lives as long as its newest member. Any RedisError surfaces
    as CacheBackendUnavailable.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client

    @property
    def name(self) -> str:
        return "redis"

    async def get(self, key: str) -> str | None:
        try:
            return await self.client.get(key)
        except RedisError as e:
            raise CacheBackendUnavailable(f"Redis read failed: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        try:
            await self.client.set(key, value, ex=ttl_seconds if ttl_seconds > 0 else None)
        except RedisError as e:
            raise CacheBackendUnavailable(f"Redis write failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as e:
            raise CacheBackendUnavailable(f"Redis delete failed: {e}") from e

    async def sadd(self, key: str, member: str, ttl_seconds: int = 0) -> None:
        try:
            await self.client.sadd(key, member)
            if ttl_seconds > 0:
                await self.client.expire(key, ttl_seconds)
        except RedisError as e:
            raise CacheBackendUnavailable(f"Redis set write failed: {e}") from e

    async def sunion(self, keys: Iterable[str]) -> list[str]:
        keys = list(keys)
        if not keys:
            return []
        # One SMEMBERS per key in a single round trip keeps the callers' key order
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.smembers(key)
                results = await pipe.execute()
        except RedisError as e:
            raise CacheBackendUnavailable(f"Redis set read failed: {e}") from e
        members: dict[str, None] = {}
        for result in results:
            for member in sorted(result):
                members[member] = None
        return list(members)

    async def srem(self, key: str, members: Iterable[str]) -> None:
        members = list(members)
        if not members:
            return
        try:
            await self.client.srem(key, *members)
        except RedisError as e:
            raise CacheBackendUnavailable(f"Redis set delete failed: {e}") from e

    async def trim_set(self, key: str, max_size: int) -> int:
        try:
            size = await self.client.scard(key)
            if size <= max_size:
                return 0
            await self.client.spop(key, size - max_size)
        except RedisError as e:
            raise CacheBackendUnavailable(f"Redis set trim failed: {e}") from e
        return size - max_size


class NullStore(CacheStore):
    """Stores nothing. Every read is a miss."""

    @property
    def name(self) -> str:
        return "none"

    async def get(self, key: str) -> str | None:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def sadd(self, key: str, member: str, ttl_seconds: int = 0) -> None:
        return None

    async def sunion(self, keys: Iterable[str]) -> list[str]:
        return []

    async def srem(self, key: str, members: Iterable[str]) -> None:
        return None

    async def trim_set(self, key: str, max_size: int) -> int:
        return 0

    def count(self) -> int:
        return 0


def open_cache_store(path: str = "", max_items: int = 1000, redis_url: str = "") -> CacheStore:
    """Open Redis at redis_url, else the SQLite file at path, else a bounded in-process store.

    A backend that cannot be opened degrades to NullStore: the cache must
    never be a hard dependency for answering a question.
    """
    if redis_url:
        try:
            # Connects lazily; an unreachable server shows up as misses later
            client = aioredis.from_url(redis_url, decode_responses=True)
        except ValueError as e:
            logger.warning(f"Invalid REDIS_URL ({e}). Caching disabled.")
            return NullStore()
        return RedisStore(client)
    if not path:
        logger.warning("REDIS_URL and CACHE_DB_PATH not set. Using in-memory LRU cache.")
        return MemoryStore(max_items=max_items)
    try:
        conn = sqlite3.connect(path, check_same_thread=False, timeout=5.0)
        conn.execute("PRAGMA journal_mode=WAL")
        store = SQLiteStore(conn)
        store.init()
        return store
    except (sqlite3.Error, CacheBackendUnavailable) as e:
        logger.warning(f"Cache backend at {path} unavailable ({e}). Caching disabled.")
        return NullStore()
