"""Key-value caches for provider-record memoization.

Cache entries are advisory: a miss is never an error, only a cost. Writes are
idempotent (same key, same value), so concurrent jobs may fill the same key
without coordination.
"""

import asyncio
import json
import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from pydantic import BaseModel

from ..core.models import NormalizedRef
from ..utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CacheBackend(ABC):
    """Async key-value store with per-entry TTL and batched variants."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        raise NotImplementedError

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [await self.get(k) for k in keys]

    async def set_many(self, items: Dict[str, str], ttl: int) -> None:
        for key, value in items.items():
            await self.set(key, value, ttl)

    async def close(self) -> None:
        pass


class InMemoryCache(CacheBackend):
    """Process-local cache; expired entries are evicted lazily on read."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._data[key] = (value, time.monotonic() + ttl)

    def __len__(self) -> int:
        return len(self._data)


class SQLiteCache(CacheBackend):
    """
    SQLite-backed cache surviving restarts.

    Batched reads use a single ``IN`` query and batched writes a single
    transaction. Statements run in a worker thread, one at a time.
    """

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = cache_dir / "record_cache.db"
        self.conn = sqlite3.connect(
            str(self.db_path), isolation_level="DEFERRED", check_same_thread=False
        )
        # Performance options
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")
        self.conn.execute("PRAGMA temp_store = MEMORY")
        self._lock = asyncio.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS cache_entries (
                cache_key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_cache_expiry ON cache_entries(expires_at);
            """
        )
        self.conn.commit()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    def _get_many_sync(self, keys: List[str]) -> List[Optional[str]]:
        placeholders = ",".join("?" for _ in keys)
        cur = self.conn.execute(
            f"SELECT cache_key, value FROM cache_entries "
            f"WHERE cache_key IN ({placeholders}) AND expires_at > ?",
            (*keys, time.time()),
        )
        found = dict(cur.fetchall())
        return [found.get(k) for k in keys]

    def _set_many_sync(self, items: Dict[str, str], ttl: int) -> None:
        expires_at = time.time() + ttl
        self.conn.executemany(
            "INSERT OR REPLACE INTO cache_entries (cache_key, value, expires_at) VALUES (?, ?, ?)",
            [(k, v, expires_at) for k, v in items.items()],
        )
        self.conn.commit()

    async def get(self, key: str) -> Optional[str]:
        return (await self.get_many([key]))[0]

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self.set_many({key: value}, ttl)

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return await self._run(self._get_many_sync, list(keys))

    async def set_many(self, items: Dict[str, str], ttl: int) -> None:
        if not items:
            return
        await self._run(self._set_many_sync, dict(items), ttl)

    def purge_expired(self) -> int:
        cur = self.conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (time.time(),))
        self.conn.commit()
        return cur.rowcount

    async def close(self) -> None:
        async with self._lock:
            self.conn.close()


class CacheFillStats(BaseModel):
    hits: int = 0
    misses: int = 0


class ProviderRecordCache:
    """Per-item memoization of provider records keyed ``<provider>:record:<id>``."""

    def __init__(self, backend: CacheBackend, provider: str, ttl: int) -> None:
        self.backend = backend
        self.provider = provider
        self.ttl = ttl

    def key(self, item_id: str) -> str:
        return f"{self.provider}:record:{item_id}"

    @staticmethod
    def _dump(ref: NormalizedRef) -> str:
        return json.dumps(
            {
                "record": ref.model_dump(mode="json"),
                "payload": ref.payload.model_dump(mode="json") if ref.payload else None,
            }
        )

    @staticmethod
    def _load(raw: str) -> Optional[NormalizedRef]:
        try:
            data = json.loads(raw)
            return NormalizedRef.model_validate({**data["record"], "payload": data.get("payload")})
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry: {e}")
            return None

    async def lookup(self, item_ids: Iterable[str]) -> Dict[str, NormalizedRef]:
        """Return the cached records for ``item_ids``; misses are omitted."""
        ids = list(item_ids)
        raw_values = await self.backend.get_many([self.key(i) for i in ids])
        found: Dict[str, NormalizedRef] = {}
        for item_id, raw in zip(ids, raw_values):
            if raw is None:
                continue
            ref = self._load(raw)
            if ref is not None:
                found[item_id] = ref
        return found

    async def check_and_fill(self, refs: Sequence[NormalizedRef]) -> CacheFillStats:
        """Write records whose ids are not cached yet; cached ids are left alone."""
        keyed = {r.external_id: r for r in refs if r.external_id}
        if not keyed:
            return CacheFillStats()
        cached = await self.lookup(keyed.keys())
        missing = {self.key(i): self._dump(r) for i, r in keyed.items() if i not in cached}
        await self.backend.set_many(missing, self.ttl)
        stats = CacheFillStats(hits=len(cached), misses=len(missing))
        logger.debug(
            f"{self.provider} record cache: {stats.hits} hits, {stats.misses} filled",
        )
        return stats
