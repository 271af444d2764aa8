"""Key-value stores for pending nonce bindings.

The relay keeps no state of its own: a binding exists exactly as long as
the store says it does. Every backend honours a per-key TTL and offers
``take`` (atomic get-and-delete) for single-use redemption.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


class BindingStore(Protocol):
    """Interface shared by all store backends."""

    name: str

    async def put(self, key: str, value: str, ttl: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def take(self, key: str) -> Optional[str]: ...


class MemoryStore:
    """In-process store for development and tests.

    Entries carry an ``expires_at`` timestamp. Expired entries are swept on
    every write and dropped on read.
    """

    name = "memory"

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, value: str, ttl: int) -> None:
        async with self._lock:
            now = self._clock()
            self._sweep(now)
            self._entries[key] = (value, now + ttl)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def take(self, key: str) -> Optional[str]:
        async with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for _, expires_at in self._entries.values() if now < expires_at)


class RedisStore:
    """Redis-backed store; expiry is handled server-side via ``EX``."""

    name = "redis"
    KEY_PREFIX = "relay:nonce:"

    def __init__(self, client):
        self.redis = client

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    @staticmethod
    def _text(value) -> Optional[str]:
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def put(self, key: str, value: str, ttl: int) -> None:
        await self.redis.set(self._key(key), value, ex=ttl)

    async def get(self, key: str) -> Optional[str]:
        return self._text(await self.redis.get(self._key(key)))

    async def take(self, key: str) -> Optional[str]:
        return self._text(await self.redis.getdel(self._key(key)))


class SupabaseStore:
    """Supabase table store.

    Expected table::

        create table relay_bindings (
            key text primary key,
            value text not null,
            expires_at timestamptz not null
        );

    Rows past ``expires_at`` are treated as absent and deleted on every
    write. The Supabase client is synchronous, so calls run in the threadpool.
    """

    name = "supabase"
    TABLE = "relay_bindings"

    def __init__(self, client, clock=None):
        self.supabase = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _table(self):
        return self.supabase.table(self.TABLE)

    async def put(self, key: str, value: str, ttl: int) -> None:
        now = self._clock()
        row = {"key": key, "value": value, "expires_at": (now + timedelta(seconds=ttl)).isoformat()}

        def _sweep_and_upsert():
            self._table().delete().lt("expires_at", now.isoformat()).execute()
            self._table().upsert(row).execute()

        await run_in_threadpool(_sweep_and_upsert)

    def _select(self, key: str) -> Optional[str]:
        result = (
            self._table()
            .select("value")
            .eq("key", key)
            .gt("expires_at", self._clock().isoformat())
            .limit(1)
            .execute()
        )
        rows = result.data or []
        return rows[0]["value"] if rows else None

    async def get(self, key: str) -> Optional[str]:
        return await run_in_threadpool(self._select, key)

    async def take(self, key: str) -> Optional[str]:
        # delete() returns the removed rows, so whoever gets the row back won the race
        def _delete_returning():
            result = self._table().delete().eq("key", key).execute()
            now = self._clock()
            rows = [
                r for r in (result.data or [])
                if r.get("expires_at") and datetime.fromisoformat(r["expires_at"]) > now
            ]
            return rows[0]["value"] if rows else None

        return await run_in_threadpool(_delete_returning)


def create_store(config, supabase_client=None) -> BindingStore:
    """Build the store backend named in the config."""
    if config.store == "redis":
        import redis.asyncio as redis_asyncio

        logger.info("[STORE] Using Redis store")
        return RedisStore(redis_asyncio.from_url(config.redis_url))

    if config.store == "supabase":
        if supabase_client is None:
            raise ValueError("RELAY_STORE=supabase requires SUPABASE_URL and SUPABASE_ANON_KEY")
        logger.info("[STORE] Using Supabase store")
        return SupabaseStore(supabase_client)

    logger.info("[STORE] Using in-memory store (single process only)")
    return MemoryStore()
