"""Redis-backed read-through cache for ledger registration reads.

This module provides a read-through cache (JSON-serialized) keyed by
`{prefix}:{namespace}:{key}` with a TTL plus jitter to avoid thundering herds.
Entries can be dropped one by one or a whole namespace at a time, and a
write guard lets callers refuse to cache placeholder values.
"""

from __future__ import annotations
import json
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional

from redis.asyncio import Redis

DEFAULT_TTL_SEC = 300
JITTER_SEC = 5

log = logging.getLogger("tutorlink.storage.redis_cache")

FetchFn = Callable[[], Awaitable[Dict[str, Any]]]
CacheGuard = Callable[[Dict[str, Any]], bool]


class ReadThroughCache:
    """
    Read-through cache for registration lookups.
    Keys: cache:{namespace}:{key}
    Stored as JSON with a TTL + jitter to spread invalidations.
    """
    def __init__(
        self,
        client: Redis,
        prefix: str = "cache",
        ttl_sec: int = DEFAULT_TTL_SEC,
        jitter_sec: int = JITTER_SEC,
    ) -> None:
        """Initialize the cache.

        Args:
            client: `redis.asyncio.Redis` created with decode_responses=True.
            prefix: Key prefix shared by every namespace.
            ttl_sec: Base TTL in seconds (jitter is added automatically).
            jitter_sec: Upper bound of the random TTL extension.
        """
        self._r = client
        self._prefix = prefix
        self._ttl = ttl_sec
        self._jitter = max(0, jitter_sec)

    def _key(self, namespace: str, key: str) -> str:
        """Build a namespaced cache key."""
        return f"{self._prefix}:{namespace}:{key}"

    async def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        """Return the cached dict, or None on miss or undecodable payload."""
        val = await self._r.get(self._key(namespace, key))
        if val is None:
            return None
        try:
            data = json.loads(val)
        except ValueError:
            log.warning("dropping undecodable cache entry %s:%s", namespace, key)
            return None
        return data if isinstance(data, dict) else None

    async def set(self, namespace: str, key: str, data: Dict[str, Any], ttl_sec: Optional[int] = None) -> None:
        """Store `data` under the key with TTL + jitter."""
        payload = json.dumps(data, separators=(",", ":"))
        expiry = (ttl_sec or self._ttl) + (random.randint(0, self._jitter) if self._jitter else 0)
        await self._r.setex(self._key(namespace, key), expiry, payload)

    async def get_or_fetch(
        self,
        namespace: str,
        key: str,
        fetch_fn: FetchFn,
        should_cache: Optional[CacheGuard] = None,
        ttl_sec: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Get data from cache or fetch, set, and return.

        On cache hit: returns JSON-decoded dict.
        On miss: awaits `fetch_fn`, validates dict, stores with TTL + jitter
        unless `should_cache` rejects the value.

        Args:
            namespace: Logical group of keys (flushable as a unit).
            key: Entry key inside the namespace.
            fetch_fn: Zero-arg coroutine function returning a dict to cache.
            should_cache: Guard consulted before every write.
            ttl_sec: Optional TTL override.

        Returns:
            Dict[str, Any]: The cached or freshly fetched payload.

        Raises:
            ValueError: If `fetch_fn` does not return a dict.
        """
        cached = await self.get(namespace, key)
        if cached is not None:
            return cached
        data = await fetch_fn()
        if not isinstance(data, dict):
            raise ValueError("fetch_fn must return a dict")
        if should_cache is None or should_cache(data):
            await self.set(namespace, key, data, ttl_sec=ttl_sec)
        else:
            log.debug("skip caching %s:%s (guard rejected value)", namespace, key)
        return data

    async def invalidate(self, namespace: str, key: str) -> None:
        """Invalidate a cached entry."""
        await self._r.delete(self._key(namespace, key))

    async def flush(self, namespace: str) -> int:
        """Drop every entry of a namespace. Returns the number of keys removed."""
        removed = 0
        batch: list[str] = []
        async for k in self._r.scan_iter(match=f"{self._prefix}:{namespace}:*", count=500):
            batch.append(k)
            if len(batch) >= 500:
                removed += await self._r.delete(*batch)
                batch = []
        if batch:
            removed += await self._r.delete(*batch)
        return removed
