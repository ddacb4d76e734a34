import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional

import redis.asyncio as redis

from app.core.queries.filters import (
    filter_options_key,
    filter_options_pattern,
    query_key_pattern,
)

# -----------------------------------------------------------------------------
# CACHE MODULE
# Purpose: ephemeral (Redis) tier of the result cache.
# Every Redis failure is logged and turned into a miss or a failed CacheWrite,
# never raised to the caller.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

DELETE_BATCH = 500


@dataclass
class CacheLookup:
    hit: bool
    rows: Optional[List[Any]] = None


@dataclass
class CacheWrite:
    """Outcome of a fire-and-forget write; callers may ignore it."""

    ok: bool
    error: Optional[str] = None
    skipped: bool = False

    @classmethod
    def disabled(cls) -> "CacheWrite":
        return cls(ok=False, skipped=True)

    @classmethod
    def failed(cls, error: Exception) -> "CacheWrite":
        return cls(ok=False, error=str(error))


class CacheStore:
    """Read-through cache over a Redis client (None disables the tier)."""

    def __init__(self, client: Optional[redis.Redis]):
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def get(self, key: str) -> CacheLookup:
        if not self.enabled:
            return CacheLookup(hit=False)
        try:
            raw = await self.client.get(key)
        except Exception as error:
            logger.warning(f"Cache read error for {key}: {error}")
            return CacheLookup(hit=False)

        if raw is None:
            return CacheLookup(hit=False)
        try:
            return CacheLookup(hit=True, rows=json.loads(raw))
        except ValueError as error:
            logger.warning(f"Discarding unreadable cache entry {key}: {error}")
            return CacheLookup(hit=False)

    async def put(self, key: str, rows: List[Any], ttl: int) -> CacheWrite:
        if not self.enabled:
            return CacheWrite.disabled()
        try:
            await self.client.set(key, json.dumps(rows, default=str), ex=ttl)
        except Exception as error:
            logger.error(f"Cache write error for {key}: {error}")
            return CacheWrite.failed(error)
        return CacheWrite(ok=True)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching `pattern` (SCAN, not KEYS)."""
        if not self.enabled:
            return 0
        deleted = 0
        try:
            batch = []
            async for key in self.client.scan_iter(match=pattern):
                batch.append(key)
                if len(batch) >= DELETE_BATCH:
                    deleted += await self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.client.delete(*batch)
        except Exception as error:
            logger.error(f"Cache invalidation error for {pattern}: {error}")
        return deleted

    async def invalidate_query(self, query_id: str) -> int:
        """Drop every cached filter combination of one query."""
        deleted = await self.delete_pattern(query_key_pattern(query_id))
        logger.info(f"Invalidated {deleted} cached result(s) for query {query_id}")
        return deleted

    async def invalidate_filter_options(self, sql_param: Optional[str] = None) -> int:
        if sql_param is None:
            return await self.delete_pattern(filter_options_pattern())
        if not self.enabled:
            return 0
        try:
            return await self.client.delete(filter_options_key(sql_param))
        except Exception as error:
            logger.error(f"Cache invalidation error for filter {sql_param}: {error}")
            return 0

    async def ping(self) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(await self.client.ping())
        except Exception as error:
            logger.warning(f"Cache ping failed: {error}")
            return False

    async def close(self):
        if self.enabled:
            await self.client.aclose()
