"""Redis cache backend.

This module provides the shared cache store used when several workers must
see the same memoized grant sets:
- String values with TTL (SETEX)
- Tag groups kept as Redis sets so one tag can be evicted without FLUSHDB
- Prefix eviction via SCAN for backends configured without tags
"""

from __future__ import annotations

import logging
from typing import Sequence

from redis.asyncio import Redis as AsyncRedis, from_url as async_from_url
from redis.exceptions import RedisError

from ..errors import CacheBackendError

logger = logging.getLogger(__name__)

_SCAN_BATCH = 500


class RedisCacheBackend:
    """Async Redis cache backend.

    The connection is opened lazily on first use; a pre-built client can be
    injected instead of a URL.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: AsyncRedis | None = None,
        tag_namespace: str = "tag:",
    ) -> None:
        """Initialize Redis cache backend.

        Args:
            redis_url: Redis connection URL (e.g., redis://localhost:6379/0)
            client: Already configured async client (takes precedence)
            tag_namespace: Key prefix for the sets that track tag membership
        """
        if redis_url is None and client is None:
            raise ValueError("Either redis_url or client must be provided")
        self._redis_url = redis_url
        self._redis: AsyncRedis | None = client
        self._tag_namespace = tag_namespace

    @property
    def supports_tags(self) -> bool:
        return True

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self._redis is None:
            self._redis = async_from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis connection established")

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis connection closed")

    async def _ensure_connected(self) -> AsyncRedis:
        if self._redis is None:
            await self.connect()
        assert self._redis is not None
        return self._redis

    def _tag_key(self, tag: str) -> str:
        return f"{self._tag_namespace}{tag}"

    def _fail(self, operation: str, key: str, exc: RedisError) -> CacheBackendError:
        logger.error(
            "Redis operation failed operation=%s key=%s error=%s",
            operation,
            key,
            exc,
        )
        return CacheBackendError(
            f"Redis {operation} failed",
            details={"operation": operation, "key": key},
        )

    async def get(self, key: str) -> str | None:
        redis = await self._ensure_connected()
        try:
            return await redis.get(key)
        except RedisError as exc:
            raise self._fail("GET", key, exc) from exc

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
        tags: Sequence[str] = (),
    ) -> None:
        redis = await self._ensure_connected()
        try:
            async with redis.pipeline(transaction=True) as pipe:
                if ttl_seconds:
                    pipe.setex(key, ttl_seconds, value)
                else:
                    pipe.set(key, value)
                for tag in tags:
                    pipe.sadd(self._tag_key(tag), key)
                await pipe.execute()
        except RedisError as exc:
            raise self._fail("SET", key, exc) from exc

    async def delete(self, key: str) -> bool:
        redis = await self._ensure_connected()
        try:
            return bool(await redis.delete(key))
        except RedisError as exc:
            raise self._fail("DEL", key, exc) from exc

    async def flush_tags(self, tags: Sequence[str]) -> None:
        redis = await self._ensure_connected()
        for tag in tags:
            tag_key = self._tag_key(tag)
            try:
                members = await redis.smembers(tag_key)
                if members:
                    await redis.delete(*members)
                await redis.delete(tag_key)
            except RedisError as exc:
                raise self._fail("FLUSH_TAG", tag_key, exc) from exc

    async def delete_prefix(self, prefix: str) -> int:
        redis = await self._ensure_connected()
        deleted = 0
        batch: list[str] = []
        try:
            async for key in redis.scan_iter(match=f"{prefix}*", count=_SCAN_BATCH):
                batch.append(key)
                if len(batch) >= _SCAN_BATCH:
                    deleted += await redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await redis.delete(*batch)
        except RedisError as exc:
            raise self._fail("SCAN_DEL", f"{prefix}*", exc) from exc
        return deleted

    async def clear(self) -> None:
        redis = await self._ensure_connected()
        try:
            await redis.flushdb()
        except RedisError as exc:
            raise self._fail("FLUSHDB", "*", exc) from exc
        logger.warning("Redis database flushed by permission cache")
