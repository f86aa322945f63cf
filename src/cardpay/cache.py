"""Caching layer with Redis support and in-memory fallback.

Cache failures are never fatal: a Redis error reads as a miss and a failed
write is logged and reported as False.
"""
from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get a value from cache."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set a value in cache with optional TTL in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key from cache."""

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            await self.delete(key)
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return await self.set(key, json.dumps(value, default=str), ttl)

    async def close(self) -> None:
        return None


class InMemoryCache(CacheBackend):
    """In-memory cache for development."""

    def __init__(self, clock=time.monotonic):
        self._store: Dict[str, tuple[str, Optional[float]]] = {}  # key -> (value, expires_at)
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        if key not in self._store:
            return None
        value, expires_at = self._store[key]
        if expires_at and self._clock() > expires_at:
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        expires_at = self._clock() + ttl if ttl else None
        self._store[key] = (value, expires_at)
        return True

    async def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None


class RedisCache(CacheBackend):
    """Redis cache backend."""

    def __init__(self, url: str):
        self._url = url
        self._client = None

    async def _get_client(self):
        """Lazy initialization of Redis client."""
        if self._client is None:
            self._client = redis.from_url(self._url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[str]:
        try:
            client = await self._get_client()
            return await client.get(key)
        except (RedisError, OSError) as e:
            logger.error("Redis get error: %s", e)
            return None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        try:
            client = await self._get_client()
            if ttl:
                await client.setex(key, ttl, value)
            else:
                await client.set(key, value)
            return True
        except (RedisError, OSError) as e:
            logger.error("Redis set error: %s", e)
            return False

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_client()
            return await client.delete(key) > 0
        except (RedisError, OSError) as e:
            logger.error("Redis delete error: %s", e)
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None


def create_cache(redis_url: Optional[str] = None) -> CacheBackend:
    """Redis when a URL is configured, in-memory otherwise."""
    if redis_url:
        logger.info("Using Redis cache backend")
        return RedisCache(redis_url)
    logger.info("Using in-memory cache backend")
    return InMemoryCache()
