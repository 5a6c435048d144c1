"""Shared TTL key-value store (Redis) used by the distributed guards."""

from __future__ import annotations

from typing import AsyncGenerator, Optional

import redis.asyncio as redis

from config import settings


_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """Return a process-wide asyncio Redis client backed by a connection pool."""
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


async def get_store() -> AsyncGenerator[redis.Redis, None]:
    """FastAPI dependency for the guard store. Overridden in tests."""
    yield get_redis_client()


async def close_redis_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
