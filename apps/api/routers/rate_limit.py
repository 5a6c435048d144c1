"""Per-client request rate limiting on the shared Redis store."""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, Request
from redis.exceptions import RedisError

from config import settings
from services.kv_store import get_store


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[..., None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request, store=Depends(get_store)):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{settings.GUARD_KEY_PREFIX}:rate:{prefix}:{_client_identifier(request)}"
        try:
            current = int(await store.incr(key))
            if current == 1:
                await store.expire(key, window_seconds)
        except RedisError as exc:
            raise HTTPException(status_code=503, detail="Rate limiter unavailable. Try again shortly.") from exc

        if current > limit:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
