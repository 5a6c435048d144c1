"""Distributed guards on the shared TTL store.

All four primitives rely on single atomic Redis commands (GET, SET NX EX,
INCR/INCRBY/DECRBY, DEL) so they hold across API instances. None of them
touch credits; they run before the ledger.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.exceptions import RedisError

from config import settings
from services.errors import ErrorKind, GuardRejection

logger = logging.getLogger(__name__)

PROVIDER_BUDGET_WINDOW_SECONDS = 60
PROVIDER_BUDGET_RETRY_AFTER_SECONDS = 3


@dataclass
class BudgetReservation:
    granted: bool
    retry_after_seconds: int = 0
    bucket: Optional[str] = None
    calls: int = 0


def _key(*parts: str) -> str:
    return ":".join([settings.GUARD_KEY_PREFIX, *parts])


def cooldown_key(user_id: str, resource_id: str) -> str:
    return _key("cooldown", user_id, resource_id)


def daily_cap_key(user_id: str, now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    return _key("dailycap", user_id, current.strftime("%Y-%m-%d"))


def provider_budget_key(now_seconds: Optional[float] = None) -> str:
    minute = int((now_seconds if now_seconds is not None else time.time()) // 60)
    return _key("providerbudget", str(minute))


def inflight_key(resource_key: str) -> str:
    return _key("inflight", resource_key)


def _seconds_until_utc_midnight(now: Optional[datetime] = None) -> int:
    current = now or datetime.now(timezone.utc)
    midnight = (current + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(int((midnight - current).total_seconds()), 1)


def _unavailable(exc: Exception) -> GuardRejection:
    logger.error("Guard store unavailable: %s", exc)
    return GuardRejection(ErrorKind.GUARD_UNAVAILABLE, "Guard store unavailable. Try again shortly.")


async def check_cooldown(store, user_id: str, resource_id: str) -> None:
    try:
        active = await store.get(cooldown_key(user_id, resource_id))
    except RedisError as exc:
        raise _unavailable(exc) from exc
    if active:
        raise GuardRejection(
            ErrorKind.COOLDOWN_ACTIVE,
            "A refresh for this project ran recently. Wait for the cooldown to expire.",
            retry_after_seconds=settings.LIVE_REFRESH_COOLDOWN_SECONDS,
        )


async def set_cooldown(store, user_id: str, resource_id: str, seconds: Optional[int] = None) -> None:
    ttl = int(seconds if seconds is not None else settings.LIVE_REFRESH_COOLDOWN_SECONDS)
    await store.set(cooldown_key(user_id, resource_id), "1", ex=max(ttl, 1))


async def check_daily_cap(store, user_id: str, cap: Optional[int] = None) -> int:
    """Raise when today's usage is at or above the cap; return today's count otherwise."""
    limit = int(cap if cap is not None else settings.LIVE_REFRESH_DAILY_CAP)
    try:
        raw = await store.get(daily_cap_key(user_id))
    except RedisError as exc:
        raise _unavailable(exc) from exc
    used_today = int(raw or 0)
    if used_today >= limit:
        raise GuardRejection(
            ErrorKind.DAILY_CAP_REACHED,
            f"Daily limit of {limit} refreshes reached.",
            retry_after_seconds=_seconds_until_utc_midnight(),
        )
    return used_today


async def record_daily_usage(store, user_id: str) -> int:
    key = daily_cap_key(user_id)
    current = int(await store.incr(key))
    if current == 1:
        await store.expire(key, _seconds_until_utc_midnight())
    return current


async def reserve_provider_budget(store, calls: int, limit: Optional[int] = None) -> BudgetReservation:
    """Reserve upstream calls in the current minute bucket.

    Increment first, then compare: a read-then-increment would let every
    concurrent caller pass the same stale count.
    """
    requested = max(1, int(round(calls)))
    budget = int(limit if limit is not None else settings.PROVIDER_BUDGET_PER_MINUTE)
    bucket = provider_budget_key()

    current = int(await store.incrby(bucket, requested))
    if current == requested:
        await store.expire(bucket, PROVIDER_BUDGET_WINDOW_SECONDS)

    if current > budget:
        await store.decrby(bucket, requested)
        logger.warning("Provider budget exhausted bucket=%s requested=%s current=%s", bucket, requested, current)
        return BudgetReservation(granted=False, retry_after_seconds=PROVIDER_BUDGET_RETRY_AFTER_SECONDS)

    return BudgetReservation(granted=True, bucket=bucket, calls=requested)


async def release_provider_budget(store, reservation: BudgetReservation) -> None:
    """Hand back a granted reservation whose calls were never made."""
    if not reservation.granted or not reservation.bucket:
        return
    await store.decrby(reservation.bucket, reservation.calls)


async def acquire_inflight_lock(store, resource_key: str, ttl_seconds: Optional[int] = None) -> bool:
    """Try to become the single runner for `resource_key`. False means someone else is running it."""
    ttl = int(ttl_seconds if ttl_seconds is not None else settings.LIVE_REFRESH_LOCK_TTL_SECONDS)
    acquired = await store.set(inflight_key(resource_key), "1", nx=True, ex=max(ttl, 1))
    return bool(acquired)


async def release_inflight_lock(store, resource_key: str) -> None:
    await store.delete(inflight_key(resource_key))
