from unittest.mock import patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import InMemoryStore
from services import guards
from services.errors import ErrorKind, GuardRejection


@pytest.mark.asyncio
async def test_cooldown_blocks_until_expiry():
    store = InMemoryStore()
    await guards.check_cooldown(store, "user-1", "project-1")

    await guards.set_cooldown(store, "user-1", "project-1", seconds=300)

    with pytest.raises(GuardRejection) as exc_info:
        await guards.check_cooldown(store, "user-1", "project-1")
    assert exc_info.value.kind == ErrorKind.COOLDOWN_ACTIVE
    assert store.ttls[guards.cooldown_key("user-1", "project-1")] == 300

    # Other projects are independent.
    await guards.check_cooldown(store, "user-1", "project-2")


@pytest.mark.asyncio
async def test_daily_cap_counts_and_expires_at_day_boundary():
    store = InMemoryStore()
    for _ in range(2):
        await guards.check_daily_cap(store, "user-1", cap=2)
        await guards.record_daily_usage(store, "user-1")

    with pytest.raises(GuardRejection) as exc_info:
        await guards.check_daily_cap(store, "user-1", cap=2)
    assert exc_info.value.kind == ErrorKind.DAILY_CAP_REACHED

    ttl = store.ttls[guards.daily_cap_key("user-1")]
    assert 0 < ttl <= 86400


@pytest.mark.asyncio
async def test_provider_budget_rolls_back_on_overflow():
    store = InMemoryStore()
    with patch.object(guards.time, "time", return_value=1_800_000_000.0):
        first = await guards.reserve_provider_budget(store, 6, limit=10)
        second = await guards.reserve_provider_budget(store, 6, limit=10)
        third = await guards.reserve_provider_budget(store, 4, limit=10)
        bucket = guards.provider_budget_key()

    assert first.granted
    assert not second.granted
    assert second.retry_after_seconds > 0
    assert third.granted
    assert int(store.values[bucket]) == 10
    assert store.ttls[bucket] == guards.PROVIDER_BUDGET_WINDOW_SECONDS


@pytest.mark.asyncio
async def test_released_budget_frees_the_bucket():
    store = InMemoryStore()
    with patch.object(guards.time, "time", return_value=1_800_000_000.0):
        reservation = await guards.reserve_provider_budget(store, 8, limit=10)
        await guards.release_provider_budget(store, reservation)
        await guards.release_provider_budget(store, guards.BudgetReservation(granted=False))
        again = await guards.reserve_provider_budget(store, 8, limit=10)
        bucket = guards.provider_budget_key()

    assert reservation.bucket == bucket
    assert reservation.calls == 8
    assert again.granted
    assert int(store.values[bucket]) == 8


@pytest.mark.asyncio
async def test_inflight_lock_has_single_winner():
    store = InMemoryStore()

    assert await guards.acquire_inflight_lock(store, "project:abc", ttl_seconds=90)
    assert not await guards.acquire_inflight_lock(store, "project:abc", ttl_seconds=90)

    await guards.release_inflight_lock(store, "project:abc")
    assert await guards.acquire_inflight_lock(store, "project:abc", ttl_seconds=90)


@pytest.mark.asyncio
async def test_store_outage_is_reported_as_guard_unavailable():
    class BrokenStore(InMemoryStore):
        async def get(self, key):
            raise RedisConnectionError("connection refused")

    with pytest.raises(GuardRejection) as exc_info:
        await guards.check_cooldown(BrokenStore(), "user-1", "project-1")
    assert exc_info.value.kind == ErrorKind.GUARD_UNAVAILABLE
    assert exc_info.value.status_code == 503
