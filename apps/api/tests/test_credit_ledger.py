from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from conftest import read_balance, seed_account
from models.credit_transaction import CreditTransaction
from services import credits
from services.errors import ErrorKind, ValidationError


USER_ID = "ledger-user"


async def _transactions(session_maker, user_id: str = USER_ID):
    async with session_maker() as session:
        result = await session.execute(
            select(CreditTransaction).where(CreditTransaction.user_id == user_id).order_by(CreditTransaction.created_at)
        )
        return result.scalars().all()


@pytest.mark.asyncio
async def test_get_balance_creates_missing_account(session_maker):
    async with session_maker() as session:
        balance = await credits.get_balance("brand-new-user", session)

    assert (balance.total, balance.used, balance.remaining) == (0, 0, 0)
    assert await read_balance(session_maker, "brand-new-user") == {"total": 0, "used": 0, "remaining": 0}


@pytest.mark.asyncio
async def test_deduct_applies_once_per_key(session_maker):
    await seed_account(session_maker, USER_ID, total=10)

    async with session_maker() as session:
        first = await credits.deduct(
            USER_ID, 3, feature="live_refresh", description="Live refresh", idempotency_key="k-1", db=session
        )
    async with session_maker() as session:
        second = await credits.deduct(
            USER_ID, 3, feature="live_refresh", description="Live refresh", idempotency_key="k-1", db=session
        )

    assert first.success and not first.duplicate
    assert second.success and second.duplicate
    assert first.remaining == second.remaining == 7
    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 3, "remaining": 7}

    rows = await _transactions(session_maker)
    assert len(rows) == 1
    assert rows[0].type == "debit"
    assert rows[0].amount == -3
    assert rows[0].balance_after == 7


@pytest.mark.asyncio
async def test_deduct_that_loses_the_insert_race_replays(session_maker):
    await seed_account(session_maker, USER_ID, total=10)

    async with session_maker() as session:
        winner = await credits.deduct(
            USER_ID, 3, feature="live_refresh", description="Live refresh", idempotency_key="race", db=session
        )

    real_find = credits._find_transaction
    calls = []

    async def missed_first_lookup(db, idempotency_key):
        # The loser's pre-check ran before the winner committed.
        calls.append(idempotency_key)
        if len(calls) == 1:
            return None
        return await real_find(db, idempotency_key)

    with patch.object(credits, "_find_transaction", missed_first_lookup):
        async with session_maker() as session:
            loser = await credits.deduct(
                USER_ID, 3, feature="live_refresh", description="Live refresh", idempotency_key="race", db=session
            )

    assert len(calls) == 2
    assert winner.success and not winner.duplicate
    assert loser.success and loser.duplicate
    assert loser.remaining == winner.remaining == 7
    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 3, "remaining": 7}
    assert len(await _transactions(session_maker)) == 1


@pytest.mark.asyncio
async def test_deduct_insufficient_credits_leaves_balance_untouched(session_maker):
    await seed_account(session_maker, USER_ID, total=10, used=8)

    async with session_maker() as session:
        result = await credits.deduct(
            USER_ID, 3, feature="live_refresh", description="Live refresh", idempotency_key="k-poor", db=session
        )

    assert not result.success
    assert result.error == ErrorKind.INSUFFICIENT_CREDITS
    assert result.remaining == 2
    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 8, "remaining": 2}
    assert await _transactions(session_maker) == []


@pytest.mark.asyncio
async def test_deduct_rejects_non_positive_amount(session_maker):
    async with session_maker() as session:
        with pytest.raises(ValidationError):
            await credits.deduct(USER_ID, 0, feature="x", description="x", idempotency_key="k", db=session)


@pytest.mark.asyncio
async def test_refund_restores_exactly_once(session_maker):
    await seed_account(session_maker, USER_ID, total=10)
    async with session_maker() as session:
        await credits.deduct(
            USER_ID, 3, feature="live_refresh", description="Live refresh", idempotency_key="k-2", db=session
        )

    outcomes = []
    for _ in range(3):
        async with session_maker() as session:
            outcomes.append(await credits.refund(USER_ID, 3, idempotency_key="k-2", reason="job failed", db=session))

    assert all(outcome.success for outcome in outcomes)
    assert [outcome.duplicate for outcome in outcomes] == [False, True, True]
    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 0, "remaining": 10}

    rows = await _transactions(session_maker)
    assert sorted(row.type for row in rows) == ["debit", "refund"]
    refund_row = next(row for row in rows if row.type == "refund")
    assert refund_row.idempotency_key == "refund:k-2"


@pytest.mark.asyncio
async def test_deduct_then_refund_round_trip(session_maker):
    await seed_account(session_maker, USER_ID, total=6, used=1)
    before = await read_balance(session_maker, USER_ID)

    async with session_maker() as session:
        await credits.deduct(USER_ID, 3, feature="f", description="d", idempotency_key="k-rt", db=session)
    async with session_maker() as session:
        await credits.compensate(USER_ID, 3, "k-rt", "round trip", session)

    assert await read_balance(session_maker, USER_ID) == before


@pytest.mark.asyncio
async def test_refund_requires_matching_debit(session_maker):
    await seed_account(session_maker, USER_ID, total=10)

    async with session_maker() as session:
        missing = await credits.refund(USER_ID, 3, idempotency_key="never-debited", reason="x", db=session)
    assert not missing.success
    assert missing.error == ErrorKind.DEBIT_NOT_FOUND

    async with session_maker() as session:
        await credits.deduct(USER_ID, 2, feature="f", description="d", idempotency_key="k-small", db=session)
    async with session_maker() as session:
        with pytest.raises(ValidationError):
            await credits.refund(USER_ID, 5, idempotency_key="k-small", reason="too much", db=session)

    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 2, "remaining": 8}


@pytest.mark.asyncio
async def test_refund_after_plan_reset_spills_into_total(session_maker):
    await seed_account(session_maker, USER_ID, total=10)
    async with session_maker() as session:
        await credits.deduct(USER_ID, 3, feature="f", description="d", idempotency_key="k-before-reset", db=session)
    async with session_maker() as session:
        await credits.reset_to_plan(USER_ID, 1000, idempotency_key="ls:subscription:x:1", description="reset", db=session)
    async with session_maker() as session:
        await credits.refund(USER_ID, 3, idempotency_key="k-before-reset", reason="late failure", db=session)

    assert await read_balance(session_maker, USER_ID) == {"total": 1003, "used": 0, "remaining": 1003}


@pytest.mark.asyncio
async def test_grant_is_idempotent_per_key(session_maker):
    await seed_account(session_maker, USER_ID, total=5, used=5)

    for _ in range(2):
        async with session_maker() as session:
            result = await credits.grant(
                USER_ID, 50, idempotency_key="ls:order:991", description="Billing order", external_ref="991", db=session
            )
            assert result.success

    assert await read_balance(session_maker, USER_ID) == {"total": 55, "used": 5, "remaining": 50}
    rows = await _transactions(session_maker)
    assert [(row.type, row.external_ref) for row in rows] == [("credit", "991")]


@pytest.mark.asyncio
async def test_reset_to_plan_replaces_balance_once(session_maker):
    await seed_account(session_maker, USER_ID, total=20, used=17)

    async with session_maker() as session:
        await credits.reset_to_plan(USER_ID, 1000, idempotency_key="reset-1", description="pro", db=session)
    async with session_maker() as session:
        await credits.deduct(USER_ID, 4, feature="f", description="d", idempotency_key="after-reset", db=session)
    async with session_maker() as session:
        replay = await credits.reset_to_plan(USER_ID, 1000, idempotency_key="reset-1", description="pro", db=session)

    assert replay.duplicate
    assert await read_balance(session_maker, USER_ID) == {"total": 1000, "used": 4, "remaining": 996}


@pytest.mark.asyncio
async def test_reused_key_from_another_account_is_rejected(session_maker):
    await seed_account(session_maker, USER_ID, total=10)
    await seed_account(session_maker, "other-user", total=10)
    async with session_maker() as session:
        await credits.deduct(USER_ID, 1, feature="f", description="d", idempotency_key="shared", db=session)

    async with session_maker() as session:
        with pytest.raises(ValidationError):
            await credits.deduct("other-user", 1, feature="f", description="d", idempotency_key="shared", db=session)
