"""Credit ledger: the only code path that changes a user's credit balance.

Every state-changing call writes exactly one `CreditTransaction` keyed by an
idempotency key. The unique index on that key is what makes retries safe: a
second call with the same key finds the prior row and returns without
re-applying the balance change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import CreditAccount
from models.credit_transaction import CreditTransaction
from services.errors import ErrorKind, ValidationError
from services.idempotency import refund_key
from services.users import ensure_user

logger = logging.getLogger(__name__)


@dataclass
class CreditBalance:
    total: int
    used: int
    remaining: int


@dataclass
class LedgerResult:
    success: bool
    remaining: Optional[int]
    idempotency_key: str
    duplicate: bool = False
    error: Optional[ErrorKind] = None
    message: Optional[str] = None


def _balance_of(account: CreditAccount) -> CreditBalance:
    total = int(account.credits_total or 0)
    used = int(account.credits_used or 0)
    return CreditBalance(total=total, used=used, remaining=max(total - used, 0))


async def _find_transaction(db: AsyncSession, idempotency_key: str) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(CreditTransaction.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def _load_account(db: AsyncSession, user_id: str, *, lock: bool = False) -> Optional[CreditAccount]:
    query = select(CreditAccount).where(CreditAccount.user_id == user_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def _ensure_account(db: AsyncSession, user_id: str) -> CreditAccount:
    account = await _load_account(db, user_id, lock=True)
    if account:
        return account
    await ensure_user(db, user_id)
    account = CreditAccount(user_id=user_id, credits_total=0, credits_used=0)
    db.add(account)
    await db.flush()
    return account


async def _replay(db: AsyncSession, prior: CreditTransaction, user_id: str, idempotency_key: str) -> LedgerResult:
    if prior.user_id != user_id:
        raise ValidationError("Idempotency key already belongs to another account.")
    account = await _load_account(db, user_id)
    remaining = _balance_of(account).remaining if account else 0
    await db.commit()
    return LedgerResult(success=True, remaining=remaining, idempotency_key=idempotency_key, duplicate=True)


async def _apply(
    db: AsyncSession,
    *,
    user_id: str,
    idempotency_key: str,
    statement,
    entry: Dict[str, Any],
    requires_funds: int = 0,
) -> LedgerResult:
    """Run one atomic ledger mutation.

    The account row is locked, the transaction row is inserted (serializing on
    the unique key), then the guarded UPDATE runs. Any failure rolls all of it
    back, so either both rows change or neither does.
    """
    try:
        prior = await _find_transaction(db, idempotency_key)
        if prior is not None:
            return await _replay(db, prior, user_id, idempotency_key)

        await _ensure_account(db, user_id)
        db.add(CreditTransaction(user_id=user_id, idempotency_key=idempotency_key, **entry))
        await db.flush()

        result = await db.execute(statement)
        if result.rowcount == 0:
            await db.rollback()
            account = await _load_account(db, user_id)
            remaining = _balance_of(account).remaining if account else 0
            await db.commit()
            return LedgerResult(
                success=False,
                remaining=remaining,
                idempotency_key=idempotency_key,
                error=ErrorKind.INSUFFICIENT_CREDITS,
                message=f"Insufficient credits. Required: {requires_funds}, available: {remaining}.",
            )

        account = await _load_account(db, user_id)
        remaining = _balance_of(account).remaining
        await db.execute(
            update(CreditTransaction)
            .where(CreditTransaction.idempotency_key == idempotency_key)
            .values(balance_after=remaining)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return LedgerResult(success=True, remaining=remaining, idempotency_key=idempotency_key)
    except IntegrityError:
        # Lost the race on the unique key: another caller applied this operation.
        await db.rollback()
        prior = await _find_transaction(db, idempotency_key)
        if prior is not None:
            return await _replay(db, prior, user_id, idempotency_key)
        logger.exception("Ledger integrity failure user=%s key=%s", user_id, idempotency_key)
        return LedgerResult(
            success=False,
            remaining=None,
            idempotency_key=idempotency_key,
            error=ErrorKind.LEDGER_ERROR,
            message="Ledger integrity failure.",
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Ledger operation failed user=%s key=%s", user_id, idempotency_key)
        return LedgerResult(
            success=False,
            remaining=None,
            idempotency_key=idempotency_key,
            error=ErrorKind.LEDGER_ERROR,
            message=str(exc)[:240],
        )


def _require_key(idempotency_key: Optional[str]) -> str:
    key = (idempotency_key or "").strip()
    if not key:
        raise ValidationError("idempotency_key is required for ledger operations.")
    return key


def _require_positive(amount: int) -> int:
    value = int(amount)
    if value <= 0:
        raise ValidationError("amount must be greater than 0")
    return value


async def has_refund(db: AsyncSession, debit_key: str) -> bool:
    return await _find_transaction(db, refund_key(debit_key)) is not None


async def get_balance(user_id: str, db: AsyncSession) -> CreditBalance:
    """Return the user's balance, creating a zeroed account on first access."""
    account = await _load_account(db, user_id)
    if account:
        return _balance_of(account)
    try:
        account = await _ensure_account(db, user_id)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        account = await _load_account(db, user_id)
    return _balance_of(account)


async def deduct(
    user_id: str,
    amount: int,
    *,
    feature: str,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
    idempotency_key: str,
    db: AsyncSession,
) -> LedgerResult:
    """Atomically consume credits. Replaying a key returns the prior outcome."""
    cost = _require_positive(amount)
    key = _require_key(idempotency_key)
    statement = (
        update(CreditAccount)
        .where(
            CreditAccount.user_id == user_id,
            CreditAccount.credits_total - CreditAccount.credits_used >= cost,
        )
        .values(credits_used=CreditAccount.credits_used + cost)
        .execution_options(synchronize_session=False)
    )
    result = await _apply(
        db,
        user_id=user_id,
        idempotency_key=key,
        statement=statement,
        entry={
            "amount": -cost,
            "type": "debit",
            "feature": feature,
            "description": description,
            "metadata_json": metadata or {},
        },
        requires_funds=cost,
    )
    if result.success and not result.duplicate:
        logger.info("Debited %s credits user=%s feature=%s key=%s", cost, user_id, feature, key)
    return result


async def refund(
    user_id: str,
    amount: int,
    *,
    idempotency_key: str,
    reason: str,
    db: AsyncSession,
) -> LedgerResult:
    """Credit back a debit identified by the debit's own idempotency key."""
    credits = _require_positive(amount)
    debit_key = _require_key(idempotency_key)

    debit = await _find_transaction(db, debit_key)
    if debit is None or debit.type != "debit" or debit.user_id != user_id:
        await db.rollback()
        return LedgerResult(
            success=False,
            remaining=None,
            idempotency_key=debit_key,
            error=ErrorKind.DEBIT_NOT_FOUND,
            message=f"No debit recorded for key {debit_key}.",
        )
    if credits > abs(int(debit.amount)):
        raise ValidationError("Refund amount exceeds the original debit.")

    # A plan reset may already have zeroed usage; spill the remainder into the total.
    has_usage = CreditAccount.credits_used >= credits
    statement = (
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(
            credits_used=case((has_usage, CreditAccount.credits_used - credits), else_=0),
            credits_total=case(
                (has_usage, CreditAccount.credits_total),
                else_=CreditAccount.credits_total + (credits - CreditAccount.credits_used),
            ),
        )
        .execution_options(synchronize_session=False)
    )
    result = await _apply(
        db,
        user_id=user_id,
        idempotency_key=refund_key(debit_key),
        statement=statement,
        entry={
            "amount": credits,
            "type": "refund",
            "feature": debit.feature,
            "description": reason,
            "metadata_json": {"debit_key": debit_key},
        },
    )
    result.idempotency_key = debit_key
    return result


async def compensate(
    user_id: str,
    amount: int,
    idempotency_key: str,
    reason: str,
    db: AsyncSession,
) -> LedgerResult:
    """Saga compensation step: reverse the debit keyed `idempotency_key` exactly once."""
    result = await refund(user_id, amount, idempotency_key=idempotency_key, reason=reason, db=db)
    if result.success:
        logger.info(
            "Compensated %s credits user=%s key=%s duplicate=%s reason=%s",
            amount,
            user_id,
            idempotency_key,
            result.duplicate,
            reason,
        )
    else:
        logger.error(
            "Compensation failed user=%s key=%s error=%s message=%s",
            user_id,
            idempotency_key,
            result.error.value if result.error else None,
            result.message,
        )
    return result


async def grant(
    user_id: str,
    amount: int,
    *,
    idempotency_key: str,
    description: str,
    external_ref: Optional[str] = None,
    db: AsyncSession,
) -> LedgerResult:
    """Add purchased credits to the account total."""
    credits = _require_positive(amount)
    key = _require_key(idempotency_key)
    statement = (
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(credits_total=CreditAccount.credits_total + credits)
        .execution_options(synchronize_session=False)
    )
    return await _apply(
        db,
        user_id=user_id,
        idempotency_key=key,
        statement=statement,
        entry={
            "amount": credits,
            "type": "credit",
            "feature": "purchase",
            "description": description,
            "external_ref": external_ref,
        },
    )


async def reset_to_plan(
    user_id: str,
    credits: int,
    *,
    idempotency_key: str,
    description: str,
    external_ref: Optional[str] = None,
    db: AsyncSession,
) -> LedgerResult:
    """Replace the balance with a plan entitlement: total=credits, used=0."""
    entitlement = max(int(credits), 0)
    key = _require_key(idempotency_key)
    statement = (
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(credits_total=entitlement, credits_used=0)
        .execution_options(synchronize_session=False)
    )
    return await _apply(
        db,
        user_id=user_id,
        idempotency_key=key,
        statement=statement,
        entry={
            "amount": entitlement,
            "type": "reset",
            "feature": "subscription",
            "description": description,
            "external_ref": external_ref,
        },
    )


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_balance(user_id, db)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "total": balance.total,
        "used": balance.used,
        "remaining": balance.remaining,
        "costs": {
            "live_refresh": max(int(settings.LIVE_REFRESH_CREDIT_COST), 0),
        },
        "recent_entries": [
            {
                "id": entry.id,
                "type": entry.type,
                "amount": entry.amount,
                "balance_after": entry.balance_after,
                "description": entry.description,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
