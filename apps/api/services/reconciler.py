"""Periodic sweep that terminates stale jobs and refunds their charges.

Besides stale jobs, each sweep retries refunds that did not land the first
time: failed jobs whose debit was never reversed, and debits left behind by a
request that died before its job row was written.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, literal, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import aliased

from config import settings
from models.credit_transaction import CreditTransaction
from models.job import Job
from services.credits import compensate
from services.errors import ReconciliationError
from services.idempotency import REFUND_KEY_PREFIX
from services.jobs import LIVE_REFRESH_KIND, mark_job_failed

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _refund_recorded(debit_key):
    refund_row = aliased(CreditTransaction)
    return select(refund_row.id).where(refund_row.idempotency_key == literal(REFUND_KEY_PREFIX) + debit_key).exists()


def _snapshot(job: Job, now: datetime) -> Dict[str, Any]:
    return {
        "id": job.id,
        "user_id": job.user_id,
        "status": job.status,
        "credits_charged": int(job.credits_charged or 0),
        "idempotency_key": job.idempotency_key,
        "created_at": _as_utc(job.created_at) if job.created_at else now,
    }


async def _find_stale_jobs(db: AsyncSession, now: datetime) -> List[Dict[str, Any]]:
    queued_cutoff = now - timedelta(minutes=max(int(settings.STALE_JOB_THRESHOLD_MINUTES), 1))
    processing_cutoff = now - timedelta(minutes=max(int(settings.STALE_PROCESSING_THRESHOLD_MINUTES), 1))
    result = await db.execute(
        select(Job).where(
            or_(
                and_(Job.status == "queued", Job.created_at < queued_cutoff),
                and_(
                    Job.status == "processing",
                    func.coalesce(Job.started_at, Job.created_at) < processing_cutoff,
                ),
            )
        ).order_by(Job.created_at)
    )
    # Snapshot plain values: each job is settled in its own transaction below.
    return [_snapshot(job, now) for job in result.scalars().all()]


async def _find_unrefunded_failed_jobs(db: AsyncSession, now: datetime) -> List[Dict[str, Any]]:
    debit_recorded = (
        select(CreditTransaction.id)
        .where(CreditTransaction.idempotency_key == Job.idempotency_key, CreditTransaction.type == "debit")
        .exists()
    )
    result = await db.execute(
        select(Job)
        .where(
            Job.status == "failed",
            Job.credits_charged > 0,
            debit_recorded,
            ~_refund_recorded(Job.idempotency_key),
        )
        .order_by(Job.created_at)
    )
    return [_snapshot(job, now) for job in result.scalars().all()]


async def _find_orphaned_debits(db: AsyncSession, now: datetime) -> List[Dict[str, Any]]:
    cutoff = now - timedelta(minutes=max(int(settings.STALE_JOB_THRESHOLD_MINUTES), 1))
    job_recorded = select(Job.id).where(Job.idempotency_key == CreditTransaction.idempotency_key).exists()
    result = await db.execute(
        select(CreditTransaction)
        .where(
            CreditTransaction.type == "debit",
            CreditTransaction.feature == LIVE_REFRESH_KIND,
            CreditTransaction.created_at < cutoff,
            ~job_recorded,
            ~_refund_recorded(CreditTransaction.idempotency_key),
        )
        .order_by(CreditTransaction.created_at)
    )
    return [
        {
            "user_id": entry.user_id,
            "amount": abs(int(entry.amount)),
            "idempotency_key": entry.idempotency_key,
        }
        for entry in result.scalars().all()
    ]


def _refund_error(label: str, refund) -> ReconciliationError:
    return ReconciliationError(label, f"refund failed: {refund.error.value if refund.error else 'UNKNOWN'}")


async def _reconcile_one(db: AsyncSession, job: Dict[str, Any]) -> Dict[str, Any]:
    if job["status"] == "failed":
        # Already terminal: only the refund is outstanding.
        refund = await compensate(
            job["user_id"],
            job["credits_charged"],
            job["idempotency_key"],
            f"Refund retry for failed job {job['id']}",
            db,
        )
        if not refund.success:
            raise _refund_error(job["id"], refund)
        logger.info("Refund retried job=%s user=%s credits=%s", job["id"], job["user_id"], job["credits_charged"])
        return {"jobId": job["id"], "refunded": True}

    if job["status"] == "queued":
        threshold = int(settings.STALE_JOB_THRESHOLD_MINUTES)
        message = (
            f"STALE_QUEUED_JOB_RECONCILED: queued since {job['created_at'].isoformat()}, "
            f"exceeded {threshold}m threshold"
        )
    else:
        threshold = int(settings.STALE_PROCESSING_THRESHOLD_MINUTES)
        message = (
            f"STALE_PROCESSING_JOB_RECONCILED: queued since {job['created_at'].isoformat()}, "
            f"processing exceeded {threshold}m threshold"
        )

    if not await mark_job_failed(db, job["id"], message, from_statuses=(job["status"],)):
        # A worker or a concurrent sweep terminalized it first; a missed refund is retried next sweep.
        return {"jobId": job["id"], "refunded": False, "skipped": True}

    refunded = False
    if job["credits_charged"] > 0:
        refund = await compensate(
            job["user_id"],
            job["credits_charged"],
            job["idempotency_key"],
            f"Stale job {job['id']} auto-reconciled",
            db,
        )
        if not refund.success:
            raise _refund_error(job["id"], refund)
        refunded = True

    logger.info(
        "Stale job reconciled job=%s user=%s credits=%s refunded=%s since=%s",
        job["id"],
        job["user_id"],
        job["credits_charged"],
        refunded,
        job["created_at"].isoformat(),
    )
    return {"jobId": job["id"], "refunded": refunded}


async def _refund_orphaned_debit(db: AsyncSession, debit: Dict[str, Any]) -> Dict[str, Any]:
    refund = await compensate(
        debit["user_id"],
        debit["amount"],
        debit["idempotency_key"],
        "Live refresh debit without a job auto-reconciled",
        db,
    )
    if not refund.success:
        raise _refund_error(debit["idempotency_key"], refund)
    logger.info("Orphaned debit refunded user=%s credits=%s key=%s", debit["user_id"], debit["amount"], debit["idempotency_key"])
    return {"jobId": None, "idempotencyKey": debit["idempotency_key"], "refunded": True}


def _error_entry(exc: Exception, **fields: Any) -> Dict[str, Any]:
    message = exc.message if isinstance(exc, ReconciliationError) else (str(exc) or exc.__class__.__name__)
    return {**fields, "refunded": False, "error": message}


async def reconcile_stale_jobs(db: AsyncSession, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Fail and refund every stale job, then retry outstanding refunds.

    Each entry is independent; errors are collected, not raised.
    """
    current = now or datetime.now(timezone.utc)
    stale_jobs = await _find_stale_jobs(db, current)
    unrefunded_jobs = await _find_unrefunded_failed_jobs(db, current)
    orphaned_debits = await _find_orphaned_debits(db, current)
    await db.commit()

    results: List[Dict[str, Any]] = []
    for job in stale_jobs + unrefunded_jobs:
        try:
            results.append(await _reconcile_one(db, job))
        except Exception as exc:
            await db.rollback()
            logger.exception("Failed to reconcile job %s", job["id"])
            results.append(_error_entry(exc, jobId=job["id"]))

    for debit in orphaned_debits:
        try:
            results.append(await _refund_orphaned_debit(db, debit))
        except Exception as exc:
            await db.rollback()
            logger.exception("Failed to refund orphaned debit key=%s", debit["idempotency_key"])
            results.append(_error_entry(exc, jobId=None, idempotencyKey=debit["idempotency_key"]))
    return results
