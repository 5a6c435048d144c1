"""Live refresh job orchestration: guards, debit, job row, publish."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from redis.exceptions import RedisError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.job import Job
from models.project import Project
from services.credits import compensate, deduct, has_refund
from services.errors import (
    ErrorKind,
    InsufficientCredits,
    JobCreationError,
    LedgerError,
    ProjectNotFound,
    QueuePublishError,
    ValidationError,
)
from services.guards import check_cooldown, check_daily_cap, record_daily_usage, set_cooldown
from services.idempotency import IDEMPOTENCY_HEADER, build_job_key
from services.job_queue import LoopbackDestinationError, is_loopback_url

logger = logging.getLogger(__name__)

LIVE_REFRESH_KIND = "live_refresh"
LIVE_REFRESH_KEY_PREFIX = "live-refresh"
NON_TERMINAL_STATUSES = ("queued", "processing")


@dataclass
class LiveRefreshRequestResult:
    job_id: str
    status: str
    remaining_credits: Optional[int]
    duplicate: bool


async def get_job(db: AsyncSession, job_id: str) -> Optional[Job]:
    result = await db.execute(select(Job).where(Job.id == job_id).execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_job_for_user(db: AsyncSession, job_id: str, user_id: str) -> Optional[Job]:
    result = await db.execute(select(Job).where(Job.id == job_id, Job.user_id == user_id))
    return result.scalar_one_or_none()


async def find_job_by_key(db: AsyncSession, idempotency_key: str) -> Optional[Job]:
    result = await db.execute(select(Job).where(Job.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def mark_job_failed(
    db: AsyncSession,
    job_id: str,
    message: str,
    *,
    from_statuses: Sequence[str] = NON_TERMINAL_STATUSES,
) -> bool:
    """Move a job to `failed` unless it already left `from_statuses`. Returns whether this call did it."""
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status.in_(tuple(from_statuses)))
        .values(status="failed", error_message=message[:1000], failed_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _get_owned_project(db: AsyncSession, user_id: str, project_id: str) -> Project:
    result = await db.execute(select(Project).where(Project.id == project_id, Project.user_id == user_id))
    project = result.scalar_one_or_none()
    if not project:
        raise ProjectNotFound(project_id)
    return project


def _ensure_public_callback(publisher) -> None:
    if not getattr(publisher, "delivers_over_http", False):
        return
    try:
        url = publisher.callback_url
    except ValueError as exc:
        raise QueuePublishError(str(exc), kind=ErrorKind.PUBLIC_URL_INVALID) from exc
    if is_loopback_url(url):
        raise QueuePublishError(
            f"Queue callback {url} is not publicly reachable.",
            kind=ErrorKind.PUBLIC_URL_INVALID,
        )


async def request_live_refresh(
    user_id: str,
    project_id: str,
    nonce: str,
    *,
    db: AsyncSession,
    store,
    publisher,
) -> LiveRefreshRequestResult:
    """Charge for and queue one live refresh of `project_id`.

    Order is fixed: guards, debit, job row, publish. Guards run before the
    debit so a rejection never costs credits. A publish failure marks the job
    failed and refunds through the debit's own key before surfacing.
    """
    await _get_owned_project(db, user_id, project_id)

    idempotency_key = build_job_key(LIVE_REFRESH_KEY_PREFIX, user_id, project_id, nonce)
    existing = await find_job_by_key(db, idempotency_key)
    if existing:
        logger.info("Duplicate live refresh request job=%s key=%s", existing.id, idempotency_key)
        return LiveRefreshRequestResult(
            job_id=existing.id,
            status=existing.status,
            remaining_credits=None,
            duplicate=True,
        )

    await check_cooldown(store, user_id, project_id)
    await check_daily_cap(store, user_id)
    _ensure_public_callback(publisher)

    cost = int(settings.LIVE_REFRESH_CREDIT_COST)
    debit = await deduct(
        user_id,
        cost,
        feature=LIVE_REFRESH_KIND,
        description="Live refresh",
        metadata={"projectId": project_id, "mode": "paid_live_refresh"},
        idempotency_key=idempotency_key,
        db=db,
    )
    if not debit.success:
        if debit.error == ErrorKind.INSUFFICIENT_CREDITS:
            raise InsufficientCredits(required=cost, remaining=int(debit.remaining or 0))
        raise LedgerError(debit.message or "Credit deduction failed.")

    if debit.duplicate and await has_refund(db, idempotency_key):
        # An earlier attempt with this key failed before its job row existed and was refunded.
        raise ValidationError(
            f"{IDEMPOTENCY_HEADER} was used by a refunded request. Retry with a new key."
        )

    job = Job(
        user_id=user_id,
        project_id=project_id,
        kind=LIVE_REFRESH_KIND,
        status="queued",
        provider=settings.PROVIDER_NAME,
        credits_charged=cost,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    try:
        await db.commit()
    except Exception as exc:
        await db.rollback()
        if isinstance(exc, IntegrityError):
            # A concurrent submission with the same key created the job first.
            existing = await find_job_by_key(db, idempotency_key)
            if existing is not None:
                return LiveRefreshRequestResult(
                    job_id=existing.id,
                    status=existing.status,
                    remaining_credits=None,
                    duplicate=True,
                )
        logger.exception("Job insert failed after debit key=%s", idempotency_key)
        refund = await compensate(user_id, cost, idempotency_key, "Live refresh job creation failure", db)
        raise JobCreationError(refunded=refund.success) from exc
    job_id = job.id

    try:
        message_id = await publisher.publish(
            {"type": LIVE_REFRESH_KIND, "jobId": job_id},
            retries=settings.QUEUE_PUBLISH_RETRIES,
        )
    except Exception as exc:
        raw_message = str(exc).strip() or exc.__class__.__name__
        detail = f"QUEUE_PUBLISH_FAILED: err={raw_message}"[:240]
        logger.error("Queue publish failed job=%s key=%s error=%s", job_id, idempotency_key, raw_message)

        await mark_job_failed(db, job_id, detail)
        await compensate(user_id, cost, idempotency_key, "Live refresh queue failure", db)

        if isinstance(exc, LoopbackDestinationError):
            raise QueuePublishError(
                "Queue callback URL is not publicly reachable. Credits were refunded.",
                kind=ErrorKind.PUBLIC_URL_INVALID,
            ) from exc
        raise QueuePublishError("Job queue unavailable. Credits were refunded.") from exc

    await db.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(queue_message_id=message_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Live refresh queued job=%s message=%s key=%s", job_id, message_id, idempotency_key)

    try:
        await set_cooldown(store, user_id, project_id)
        await record_daily_usage(store, user_id)
    except RedisError as exc:
        logger.warning("Could not record cooldown/daily usage for job=%s: %s", job_id, exc)

    return LiveRefreshRequestResult(
        job_id=job_id,
        status="queued",
        remaining_credits=debit.remaining,
        duplicate=False,
    )
