"""Queue-delivered job execution.

Deliveries are at-least-once, so `process_job` is a function of the job id
and the stored row only: terminal jobs are rejected, the queued→processing
claim is a conditional UPDATE, and the failure refund reuses the job's key.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as redis
from sqlalchemy import update

from config import settings
from database import async_session_maker, engine
from models.job import Job
from models.project import Project
from services.credits import compensate
from services.errors import ErrorKind, JobDeferred, TerminalJobError
from services.guards import (
    acquire_inflight_lock,
    release_inflight_lock,
    release_provider_budget,
    reserve_provider_budget,
)
from services.jobs import get_job, mark_job_failed
from services.kv_store import get_redis_client
from services.live_refresh import run_live_refresh

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    job_id: str
    status: str
    result_count: int = 0
    refunded: bool = False
    error: Optional[str] = None


async def _claim(db, job_id: str) -> bool:
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == "queued")
        .values(status="processing", started_at=datetime.now(timezone.utc), error_message=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _mark_completed(db, job_id: str, result_count: int) -> bool:
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == "processing")
        .values(status="completed", result_count=result_count, completed_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def process_job(job_id: str, *, store=None, provider=None) -> JobOutcome:
    """Execute one delivery of `job_id`.

    Raises TerminalJobError when the job is missing or already terminal and
    JobDeferred when it cannot start yet; domain failures are settled here
    (job failed + refund) and returned as an outcome.
    """
    store = store if store is not None else get_redis_client()
    run = provider or run_live_refresh

    async with async_session_maker() as db:
        job = await get_job(db, job_id)
        if not job:
            logger.error("Job %s not found", job_id)
            raise TerminalJobError(ErrorKind.JOB_NOT_FOUND, job_id)
        if job.is_terminal:
            logger.info("Job %s already terminal (status=%s)", job_id, job.status)
            raise TerminalJobError(ErrorKind.JOB_ALREADY_TERMINAL, job_id)

        user_id = job.user_id
        project_id = job.project_id
        idempotency_key = job.idempotency_key
        credits_charged = int(job.credits_charged or 0)
        lock_key = f"project:{project_id}"

        if not await acquire_inflight_lock(store, lock_key):
            raise JobDeferred(job_id, "refresh already in progress for this project")
        try:
            reservation = await reserve_provider_budget(store, settings.LIVE_REFRESH_PROVIDER_CALLS)
            if not reservation.granted:
                raise JobDeferred(job_id, f"provider budget exhausted, retry in {reservation.retry_after_seconds}s")

            if not await _claim(db, job_id):
                logger.info("Job %s already claimed by another worker", job_id)
                await release_provider_budget(store, reservation)
                return JobOutcome(job_id=job_id, status="processing")

            logger.info("Job %s claimed project=%s user=%s", job_id, project_id, user_id)
            try:
                project = await db.get(Project, project_id)
                if project is None:
                    raise LookupError(f"PROJECT_NOT_FOUND: projectId={project_id}")
                result_count = await run(project)
            except Exception as exc:
                message = f"WORKER_ERROR: {exc}"[:240]
                logger.exception("Job %s failed key=%s", job_id, idempotency_key)
                await db.rollback()
                await mark_job_failed(db, job_id, message)
                refunded = False
                if credits_charged > 0:
                    refund = await compensate(
                        user_id,
                        credits_charged,
                        idempotency_key,
                        f"Live refresh job {job_id} failed",
                        db,
                    )
                    refunded = refund.success
                return JobOutcome(job_id=job_id, status="failed", refunded=refunded, error=message)

            count = int(result_count or 0)
            if not await _mark_completed(db, job_id, count):
                # Terminalized while the provider ran; the stored status wins.
                stored = await get_job(db, job_id)
                status = stored.status if stored else "failed"
                logger.warning("Job %s finished after leaving processing (status=%s)", job_id, status)
                return JobOutcome(job_id=job_id, status=status, result_count=count)
            logger.info("Job %s completed results=%s key=%s", job_id, count, idempotency_key)
            return JobOutcome(job_id=job_id, status="completed", result_count=count)
        finally:
            await release_inflight_lock(store, lock_key)


async def _process_job_task_async(job_id: str) -> None:
    store = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        await process_job(job_id, store=store)
    except TerminalJobError as exc:
        logger.warning("Dropping delivery: %s", exc.message)
    finally:
        await store.aclose()
        await engine.dispose()


def process_job_task(job_id: str) -> None:
    """RQ worker entrypoint. JobDeferred propagates so RQ schedules a retry."""
    asyncio.run(_process_job_task_async(job_id))
