from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from config import settings
from conftest import read_balance, seed_account, seed_job
from models.job import Job
from services import credits
from services.credits import LedgerResult
from services.errors import ErrorKind
from services.reconciler import reconcile_stale_jobs


USER_ID = "stale-user"
PROJECT_ID = "project-s"


def _minutes_ago(minutes: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


@pytest.mark.asyncio
async def test_stale_queued_job_is_failed_and_refunded_once(session_maker):
    await seed_account(session_maker, USER_ID, total=10, project_id=PROJECT_ID)
    job_id = await seed_job(session_maker, USER_ID, PROJECT_ID, key="stale-1", created_at=_minutes_ago(15))

    async with session_maker() as session:
        first = await reconcile_stale_jobs(session)
    async with session_maker() as session:
        second = await reconcile_stale_jobs(session)

    assert first == [{"jobId": job_id, "refunded": True}]
    assert second == []
    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 0, "remaining": 10}

    async with session_maker() as session:
        job = await session.get(Job, job_id)
    assert job.status == "failed"
    assert job.error_message.startswith("STALE_QUEUED_JOB_RECONCILED: queued since ")
    assert "exceeded 10m threshold" in job.error_message


@pytest.mark.asyncio
async def test_fresh_and_terminal_jobs_are_left_alone(session_maker):
    await seed_account(session_maker, USER_ID, total=10, project_id=PROJECT_ID)
    await seed_job(session_maker, USER_ID, PROJECT_ID, key="fresh", created_at=_minutes_ago(2))
    await seed_job(session_maker, USER_ID, PROJECT_ID, key="done", status="completed", created_at=_minutes_ago(60))

    async with session_maker() as session:
        assert await reconcile_stale_jobs(session) == []

    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 6, "remaining": 4}


@pytest.mark.asyncio
async def test_processing_job_uses_longer_threshold(session_maker):
    await seed_account(session_maker, USER_ID, total=10, project_id=PROJECT_ID)
    running = await seed_job(
        session_maker,
        USER_ID,
        PROJECT_ID,
        key="running",
        status="processing",
        created_at=_minutes_ago(20),
        started_at=_minutes_ago(15),
    )
    stuck = await seed_job(
        session_maker,
        USER_ID,
        PROJECT_ID,
        key="stuck",
        status="processing",
        created_at=_minutes_ago(50),
        started_at=_minutes_ago(45),
    )

    async with session_maker() as session:
        results = await reconcile_stale_jobs(session)

    assert results == [{"jobId": stuck, "refunded": True}]
    async with session_maker() as session:
        assert (await session.get(Job, running)).status == "processing"
        stuck_job = await session.get(Job, stuck)
    assert stuck_job.error_message.startswith("STALE_PROCESSING_JOB_RECONCILED")


@pytest.mark.asyncio
async def test_refund_failure_is_reported_and_other_jobs_still_settle(session_maker):
    await seed_account(session_maker, USER_ID, total=10, project_id=PROJECT_ID)
    orphan = await seed_job(
        session_maker, USER_ID, PROJECT_ID, key="no-debit", debit=False, created_at=_minutes_ago(40)
    )
    healthy = await seed_job(session_maker, USER_ID, PROJECT_ID, key="with-debit", created_at=_minutes_ago(30))

    async with session_maker() as session:
        results = await reconcile_stale_jobs(session)

    by_job = {result["jobId"]: result for result in results}
    assert by_job[orphan]["refunded"] is False
    assert "DEBIT_NOT_FOUND" in by_job[orphan]["error"]
    assert by_job[healthy] == {"jobId": healthy, "refunded": True}
    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 0, "remaining": 10}


@pytest.mark.asyncio
async def test_cron_endpoint_requires_secret(api_client, session_maker):
    await seed_account(session_maker, USER_ID, total=10, project_id=PROJECT_ID)
    job_id = await seed_job(session_maker, USER_ID, PROJECT_ID, key="cron-stale", created_at=_minutes_ago(11))

    with patch.object(settings, "CRON_SECRET", "cron-test-secret"):
        denied = await api_client.get("/cron/reconcile-jobs", headers={"Authorization": "Bearer wrong"})
        missing = await api_client.get("/cron/reconcile-jobs")
        allowed = await api_client.get(
            "/cron/reconcile-jobs", headers={"Authorization": "Bearer cron-test-secret"}
        )
        empty = await api_client.get("/cron/reconcile-jobs", headers={"Authorization": "cron-test-secret"})

    assert denied.status_code == 401
    assert missing.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json() == {
        "success": True,
        "reconciled": 1,
        "results": [{"jobId": job_id, "refunded": True}],
    }
    assert empty.json()["reconciled"] == 0
    assert empty.json()["message"] == "No stale jobs found"


def _ledger_failure(key: str) -> LedgerResult:
    return LedgerResult(
        success=False,
        remaining=None,
        idempotency_key=key,
        error=ErrorKind.LEDGER_ERROR,
        message="database unavailable",
    )


@pytest.mark.asyncio
async def test_failed_refund_is_retried_on_next_sweep(session_maker):
    await seed_account(session_maker, USER_ID, total=10, project_id=PROJECT_ID)
    job_id = await seed_job(session_maker, USER_ID, PROJECT_ID, key="refund-later", created_at=_minutes_ago(15))

    with patch("services.reconciler.compensate", AsyncMock(return_value=_ledger_failure("refund-later"))):
        async with session_maker() as session:
            first = await reconcile_stale_jobs(session)

    assert first == [{"jobId": job_id, "refunded": False, "error": "refund failed: LEDGER_ERROR"}]
    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 3, "remaining": 7}
    async with session_maker() as session:
        assert (await session.get(Job, job_id)).status == "failed"

    async with session_maker() as session:
        second = await reconcile_stale_jobs(session)
    async with session_maker() as session:
        third = await reconcile_stale_jobs(session)

    assert second == [{"jobId": job_id, "refunded": True}]
    assert third == []
    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 0, "remaining": 10}


@pytest.mark.asyncio
async def test_debit_without_job_is_refunded_once_stale(session_maker):
    await seed_account(session_maker, USER_ID, total=10, project_id=PROJECT_ID)
    async with session_maker() as session:
        debit = await credits.deduct(
            USER_ID, 3, feature="live_refresh", description="Live refresh", idempotency_key="lost-job", db=session
        )
    assert debit.success

    async with session_maker() as session:
        fresh = await reconcile_stale_jobs(session)
    assert fresh == []

    later = datetime.now(timezone.utc) + timedelta(minutes=30)
    async with session_maker() as session:
        first = await reconcile_stale_jobs(session, now=later)
    async with session_maker() as session:
        second = await reconcile_stale_jobs(session, now=later)

    assert first == [{"jobId": None, "idempotencyKey": "lost-job", "refunded": True}]
    assert second == []
    assert await read_balance(session_maker, USER_ID) == {"total": 10, "used": 0, "remaining": 10}
