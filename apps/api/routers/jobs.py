"""Paid job router: live refresh requests and job status."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.job import Job
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.idempotency import IDEMPOTENCY_HEADER, resolve_request_nonce
from services.job_queue import get_publisher
from services.jobs import get_job_for_user, request_live_refresh
from services.kv_store import get_store
from services.users import ensure_user

router = APIRouter()


class LiveRefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId", min_length=1, max_length=64)


class LiveRefreshResponse(BaseModel):
    jobId: str
    status: str
    remainingCredits: Optional[int] = None
    duplicate: bool


class JobResponse(BaseModel):
    jobId: str
    projectId: str
    status: str
    provider: str
    creditsCharged: int
    resultCount: int
    errorMessage: Optional[str] = None
    createdAt: Optional[str] = None
    failedAt: Optional[str] = None
    completedAt: Optional[str] = None


def _serialize_job(job: Job) -> JobResponse:
    return JobResponse(
        jobId=job.id,
        projectId=job.project_id,
        status=job.status,
        provider=job.provider,
        creditsCharged=int(job.credits_charged or 0),
        resultCount=int(job.result_count or 0),
        errorMessage=job.error_message,
        createdAt=job.created_at.isoformat() if job.created_at else None,
        failedAt=job.failed_at.isoformat() if job.failed_at else None,
        completedAt=job.completed_at.isoformat() if job.completed_at else None,
    )


@router.post("/live-refresh", response_model=LiveRefreshResponse)
async def create_live_refresh_job(
    request: LiveRefreshRequest,
    idempotency_key: Optional[str] = Header(default=None, alias=IDEMPOTENCY_HEADER),
    _rate_limit: None = Depends(rate_limit("live_refresh_create", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    store=Depends(get_store),
    publisher=Depends(get_publisher),
):
    """Charge credits and queue a live refresh for one of the caller's projects."""
    await ensure_user(db, auth.user_id, auth.email)
    await db.commit()

    result = await request_live_refresh(
        auth.user_id,
        request.project_id,
        resolve_request_nonce(idempotency_key),
        db=db,
        store=store,
        publisher=publisher,
    )
    return LiveRefreshResponse(
        jobId=result.job_id,
        status=result.status,
        remainingCredits=result.remaining_credits,
        duplicate=result.duplicate,
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job_status(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get job status for the current user."""
    job = await get_job_for_user(db, job_id, auth.user_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _serialize_job(job)
