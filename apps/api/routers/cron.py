"""Scheduled maintenance endpoints, called by an external cron with a shared secret."""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.reconciler import reconcile_stale_jobs

router = APIRouter()


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    secret = (settings.CRON_SECRET or "").strip()
    supplied = (authorization or "").strip()
    if supplied.lower().startswith("bearer "):
        supplied = supplied[7:].strip()
    if not secret or not hmac.compare_digest(supplied.encode("utf-8"), secret.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/reconcile-jobs")
async def reconcile_jobs(
    _auth: None = Depends(require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    """Fail stale queued/processing jobs and refund their credits."""
    results = await reconcile_stale_jobs(db)
    if not results:
        return {"success": True, "reconciled": 0, "results": [], "message": "No stale jobs found"}
    return {"success": True, "reconciled": len(results), "results": results}
