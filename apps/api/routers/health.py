"""
Health check endpoints.
"""

from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings
from database import engine
from services.kv_store import get_redis_client

router = APIRouter()


def missing_settings() -> List[str]:
    """Names of settings without which money-moving endpoints cannot work."""
    required = {
        "CRON_SECRET": settings.CRON_SECRET,
        "BILLING_WEBHOOK_SECRET": settings.BILLING_WEBHOOK_SECRET,
    }
    if settings.QUEUE_BACKEND == "http":
        required.update(
            {
                "APP_URL": settings.APP_URL,
                "QUEUE_TOKEN": settings.QUEUE_TOKEN,
                "QUEUE_CURRENT_SIGNING_KEY": settings.QUEUE_CURRENT_SIGNING_KEY,
            }
        )
    return sorted(name for name, value in required.items() if not value)


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports ledger database and guard store reachability.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "guard_store": "unknown",
        "queue_backend": settings.QUEUE_BACKEND,
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        await get_redis_client().ping()
        health_status["guard_store"] = "up"
    except Exception as e:
        health_status["guard_store"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once every secret the webhooks, cron and queue rely on is configured."""
    missing = missing_settings()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
