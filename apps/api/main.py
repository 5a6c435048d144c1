"""
Credit Ledger API - FastAPI Backend
Metered live-refresh jobs, queue callbacks, billing webhooks and reconciliation.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, jobs, webhooks, cron, billing
from services.errors import GuardRejection, ServiceError
from services.kv_store import close_redis_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    yield
    await close_redis_client()
    logger.info("Shutting down API...")


app = FastAPI(
    title="Credit Ledger API",
    description="Credit metering, durable job settlement and billing reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    headers = {}
    if isinstance(exc, GuardRejection) and exc.retry_after_seconds:
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.kind.value)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.kind.value},
        headers=headers,
    )


app.include_router(health.router, tags=["Health"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
