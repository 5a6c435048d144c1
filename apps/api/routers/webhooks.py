"""Inbound webhooks: queue deliveries and billing vendor events.

Both endpoints verify the signature over the raw body before parsing it.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.billing_webhooks import BILLING_SIGNATURE_HEADER, process_billing_event, verify_signature
from services.email import EmailDeliveryError, send_email
from services.errors import JobDeferred, TerminalJobError, WebhookPayloadError
from services.job_worker import process_job
from services.jobs import LIVE_REFRESH_KIND
from services.kv_store import get_store
from services.queue_signature import QUEUE_SIGNATURE_HEADER, verify_queue_signature

router = APIRouter()
logger = logging.getLogger(__name__)


def _parse_json(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise WebhookPayloadError("Invalid payload") from exc
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Invalid payload")
    return payload


async def _handle_job_delivery(payload: Dict[str, Any], store) -> JSONResponse:
    job_id = str(payload.get("jobId") or "").strip()
    if not job_id:
        raise WebhookPayloadError("Missing jobId")

    try:
        outcome = await process_job(job_id, store=store)
    except TerminalJobError as exc:
        # Acknowledge: redelivering a missing or finished job can only double-apply effects.
        return JSONResponse(status_code=200, content={"success": False, "error": exc.kind.value, "retry": False})
    except JobDeferred as exc:
        logger.info("Queue delivery deferred: %s", exc.message)
        return JSONResponse(status_code=500, content={"success": False, "error": exc.kind.value, "retry": True})

    return JSONResponse(
        status_code=200,
        content={
            "success": outcome.status != "failed",
            "jobId": outcome.job_id,
            "status": outcome.status,
            "resultCount": outcome.result_count,
            "refunded": outcome.refunded,
            "error": outcome.error,
        },
    )


async def _handle_email_delivery(payload: Dict[str, Any]) -> JSONResponse:
    to = str(payload.get("to") or "").strip()
    subject = str(payload.get("subject") or "").strip()
    html = str(payload.get("html") or "")
    if not to or not subject or not html:
        raise WebhookPayloadError("Missing email fields")

    tags = payload.get("tags")
    try:
        message_id = await send_email(
            to=to,
            subject=subject,
            html=html,
            text=payload.get("text"),
            reply_to=payload.get("replyTo"),
            tags=tags if isinstance(tags, list) else None,
        )
    except EmailDeliveryError as exc:
        logger.error("Queued email to %s failed: %s", to, exc)
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
    return JSONResponse(status_code=200, content={"success": True, "id": message_id})


@router.post("/queue-callback")
async def queue_callback(request: Request, store=Depends(get_store)):
    """Queue delivery target. 200 stops redelivery, 500 asks the queue to retry."""
    raw_body = await request.body()
    verify_queue_signature(raw_body, request.headers.get(QUEUE_SIGNATURE_HEADER))
    payload = _parse_json(raw_body)

    delivery_type = payload.get("type")
    if delivery_type == LIVE_REFRESH_KIND:
        return await _handle_job_delivery(payload, store)
    if delivery_type == "email":
        return await _handle_email_delivery(payload)
    raise WebhookPayloadError("Invalid payload")


@router.post("/billing")
async def billing_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Billing vendor events: one-time purchases and subscription lifecycle."""
    raw_body = await request.body()
    verify_signature(raw_body, request.headers.get(BILLING_SIGNATURE_HEADER))
    payload = _parse_json(raw_body)
    return await process_billing_event(payload, db)
