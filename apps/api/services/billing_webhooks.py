"""Billing vendor webhook processing (signed order and subscription events)."""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.user import User
from services.credits import LedgerResult, grant, reset_to_plan
from services.errors import (
    ErrorKind,
    LedgerError,
    NotConfiguredError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from services.idempotency import order_key, subscription_key
from services.users import ensure_user, find_user_id_by_email

logger = logging.getLogger(__name__)

BILLING_SIGNATURE_HEADER = "X-Signature"
CANCELLING_SUFFIX = "_cancelling"


@dataclass
class Plan:
    tier: str
    credits: int


def verify_signature(raw_body: bytes, signature: Optional[str]) -> None:
    """HMAC-SHA256 over the raw body, compared in constant time. Runs before parsing."""
    if not signature:
        raise WebhookSignatureError(ErrorKind.SIGNATURE_MISSING, "Missing signature")
    secret = settings.BILLING_WEBHOOK_SECRET
    if not secret:
        raise NotConfiguredError("BILLING_WEBHOOK_SECRET is not configured")
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(digest, signature.strip()):
        raise WebhookSignatureError(ErrorKind.SIGNATURE_INVALID, "Invalid signature")


def _to_number(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return None
    return None


def _to_string_id(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return None


def _first(source: Dict[str, Any], *names: str, convert=_to_string_id):
    for name in names:
        value = convert(source.get(name))
        if value is not None:
            return value
    return None


def resolve_plan(variant_id: Optional[str]) -> Optional[Plan]:
    """Map an allow-listed vendor variant id to a plan. Unknown variants map to None."""
    if not variant_id:
        return None
    if variant_id in {str(v) for v in settings.BILLING_PRO_VARIANT_IDS}:
        return Plan(tier="pro", credits=int(settings.PLAN_PRO_CREDITS))
    if variant_id in {str(v) for v in settings.BILLING_ENTERPRISE_VARIANT_IDS}:
        return Plan(tier="enterprise", credits=int(settings.PLAN_ENTERPRISE_CREDITS))
    return None


class BillingEvent:
    def __init__(self, payload: Dict[str, Any]):
        meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        attributes = data.get("attributes") if isinstance(data.get("attributes"), dict) else {}
        custom = meta.get("custom_data") or attributes.get("custom_data") or {}

        self.name: str = str(meta.get("event_name") or "")
        self.data_id: Optional[str] = _to_string_id(data.get("id"))
        self.attributes: Dict[str, Any] = attributes
        self.custom: Dict[str, Any] = custom if isinstance(custom, dict) else {}

    @property
    def variant_id(self) -> Optional[str]:
        return _first(self.attributes, "variant_id", "variant", "variantId")


async def _resolve_user_id(db: AsyncSession, event: BillingEvent) -> str:
    email = _first(event.custom, "userEmail", "email") or _first(
        event.attributes, "user_email", "customer_email"
    )
    user_id = _first(event.custom, "user_id", "userId")
    if user_id:
        await ensure_user(db, user_id, email.lower() if email else None)
        await db.commit()
        return user_id
    if email:
        user_id = await find_user_id_by_email(db, email)
        if user_id:
            return user_id
    raise WebhookPayloadError("Missing userId")


def _raise_for_ledger(result: LedgerResult) -> None:
    if not result.success:
        raise LedgerError(result.message or "Credit update failed")


async def _set_tier(db: AsyncSession, user_id: str, tier: str) -> None:
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(billing_tier=tier)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def handle_order_created(db: AsyncSession, event: BillingEvent) -> Dict[str, Any]:
    user_id = await _resolve_user_id(db, event)
    credits = _first(event.custom, "total_credits", "credits", "credit_amount", convert=_to_number)
    if not credits or credits <= 0:
        raise WebhookPayloadError("Missing credits")
    order_id = event.data_id or _first(event.attributes, "order_id", "orderId")
    if not order_id:
        raise WebhookPayloadError("Missing order id")

    key = order_key(order_id)
    result = await grant(
        user_id,
        credits,
        idempotency_key=key,
        description="Billing order",
        external_ref=order_id,
        db=db,
    )
    _raise_for_ledger(result)
    logger.info("Order %s credited user=%s credits=%s duplicate=%s", order_id, user_id, credits, result.duplicate)
    return {"ok": True, "duplicate": result.duplicate}


async def handle_subscription_renewed(db: AsyncSession, event: BillingEvent) -> Dict[str, Any]:
    user_id = await _resolve_user_id(db, event)
    plan = resolve_plan(event.variant_id)
    if not plan:
        raise WebhookPayloadError("Unknown plan variant", kind=ErrorKind.UNKNOWN_PLAN_VARIANT)

    subscription_id = event.data_id or "unknown"
    key = subscription_key(event.name, subscription_id)
    result = await reset_to_plan(
        user_id,
        plan.credits,
        idempotency_key=key,
        description=f"Subscription credits reset ({plan.tier})",
        external_ref=subscription_id,
        db=db,
    )
    _raise_for_ledger(result)
    await _set_tier(db, user_id, plan.tier)
    logger.info(
        "Subscription %s %s user=%s tier=%s duplicate=%s",
        subscription_id,
        event.name,
        user_id,
        plan.tier,
        result.duplicate,
    )
    return {"ok": True, "duplicate": result.duplicate}


async def handle_subscription_cancelled(db: AsyncSession, event: BillingEvent) -> Dict[str, Any]:
    user_id = await _resolve_user_id(db, event)
    plan = resolve_plan(event.variant_id)
    user = await ensure_user(db, user_id)
    current_tier = (plan.tier if plan else None) or user.billing_tier or "free"
    cancelling_tier = current_tier if "cancelling" in current_tier else f"{current_tier}{CANCELLING_SUFFIX}"
    await _set_tier(db, user_id, cancelling_tier)
    logger.info("Subscription cancelling user=%s tier=%s", user_id, cancelling_tier)
    return {"ok": True}


EVENT_HANDLERS: Dict[str, Callable[[AsyncSession, BillingEvent], Awaitable[Dict[str, Any]]]] = {
    "order_created": handle_order_created,
    "subscription_created": handle_subscription_renewed,
    "subscription_payment_success": handle_subscription_renewed,
    "subscription_cancelled": handle_subscription_cancelled,
}


async def process_billing_event(payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Dispatch a verified vendor payload. Unrecognized events are acknowledged so the vendor stops retrying."""
    event = BillingEvent(payload)
    handler = EVENT_HANDLERS.get(event.name)
    if handler is None:
        logger.info("Ignoring billing event %s", event.name or "<missing>")
        return {"ok": True, "ignored": True}
    return await handler(db, event)
