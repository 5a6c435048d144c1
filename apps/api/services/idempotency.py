"""Idempotency key derivation for ledger, job and webhook operations."""

from __future__ import annotations

import uuid
from typing import Optional

from services.errors import ValidationError


IDEMPOTENCY_HEADER = "X-Idempotency-Key"
MAX_NONCE_LENGTH = 200
REFUND_KEY_PREFIX = "refund:"


def resolve_request_nonce(header_value: Optional[str]) -> str:
    """Return the caller-supplied nonce, or synthesize one when the header is absent."""
    nonce = (header_value or "").strip()
    if not nonce:
        return str(uuid.uuid4())
    if len(nonce) > MAX_NONCE_LENGTH:
        raise ValidationError(f"{IDEMPOTENCY_HEADER} must be at most {MAX_NONCE_LENGTH} characters.")
    return nonce


def build_job_key(kind: str, user_id: str, resource_id: str, nonce: str) -> str:
    return f"{kind}:{user_id}:{resource_id}:{nonce}"


def refund_key(debit_key: str) -> str:
    # A debit is refundable at most once: the refund row reuses the debit key.
    return f"{REFUND_KEY_PREFIX}{debit_key}"


def order_key(order_id: str) -> str:
    return f"ls:order:{order_id}"


def subscription_key(event_name: str, subscription_id: str) -> str:
    return f"ls:subscription:{event_name}:{subscription_id}"
