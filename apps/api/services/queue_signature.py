"""Verification of queue-signed callback deliveries.

The push queue signs each delivery with an HS256 JWT in the
`Upstash-Signature` header. Its `body` claim is the unpadded base64url
SHA-256 of the raw request body, and `sub` is the destination URL.
"""

import base64
import hashlib
import hmac
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import queue_callback_url, settings
from services.errors import ErrorKind, NotConfiguredError, WebhookSignatureError


QUEUE_SIGNATURE_HEADER = "Upstash-Signature"
QUEUE_ISSUER = "Upstash"


def body_digest(raw_body: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(raw_body).digest()).decode("ascii").rstrip("=")


def _decode(token: str, key: str) -> Dict[str, Any]:
    return jwt.decode(
        token,
        key,
        algorithms=["HS256"],
        issuer=QUEUE_ISSUER,
        options={"verify_aud": False},
    )


def verify_queue_signature(raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Return the verified claims or raise WebhookSignatureError."""
    if not signature:
        raise WebhookSignatureError(ErrorKind.SIGNATURE_MISSING, "Missing queue signature")

    keys = [k for k in (settings.QUEUE_CURRENT_SIGNING_KEY, settings.QUEUE_NEXT_SIGNING_KEY) if k]
    if not keys:
        raise NotConfiguredError("Queue signing keys are not configured")

    claims: Optional[Dict[str, Any]] = None
    for key in keys:
        try:
            claims = _decode(signature, key)
            break
        except JWTError:
            continue
    if claims is None:
        raise WebhookSignatureError(ErrorKind.SIGNATURE_INVALID, "Invalid queue signature")

    expected_subject = queue_callback_url() if settings.APP_URL else None
    if expected_subject and str(claims.get("sub", "")).rstrip("/") != expected_subject:
        raise WebhookSignatureError(ErrorKind.SIGNATURE_INVALID, "Queue signature destination mismatch")

    if not hmac.compare_digest(str(claims.get("body", "")).rstrip("="), body_digest(raw_body)):
        raise WebhookSignatureError(ErrorKind.SIGNATURE_INVALID, "Queue signature body mismatch")

    return claims
