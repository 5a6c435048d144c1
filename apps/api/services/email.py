from __future__ import annotations

from typing import List, Optional

import httpx

from config import settings


RESEND_EMAILS_URL = "https://api.resend.com/emails"


class EmailDeliveryError(RuntimeError):
    pass


async def send_email(
    *,
    to: str,
    subject: str,
    html: str,
    text: Optional[str] = None,
    reply_to: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> str:
    """Send a pre-rendered email and return the provider message id."""
    api_key = settings.RESEND_API_KEY
    from_email = settings.EMAIL_FROM
    if not api_key or not from_email:
        raise EmailDeliveryError("Email delivery is not configured")

    payload = {
        "from": from_email,
        "to": [to],
        "subject": subject,
        "html": html,
    }
    if text:
        payload["text"] = text
    if reply_to:
        payload["reply_to"] = reply_to
    if tags:
        payload["tags"] = [{"name": "category", "value": tag} for tag in tags]
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(RESEND_EMAILS_URL, json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise EmailDeliveryError(str(exc)) from exc

    return str(response.json().get("id") or "")
