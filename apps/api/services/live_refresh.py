"""Upstream live-refresh provider client.

The provider owns SERP fetching and scoring; this service only sends the
project's domain and returns how many keyword results came back.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from config import settings
from models.project import Project
from services.errors import DomainWorkerError

logger = logging.getLogger(__name__)


async def run_live_refresh(project: Project, *, client: Optional[httpx.AsyncClient] = None) -> int:
    """Run one live refresh for `project` and return the number of refreshed keywords."""
    base_url = (settings.PROVIDER_API_URL or "").strip().rstrip("/")
    if not base_url:
        raise DomainWorkerError("PROVIDER_API_URL is not configured")

    payload: Dict[str, Any] = {
        "projectId": project.id,
        "domain": project.domain,
        "targetCountry": project.target_country or "US",
        "maxKeywords": max(int(settings.LIVE_REFRESH_PROVIDER_CALLS), 1),
    }
    headers = {"Authorization": f"Bearer {settings.PROVIDER_API_KEY}"} if settings.PROVIDER_API_KEY else {}

    try:
        if client is not None:
            response = await client.post(f"{base_url}/live-refresh", json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS) as http:
                response = await http.post(f"{base_url}/live-refresh", json=payload, headers=headers)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise DomainWorkerError(f"provider request failed: {exc}") from exc

    body = response.json()
    results = body.get("results") if isinstance(body, dict) else None
    if not isinstance(results, list):
        raise DomainWorkerError("provider response missing results")

    logger.info("Live refresh for project %s returned %s results", project.id, len(results))
    return len(results)
