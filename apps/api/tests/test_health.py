from unittest.mock import patch

import pytest

from config import settings


@pytest.mark.asyncio
async def test_liveness(api_client):
    response = await api_client.get("/health/live")
    assert response.status_code == 200
    assert response.json() == {"alive": True}


@pytest.mark.asyncio
async def test_readiness_lists_missing_secrets(api_client):
    with patch.object(settings, "QUEUE_BACKEND", "http"), patch.object(settings, "CRON_SECRET", ""), patch.object(
        settings, "BILLING_WEBHOOK_SECRET", "whsec"
    ), patch.object(settings, "APP_URL", "https://ledger.example.com"), patch.object(
        settings, "QUEUE_TOKEN", "queue-token"
    ), patch.object(settings, "QUEUE_CURRENT_SIGNING_KEY", ""):
        response = await api_client.get("/health/ready")

    assert response.status_code == 503
    assert response.json() == {"ready": False, "missing": ["CRON_SECRET", "QUEUE_CURRENT_SIGNING_KEY"]}


@pytest.mark.asyncio
async def test_readiness_with_rq_backend_skips_push_queue_settings(api_client):
    with patch.object(settings, "QUEUE_BACKEND", "rq"), patch.object(settings, "CRON_SECRET", "cron"), patch.object(
        settings, "BILLING_WEBHOOK_SECRET", "whsec"
    ), patch.object(settings, "APP_URL", ""):
        response = await api_client.get("/health/ready")

    assert response.status_code == 200
    assert response.json() == {"ready": True}
