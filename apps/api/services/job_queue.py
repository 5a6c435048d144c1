"""Durable job queue publishers (signed HTTP push queue or Redis/RQ)."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
from redis import Redis
from rq import Queue, Retry

from config import queue_callback_url, settings

logger = logging.getLogger(__name__)

JOB_QUEUE_NAME = "settlement_jobs"
JOB_TASK_PATH = "services.job_worker.process_job_task"


class QueueUnavailableError(RuntimeError):
    """Publishing failed; the message was not accepted by the queue."""


class LoopbackDestinationError(QueueUnavailableError):
    """The callback URL resolves to this machine, so the queue can never deliver to it."""


def is_loopback_url(url: str) -> bool:
    """True when a push queue could not reach `url` from the public internet."""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return True
    if not host:
        return True
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


class HttpQueuePublisher:
    """Publishes JSON tasks to a push queue that POSTs them back to our callback URL."""

    delivers_over_http = True

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    @property
    def callback_url(self) -> str:
        return queue_callback_url()

    async def publish(self, body: Dict[str, Any], *, retries: Optional[int] = None) -> str:
        destination = self.callback_url
        if is_loopback_url(destination):
            raise LoopbackDestinationError(f"loopback destination {destination} is unreachable by the queue")
        if not settings.QUEUE_TOKEN:
            raise QueueUnavailableError("QUEUE_TOKEN is not configured")

        endpoint = f"{settings.QUEUE_API_URL.rstrip('/')}/v2/publish/{destination}"
        headers = {
            "Authorization": f"Bearer {settings.QUEUE_TOKEN}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(retries if retries is not None else settings.QUEUE_PUBLISH_RETRIES),
        }
        try:
            if self._client is not None:
                response = await self._client.post(endpoint, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=settings.QUEUE_PUBLISH_TIMEOUT_SECONDS) as client:
                    response = await client.post(endpoint, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise QueueUnavailableError(str(exc)) from exc

        payload = response.json() if response.content else {}
        message_id = str(payload.get("messageId") or "")
        if not message_id:
            raise QueueUnavailableError("queue response missing messageId")
        return message_id


class RQQueuePublisher:
    """Enqueues the worker task on Redis/RQ; `worker.py` consumes it."""

    delivers_over_http = False

    def get_queue(self) -> Queue:
        return Queue(
            name=JOB_QUEUE_NAME,
            connection=Redis.from_url(settings.REDIS_URL),
            default_timeout=900,
        )

    def _enqueue(self, job_id: str, retries: int) -> str:
        queue = self.get_queue()
        queued = queue.enqueue(
            JOB_TASK_PATH,
            job_id,
            job_id=f"job:{job_id}",
            retry=Retry(max=retries, interval=[15, 60, 180][: max(retries, 1)]),
            job_timeout=900,
            result_ttl=86400,
            failure_ttl=86400,
        )
        return queued.id

    async def publish(self, body: Dict[str, Any], *, retries: Optional[int] = None) -> str:
        job_id = str(body.get("jobId") or "")
        if not job_id:
            raise QueueUnavailableError("RQ publisher only carries job tasks")
        attempts = int(retries if retries is not None else settings.QUEUE_PUBLISH_RETRIES)
        try:
            return await asyncio.to_thread(self._enqueue, job_id, attempts)
        except Exception as exc:
            raise QueueUnavailableError(str(exc)) from exc


def build_publisher():
    backend = (settings.QUEUE_BACKEND or "http").strip().lower()
    if backend == "rq":
        return RQQueuePublisher()
    return HttpQueuePublisher()


async def get_publisher():
    """FastAPI dependency for the job queue publisher. Overridden in tests."""
    yield build_publisher()
