"""Typed error kinds shared by the ledger, guards, jobs and webhooks."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    DAILY_CAP_REACHED = "DAILY_CAP_REACHED"
    PROVIDER_BUDGET_EXHAUSTED = "PROVIDER_BUDGET_EXHAUSTED"
    GUARD_UNAVAILABLE = "GUARD_UNAVAILABLE"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    LEDGER_ERROR = "LEDGER_ERROR"
    DEBIT_NOT_FOUND = "DEBIT_NOT_FOUND"
    JOB_CREATION_FAILED = "JOB_CREATION_FAILED"
    QUEUE_PUBLISH_FAILED = "QUEUE_PUBLISH_FAILED"
    PUBLIC_URL_INVALID = "PUBLIC_URL_INVALID"
    WORKER_ERROR = "WORKER_ERROR"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    JOB_ALREADY_TERMINAL = "JOB_ALREADY_TERMINAL"
    JOB_DEFERRED = "JOB_DEFERRED"
    RECONCILIATION_ERROR = "RECONCILIATION_ERROR"
    SIGNATURE_MISSING = "SIGNATURE_MISSING"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    UNKNOWN_PLAN_VARIANT = "UNKNOWN_PLAN_VARIANT"
    NOT_CONFIGURED = "NOT_CONFIGURED"


class ServiceError(Exception):
    """Base error rendered by the API as `{"detail": ..., "code": ...}`."""

    status_code = 500
    retryable = False

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
    ):
        self.kind = kind
        self.message = message or kind.value
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(ServiceError):
    status_code = 422

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.VALIDATION):
        super().__init__(kind, message)


class ProjectNotFound(ServiceError):
    status_code = 404

    def __init__(self, project_id: str):
        super().__init__(ErrorKind.PROJECT_NOT_FOUND, f"Project {project_id} not found.")


class GuardRejection(ServiceError):
    """Cooldown, daily cap or provider budget refused the request. Nothing was charged."""

    status_code = 429
    retryable = True

    def __init__(self, kind: ErrorKind, message: Optional[str] = None, retry_after_seconds: int = 0):
        super().__init__(kind, message, status_code=503 if kind == ErrorKind.GUARD_UNAVAILABLE else None)
        self.retry_after_seconds = max(int(retry_after_seconds), 0)


class InsufficientCredits(ServiceError):
    status_code = 402

    def __init__(self, required: int, remaining: int):
        super().__init__(
            ErrorKind.INSUFFICIENT_CREDITS,
            f"Insufficient credits. Required: {required}, available: {remaining}.",
        )
        self.required = required
        self.remaining = remaining


class LedgerError(ServiceError):
    """Outcome of the ledger call is unknown; the pipeline must stop."""

    status_code = 503

    def __init__(self, message: str = "Credit ledger unavailable."):
        super().__init__(ErrorKind.LEDGER_ERROR, message)


class JobCreationError(ServiceError):
    """The debit succeeded but the job row could not be written. Compensated before this is raised."""

    status_code = 503
    retryable = True

    def __init__(self, refunded: bool):
        suffix = "Credits were refunded." if refunded else "The refund will be retried."
        super().__init__(ErrorKind.JOB_CREATION_FAILED, f"Could not create the job. {suffix}")
        self.refunded = refunded


class QueuePublishError(ServiceError):
    """The job row exists but was never queued. Compensated before this is raised."""

    status_code = 503

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.QUEUE_PUBLISH_FAILED):
        super().__init__(kind, message, status_code=422 if kind == ErrorKind.PUBLIC_URL_INVALID else None)


class DomainWorkerError(ServiceError):
    def __init__(self, message: str):
        super().__init__(ErrorKind.WORKER_ERROR, message)


class TerminalJobError(ServiceError):
    """Job is missing or already terminal. Acknowledge the delivery, never retry."""

    status_code = 200

    def __init__(self, kind: ErrorKind, job_id: str):
        super().__init__(kind, f"{kind.value}: jobId={job_id}")
        self.job_id = job_id


class JobDeferred(ServiceError):
    """Job could not start yet (lock held elsewhere or budget spent). Redeliver later."""

    status_code = 500
    retryable = True

    def __init__(self, job_id: str, reason: str):
        super().__init__(ErrorKind.JOB_DEFERRED, f"Job {job_id} deferred: {reason}")
        self.job_id = job_id


class ReconciliationError(ServiceError):
    def __init__(self, job_id: str, message: str):
        super().__init__(ErrorKind.RECONCILIATION_ERROR, message)
        self.job_id = job_id


class WebhookSignatureError(ServiceError):
    def __init__(self, kind: ErrorKind, message: Optional[str] = None):
        super().__init__(kind, message, status_code=400 if kind == ErrorKind.SIGNATURE_MISSING else 401)


class WebhookPayloadError(ServiceError):
    status_code = 400

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.INVALID_PAYLOAD):
        super().__init__(kind, message)


class NotConfiguredError(ServiceError):
    status_code = 503

    def __init__(self, message: str):
        super().__init__(ErrorKind.NOT_CONFIGURED, message)
