from __future__ import annotations
import logging
import traceback
from datetime import datetime, timedelta
from typing import Callable
from erp_sync.models.tables import SyncJob, utcnow
from erp_sync.sync.agent_client import AgentCommunicationService
from erp_sync.sync.dead_letter import DeadLetterQueueService
from erp_sync.sync.jobs import SyncJobService, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

CREATE_ORDER_ENDPOINT = "/sync/create-order"


class RetryableSyncError(Exception):
    def __init__(self, message: str, countdown: int):
        super().__init__(message)
        self.countdown = countdown


def retry_countdown(retries: int, base: int = 60) -> int:
    """Delay before the next attempt after ``retries`` failed ones: 1m, 2m, 4m, 8m, 16m."""
    return base * (2 ** retries)


class OrderSyncProcessor:
    """One delivery attempt of an order sync job.

    The queue decides when attempts happen; this class decides what an attempt
    does and what a failure means for the job row.
    """

    def __init__(self, jobs: SyncJobService, agents: AgentCommunicationService, dlq: DeadLetterQueueService,
                 max_attempts: int = 5, backoff_base: int = 60, now: Callable[[], datetime] = utcnow):
        self._jobs = jobs
        self._agents = agents
        self._dlq = dlq
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._now = now

    def process(self, message: dict, attempt: int = 1) -> dict:
        job_id = message.get("syncJobId")
        job = self._jobs.get_job(job_id) if job_id else None
        if job is None:
            logger.error(f"Sync job {job_id} not found, dropping message")
            return {"status": "missing", "jobId": job_id}
        if job.status in TERMINAL_STATUSES:
            logger.info(f"Sync job {job_id} already {job.status}, ignoring redelivery")
            return {"status": "skipped", "jobId": job_id}
        order_id = message.get("orderId")
        order_data = message.get("orderData")
        if not order_id or not isinstance(order_data, dict):
            self._jobs.mark_failed(job_id, "invalid payload: orderId and orderData are required", retry_count=attempt)
            return {"status": "failed", "jobId": job_id}

        self._jobs.mark_processing(job_id, attempt)
        try:
            self._agents.call_agent(
                job.vendor_id,
                "orders",
                CREATE_ORDER_ENDPOINT,
                {"syncJobId": job_id, "orderId": order_id, "orderData": order_data},
                correlation_id=message.get("correlationId"),
            )
        except Exception as exc:
            return self._handle_failure(job, exc, attempt)
        logger.info(f"Sync job {job_id} dispatched to agent {job.vendor_id} (attempt {attempt})")
        return {"status": "dispatched", "jobId": job_id, "attempt": attempt}

    def _handle_failure(self, job: SyncJob, exc: Exception, attempt: int) -> dict:
        error = f"{exc.__class__.__name__}: {exc}"
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        if not getattr(exc, "retryable", True):
            logger.error(f"Sync job {job.id} failed permanently: {error}")
            self._jobs.mark_failed(job.id, error, stack, retry_count=attempt)
            return {"status": "failed", "jobId": job.id, "error": error}
        if attempt >= self.max_attempts:
            failed = self._jobs.mark_failed(job.id, error, stack, retry_count=attempt)
            self._dlq.add(failed or job, error, stack, attempt_count=attempt)
            return {"status": "dead_lettered", "jobId": job.id, "error": error}
        countdown = retry_countdown(attempt - 1, self.backoff_base)
        self._jobs.mark_retry_scheduled(job.id, error, attempt, self._now() + timedelta(seconds=countdown))
        logger.warning(f"Sync job {job.id} attempt {attempt} failed, retrying in {countdown}s: {error}")
        raise RetryableSyncError(error, countdown) from exc
