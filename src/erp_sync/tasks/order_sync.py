from __future__ import annotations
import logging
from erp_sync.infrastructure.celery_app import celery_app, settings
from erp_sync.sync.processor import RetryableSyncError, retry_countdown
from erp_sync.tasks.runtime import worker_services

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="erp_sync.tasks.order_sync.process_order_sync",
                 max_retries=settings.job_max_attempts - 1, acks_late=True)
def process_order_sync(self, message: dict):
    """Deliver one order sync job to its vendor agent; the queue owns the retry timing."""
    services = worker_services()
    attempt = self.request.retries + 1
    try:
        return services.processor.process(message, attempt=attempt)
    except RetryableSyncError as exc:
        base = services.settings.job_backoff_base_seconds
        raise self.retry(exc=exc, countdown=retry_countdown(self.request.retries, base))


def enqueue_order_sync(message: dict) -> str | None:
    result = process_order_sync.apply_async(args=[message])
    logger.info(f"Enqueued order sync job {message.get('syncJobId')} as task {result.id}")
    return result.id
