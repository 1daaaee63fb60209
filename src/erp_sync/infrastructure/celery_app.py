from celery import Celery
from celery import signals
from celery.schedules import crontab
import time
from prometheus_client import Counter, Histogram
from erp_sync.config import get_settings

settings = get_settings()

celery_app = Celery(
    "erp_sync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "erp_sync.tasks.order_sync",
        "erp_sync.tasks.scheduler",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # a job is owned by one worker until acked; crashed workers get it redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.worker_concurrency,
    result_expires=24 * 3600,
    broker_transport_options={"visibility_timeout": 3600},
)

# Task metrics
TASK_SUCCESS = Counter('celery_task_success_total', 'Celery task successes', ['task'])
TASK_FAILURE = Counter('celery_task_failure_total', 'Celery task failures', ['task'])
TASK_DURATION = Histogram('celery_task_duration_seconds', 'Celery task runtime', ['task'], buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60))

_task_start_times = {}


@signals.task_prerun.connect
def _task_prerun(sender=None, task_id=None, **kwargs):  # noqa
    _task_start_times[task_id] = time.time()


@signals.task_postrun.connect
def _task_postrun(sender=None, task_id=None, state=None, **kwargs):  # noqa
    name = sender.name if sender else 'unknown'
    start = _task_start_times.pop(task_id, None)
    if start is not None:
        TASK_DURATION.labels(task=name).observe(time.time() - start)
    if state == 'SUCCESS':
        TASK_SUCCESS.labels(task=name).inc()
    elif state is not None:
        TASK_FAILURE.labels(task=name).inc()


# Periodic tasks (beat). Requires worker with -B or separate beat service.
celery_app.conf.beat_schedule = {
    "detect-drift-hourly": {
        "task": "erp_sync.tasks.scheduler.detect_drift",
        "schedule": crontab(minute=0),
    },
    "check-agent-health-every-5m": {
        "task": "erp_sync.tasks.scheduler.check_agent_health",
        "schedule": 300.0,
    },
    "check-dead-letters-every-15m": {
        "task": "erp_sync.tasks.scheduler.check_dead_letters",
        "schedule": 900.0,
    },
    "purge-expired-jobs-daily": {
        "task": "erp_sync.tasks.scheduler.purge_expired_jobs",
        "schedule": crontab(hour=2, minute=0),
    },
    "archive-reconciliation-events-weekly": {
        "task": "erp_sync.tasks.scheduler.archive_reconciliation_events",
        "schedule": crontab(hour=3, minute=0, day_of_week="sun"),
    },
    "purge-resolved-dead-letters-weekly": {
        "task": "erp_sync.tasks.scheduler.purge_resolved_dead_letters",
        "schedule": crontab(hour=4, minute=0, day_of_week="sat"),
    },
}
