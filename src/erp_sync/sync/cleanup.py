from __future__ import annotations
import logging
from erp_sync.sync.dead_letter import DeadLetterQueueService
from erp_sync.sync.events import prune_events
from erp_sync.sync.jobs import SyncJobService

logger = logging.getLogger(__name__)


class SyncCleanupService:
    """Retention for sync jobs, reconciliation events and resolved DLQ entries."""

    def __init__(self, session_factory, jobs: SyncJobService, dlq: DeadLetterQueueService,
                 event_retention_days: int = 30, dlq_retention_days: int = 30):
        self._session_factory = session_factory
        self._jobs = jobs
        self._dlq = dlq
        self.event_retention_days = event_retention_days
        self.dlq_retention_days = dlq_retention_days

    def purge_expired_jobs(self) -> int:
        deleted = self._jobs.purge_expired()
        logger.info(f"Purged {deleted} expired sync jobs")
        return deleted

    def archive_reconciliation_events(self) -> int:
        with self._session_factory() as s:
            deleted = prune_events(s, self.event_retention_days)
            s.commit()
        logger.info(f"Archived {deleted} reconciliation events older than {self.event_retention_days} days")
        return deleted

    def purge_resolved_dead_letters(self) -> int:
        deleted = self._dlq.purge_resolved(self.dlq_retention_days)
        logger.info(f"Purged {deleted} resolved DLQ entries older than {self.dlq_retention_days} days")
        return deleted
