from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Callable
from prometheus_client import Counter
from sqlalchemy import select, delete, func
from erp_sync.models.tables import DeadLetterEntry, SyncJob, utcnow
from erp_sync.sync.jobs import SyncJobService, OPERATION_CREATE_ORDER

logger = logging.getLogger(__name__)

DLQ_ADDED = Counter('erp_sync_dlq_entries_total', 'Jobs moved to the dead letter queue', ['operation'])


class DeadLetterStateError(RuntimeError):
    pass


def entry_to_dict(e: DeadLetterEntry, with_payload: bool = False) -> dict:
    def iso(v: datetime | None):
        return v.isoformat() if v else None
    out = {
        "id": e.id,
        "originalJobId": e.original_job_id,
        "vendorId": e.vendor_id,
        "operation": e.operation,
        "failureReason": e.failure_reason,
        "attemptCount": e.attempt_count,
        "lastAttemptAt": iso(e.last_attempt_at),
        "resolved": e.resolved,
        "resolvedAt": iso(e.resolved_at),
        "resolvedBy": e.resolved_by,
        "retryCount": e.retry_count,
        "lastRetriedAt": iso(e.last_retried_at),
        "lastRetryJobId": e.last_retry_job_id,
        "createdAt": iso(e.created_at),
    }
    if with_payload:
        out["payload"] = e.payload
        out["failureStack"] = e.failure_stack
    return out


class DeadLetterQueueService:
    def __init__(self, session_factory, jobs: SyncJobService, now: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._jobs = jobs
        self._now = now

    def add(self, job: SyncJob, failure_reason: str, failure_stack: str | None = None,
            attempt_count: int | None = None) -> DeadLetterEntry:
        now = self._now()
        entry = DeadLetterEntry(
            original_job_id=job.id,
            vendor_id=job.vendor_id,
            operation=job.operation,
            payload=dict(job.payload or {}),
            failure_reason=failure_reason,
            failure_stack=failure_stack,
            attempt_count=attempt_count if attempt_count is not None else job.retry_count,
            last_attempt_at=now,
            created_at=now,
        )
        with self._session_factory() as s:
            s.add(entry)
            s.commit()
        DLQ_ADDED.labels(operation=job.operation).inc()
        logger.error(f"Job {job.id} moved to DLQ after {entry.attempt_count} attempts: {failure_reason}")
        return entry

    def list_entries(self, vendor_id: str | None = None, resolved: bool | None = False,
                     page: int = 1, limit: int = 50) -> tuple[list[DeadLetterEntry], int]:
        filters = []
        if vendor_id:
            filters.append(DeadLetterEntry.vendor_id == vendor_id)
        if resolved is not None:
            filters.append(DeadLetterEntry.resolved.is_(resolved))
        with self._session_factory() as s:
            total = s.execute(select(func.count(DeadLetterEntry.id)).where(*filters)).scalar() or 0
            rows = s.execute(
                select(DeadLetterEntry)
                .where(*filters)
                .order_by(DeadLetterEntry.created_at.desc())
                .offset((max(page, 1) - 1) * limit)
                .limit(limit)
            ).scalars().all()
        return list(rows), int(total)

    def get_entry(self, entry_id: int) -> DeadLetterEntry | None:
        with self._session_factory() as s:
            return s.get(DeadLetterEntry, entry_id)

    def retry(self, entry_id: int, correlation_id: str | None = None) -> SyncJob | None:
        """Enqueue a fresh job from the stored payload; the entry only gets bookkeeping."""
        entry = self.get_entry(entry_id)
        if entry is None:
            return None
        if entry.resolved:
            raise DeadLetterStateError(f"DLQ entry {entry_id} is already resolved")
        if entry.operation != OPERATION_CREATE_ORDER:
            raise DeadLetterStateError(f"DLQ entry {entry_id} has unsupported operation {entry.operation}")
        payload = entry.payload or {}
        job = self._jobs.create_order_job(
            entry.vendor_id,
            payload.get("orderId"),
            payload.get("orderData") or {},
            correlation_id=correlation_id,
        )
        with self._session_factory() as s:
            row = s.get(DeadLetterEntry, entry_id)
            row.retry_count = (row.retry_count or 0) + 1
            row.last_retried_at = self._now()
            row.last_retry_job_id = job.id
            s.commit()
        logger.info(f"DLQ entry {entry_id} retried as job {job.id}")
        return job

    def resolve(self, entry_id: int, resolved_by: str) -> DeadLetterEntry | None:
        with self._session_factory() as s:
            row = s.get(DeadLetterEntry, entry_id)
            if row is None:
                return None
            if row.resolved:
                raise DeadLetterStateError(f"DLQ entry {entry_id} is already resolved")
            row.resolved = True
            row.resolved_at = self._now()
            row.resolved_by = resolved_by
            s.commit()
        logger.info(f"DLQ entry {entry_id} resolved by {resolved_by}")
        return row

    def count_unresolved(self, vendor_id: str | None = None) -> int:
        filters = [DeadLetterEntry.resolved.is_(False)]
        if vendor_id:
            filters.append(DeadLetterEntry.vendor_id == vendor_id)
        with self._session_factory() as s:
            return int(s.execute(select(func.count(DeadLetterEntry.id)).where(*filters)).scalar() or 0)

    def purge_resolved(self, older_than_days: int = 30) -> int:
        cutoff = self._now() - timedelta(days=older_than_days)
        with self._session_factory() as s:
            result = s.execute(
                delete(DeadLetterEntry).where(
                    DeadLetterEntry.resolved.is_(True),
                    DeadLetterEntry.resolved_at < cutoff,
                )
            )
            s.commit()
        return result.rowcount or 0
