"""SyncJob lifecycle: pending → processing → completed | failed.

Job creation is idempotent per source order through lookup-before-insert. Two
concurrent creates for the same order can both miss the lookup; that race is
accepted (see DESIGN.md).
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Callable
from prometheus_client import Counter
from sqlalchemy import select, delete, func
from erp_sync.infrastructure.structured_logging import log_event
from erp_sync.models.tables import SyncJob, Order, utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("completed", "failed")
OPERATION_CREATE_ORDER = "create_order"

JOB_TRANSITIONS = Counter('erp_sync_job_transitions_total', 'Sync job state transitions', ['operation', 'status'])

# enqueue(payload) -> queue task id
Enqueue = Callable[[dict], "str | None"]


class JobEnqueueError(RuntimeError):
    pass


def job_to_dict(job: SyncJob) -> dict:
    def iso(v: datetime | None):
        return v.isoformat() if v else None
    return {
        "id": job.id,
        "vendorId": job.vendor_id,
        "operation": job.operation,
        "sourceId": job.source_id,
        "status": job.status,
        "retryCount": job.retry_count,
        "maxRetries": job.max_retries,
        "nextRetryAt": iso(job.next_retry_at),
        "erpReference": job.erp_reference,
        "errorMessage": job.error_message,
        "correlationId": job.correlation_id,
        "createdAt": iso(job.created_at),
        "startedAt": iso(job.started_at),
        "completedAt": iso(job.completed_at),
        "expiresAt": iso(job.expires_at),
    }


class SyncJobService:
    def __init__(self, session_factory, enqueue: Enqueue, max_attempts: int = 5, ttl_hours: int = 24,
                 now: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._enqueue = enqueue
        self.max_attempts = max_attempts
        self.ttl_hours = ttl_hours
        self._now = now

    def create_order_job(self, vendor_id: str, order_id: str, order_data: dict,
                         correlation_id: str | None = None) -> SyncJob:
        with self._session_factory() as s:
            existing = s.execute(
                select(SyncJob).where(
                    SyncJob.operation == OPERATION_CREATE_ORDER,
                    SyncJob.source_id == order_id,
                    SyncJob.status.in_(ACTIVE_STATUSES),
                ).order_by(SyncJob.created_at.desc()).limit(1)
            ).scalar_one_or_none()
            if existing is not None:
                logger.info(f"Order {order_id} already has active sync job {existing.id}")
                return existing
            now = self._now()
            job = SyncJob(
                vendor_id=vendor_id,
                operation=OPERATION_CREATE_ORDER,
                source_id=order_id,
                payload={"orderId": order_id, "orderData": order_data},
                status="pending",
                retry_count=0,
                max_retries=self.max_attempts,
                correlation_id=correlation_id,
                created_at=now,
                expires_at=now + timedelta(hours=self.ttl_hours),
            )
            s.add(job)
            s.commit()
        JOB_TRANSITIONS.labels(operation=OPERATION_CREATE_ORDER, status="pending").inc()
        message = {
            "syncJobId": job.id,
            "vendorId": vendor_id,
            "orderId": order_id,
            "orderData": order_data,
            "correlationId": correlation_id,
        }
        try:
            self._enqueue(message)
        except Exception as e:
            self.mark_failed(job.id, f"enqueue failed: {e}")
            raise JobEnqueueError(f"could not enqueue sync job {job.id}: {e}") from e
        log_event(logging.INFO, "sync_job_created", job_id=job.id, vendor_id=vendor_id,
                  order_id=order_id, correlation_id=correlation_id)
        return job

    def _update(self, job_id: str, status: str | None = None, **values) -> SyncJob | None:
        with self._session_factory() as s:
            job = s.get(SyncJob, job_id)
            if job is None:
                logger.warning(f"Sync job {job_id} not found")
                return None
            if status is not None:
                job.status = status
            for k, v in values.items():
                setattr(job, k, v)
            s.commit()
        if status is not None:
            JOB_TRANSITIONS.labels(operation=job.operation, status=status).inc()
            log_event(logging.INFO, "sync_job_transition", job_id=job_id, status=status,
                      retry_count=job.retry_count)
        return job

    def mark_processing(self, job_id: str, attempt: int = 1) -> SyncJob | None:
        return self._update(job_id, "processing", started_at=self._now(), retry_count=attempt - 1,
                            next_retry_at=None)

    def mark_retry_scheduled(self, job_id: str, error: str, attempt: int, next_retry_at: datetime) -> SyncJob | None:
        return self._update(job_id, "pending", error_message=error, retry_count=attempt,
                            next_retry_at=next_retry_at)

    def mark_completed(self, job_id: str, erp_reference: str | None = None) -> SyncJob | None:
        return self._update(job_id, "completed", erp_reference=erp_reference, completed_at=self._now(),
                            error_message=None, next_retry_at=None)

    def mark_failed(self, job_id: str, error: str, error_stack: str | None = None,
                    retry_count: int | None = None) -> SyncJob | None:
        values = {"error_message": error, "error_stack": error_stack, "completed_at": self._now(),
                  "next_retry_at": None}
        if retry_count is not None:
            values["retry_count"] = retry_count
        return self._update(job_id, "failed", **values)

    def get_job(self, job_id: str) -> SyncJob | None:
        with self._session_factory() as s:
            return s.get(SyncJob, job_id)

    def list_pending(self, vendor_id: str, limit: int = 100) -> list[SyncJob]:
        with self._session_factory() as s:
            return list(s.execute(
                select(SyncJob)
                .where(SyncJob.vendor_id == vendor_id, SyncJob.status == "pending")
                .order_by(SyncJob.created_at.asc())
                .limit(limit)
            ).scalars().all())

    def list_recent(self, vendor_id: str, page: int = 1, limit: int = 50) -> tuple[list[SyncJob], int]:
        with self._session_factory() as s:
            total = s.execute(select(func.count(SyncJob.id)).where(SyncJob.vendor_id == vendor_id)).scalar() or 0
            rows = s.execute(
                select(SyncJob)
                .where(SyncJob.vendor_id == vendor_id)
                .order_by(SyncJob.created_at.desc())
                .offset((max(page, 1) - 1) * limit)
                .limit(limit)
            ).scalars().all()
        return list(rows), int(total)

    def purge_expired(self) -> int:
        with self._session_factory() as s:
            result = s.execute(delete(SyncJob).where(SyncJob.expires_at < self._now()))
            s.commit()
        return result.rowcount or 0

    def apply_callback(self, vendor_id: str, job_id: str, status: str, erp_reference: str | None = None,
                       error: str | None = None, metadata: dict | None = None) -> tuple[bool, str]:
        """Apply an agent's completion report; returns (success, message).

        The job transition and the order write-back commit together, so a failed
        write leaves the job open and the agent's retried callback can land.
        """
        metadata = metadata or {}
        now = self._now()
        with self._session_factory() as s:
            job = s.get(SyncJob, job_id)
            if job is None or job.vendor_id != vendor_id:
                return False, f"Sync job {job_id} not found"
            if job.status in TERMINAL_STATUSES:
                return False, f"Sync job {job_id} already {job.status}"
            job.completed_at = now
            job.next_retry_at = None
            if status == "completed":
                job.status = "completed"
                job.erp_reference = erp_reference
                job.error_message = None
                if job.source_id and job.operation == OPERATION_CREATE_ORDER:
                    self._link_order(s, job.source_id, vendor_id, erp_reference,
                                     metadata.get("erpDocumentId"), now)
            else:
                job.status = "failed"
                job.error_message = error or "Agent reported failure"
            operation, new_status, source_id = job.operation, job.status, job.source_id
            s.commit()
        JOB_TRANSITIONS.labels(operation=operation, status=new_status).inc()
        log_event(logging.INFO, "sync_job_transition", job_id=job_id, status=new_status, source="callback")
        if new_status == "completed":
            if source_id and operation == OPERATION_CREATE_ORDER:
                logger.info(f"Order {source_id} linked to ERP reference {erp_reference}")
            return True, f"Sync job {job_id} completed"
        return True, f"Sync job {job_id} marked failed"

    @staticmethod
    def _link_order(s, order_id: str, vendor_id: str, erp_reference: str | None,
                    erp_document_id, now: datetime) -> None:
        order = s.get(Order, order_id)
        if order is None:
            order = Order(id=order_id, vendor_id=vendor_id, created_at=now)
            s.add(order)
        order.erp_reference = erp_reference
        if erp_document_id is not None and erp_document_id != "":
            order.erp_document_id = str(erp_document_id)
        order.erp_synced_at = now
        order.status = "synced"
        order.updated_at = now
