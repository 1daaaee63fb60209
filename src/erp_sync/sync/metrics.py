"""Read-side aggregates over sync jobs and reconciliation events."""
from __future__ import annotations
import math
from datetime import datetime, timedelta
from typing import Callable, Sequence
from sqlalchemy import select, func
from erp_sync.models.tables import SyncJob, ReconciliationEvent, utcnow


def percentile(values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sample."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return float(ordered[min(rank, len(ordered)) - 1])


class SyncMetricsService:
    def __init__(self, session_factory, now: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._now = now

    def sync_metrics(self, vendor_id: str | None = None, since_hours: int = 24) -> dict:
        since = self._now() - timedelta(hours=since_hours)
        filters = [SyncJob.created_at >= since]
        if vendor_id:
            filters.append(SyncJob.vendor_id == vendor_id)
        with self._session_factory() as s:
            by_status = dict(s.execute(
                select(SyncJob.status, func.count(SyncJob.id)).where(*filters).group_by(SyncJob.status)
            ).all())
            retried = s.execute(
                select(func.count(SyncJob.id)).where(*filters, SyncJob.retry_count > 0)
            ).scalar() or 0
            spans = s.execute(
                select(SyncJob.started_at, SyncJob.completed_at).where(
                    *filters,
                    SyncJob.status == "completed",
                    SyncJob.started_at.is_not(None),
                    SyncJob.completed_at.is_not(None),
                )
            ).all()
        latencies = [(done - started).total_seconds() * 1000 for started, done in spans if done >= started]
        total = sum(by_status.values())
        completed = by_status.get("completed", 0)
        failed = by_status.get("failed", 0)
        finished = completed + failed
        return {
            "vendorId": vendor_id,
            "since": since.isoformat(),
            "total": total,
            "pending": by_status.get("pending", 0),
            "processing": by_status.get("processing", 0),
            "completed": completed,
            "failed": failed,
            "successRate": round(completed / finished, 4) if finished else 0.0,
            "avgLatencyMs": round(sum(latencies) / len(latencies), 1) if latencies else 0.0,
            "p95LatencyMs": round(percentile(latencies, 95), 1),
            "retryRate": round(retried / total, 4) if total else 0.0,
        }

    def reconciliation_metrics(self, vendor_id: str, since_days: int = 7) -> dict:
        since = self._now() - timedelta(days=since_days)
        filters = [ReconciliationEvent.vendor_id == vendor_id, ReconciliationEvent.created_at >= since]
        with self._session_factory() as s:
            counts = dict(s.execute(
                select(ReconciliationEvent.event_type, func.count(ReconciliationEvent.id))
                .where(*filters)
                .group_by(ReconciliationEvent.event_type)
            ).all())
            last_drift = s.execute(
                select(func.max(ReconciliationEvent.created_at))
                .where(*filters, ReconciliationEvent.event_type == "drift_detected")
            ).scalar()
            avg_duration = s.execute(
                select(func.avg(ReconciliationEvent.duration_ms)).where(*filters)
            ).scalar()
        return {
            "vendorId": vendor_id,
            "since": since.isoformat(),
            "events": counts,
            "driftDetected": counts.get("drift_detected", 0),
            "driftResolved": counts.get("drift_resolved", 0),
            "lastDriftAt": last_drift.isoformat() if last_drift else None,
            "avgDurationMs": round(float(avg_duration), 1) if avg_duration is not None else 0.0,
        }
