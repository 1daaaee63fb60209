from __future__ import annotations
from datetime import timedelta
from sqlalchemy import delete
from sqlalchemy.orm import Session
from erp_sync.models.tables import ReconciliationEvent, utcnow

EVENT_TYPES = ("full_checksum", "incremental_sync", "drift_detected", "drift_resolved")


def record_event(session: Session, vendor_id: str, event_type: str, summary: dict,
                 duration_ms: int | None = None) -> ReconciliationEvent:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown reconciliation event type: {event_type}")
    evt = ReconciliationEvent(
        vendor_id=vendor_id,
        event_type=event_type,
        summary=summary,
        duration_ms=duration_ms,
        created_at=utcnow(),
    )
    session.add(evt)
    return evt


def prune_events(session: Session, older_than_days: int = 30) -> int:
    cutoff = utcnow() - timedelta(days=older_than_days)
    result = session.execute(
        delete(ReconciliationEvent).where(ReconciliationEvent.created_at < cutoff)
    )
    return result.rowcount or 0
