"""Periodic sync maintenance (see beat_schedule in celery_app)."""
from __future__ import annotations
import logging
from erp_sync.infrastructure.celery_app import celery_app
from erp_sync.tasks.runtime import worker_services

logger = logging.getLogger(__name__)


@celery_app.task(name="erp_sync.tasks.scheduler.detect_drift")
def detect_drift():
    services = worker_services()
    try:
        results = services.reconciliation.run_for_all()
        drifted = [r for r in results if r.has_drift]
        for r in drifted:
            services.alerts.send(
                "reconciliation_drift",
                f"Drift detected for vendor {r.vendor_id}: {len(r.drifted_skus)} records",
                {"vendorId": r.vendor_id, "resolved": r.resolved, "failedRanges": r.failed_ranges},
            )
        return {"status": "completed", "vendors": len(results), "drifted": len(drifted)}
    except Exception as e:
        logger.error(f"Drift detection failed: {e}")
        return {"status": "error", "error": str(e)}


@celery_app.task(name="erp_sync.tasks.scheduler.check_agent_health")
def check_agent_health():
    services = worker_services()
    try:
        changes = services.registry.check_health()
        return {"status": "completed", "changes": len(changes)}
    except Exception as e:
        logger.error(f"Agent health sweep failed: {e}")
        return {"status": "error", "error": str(e)}


@celery_app.task(name="erp_sync.tasks.scheduler.check_dead_letters")
def check_dead_letters():
    services = worker_services()
    try:
        unresolved = services.dlq.count_unresolved()
        threshold = services.settings.dlq_alert_threshold
        if unresolved > threshold:
            services.alerts.send(
                "dlq_entries_found",
                f"{unresolved} unresolved dead letter entries",
                {"unresolved": unresolved, "threshold": threshold},
            )
        return {"status": "completed", "unresolved": unresolved}
    except Exception as e:
        logger.error(f"DLQ check failed: {e}")
        return {"status": "error", "error": str(e)}


@celery_app.task(name="erp_sync.tasks.scheduler.purge_expired_jobs")
def purge_expired_jobs():
    try:
        deleted = worker_services().cleanup.purge_expired_jobs()
        return {"status": "completed", "deleted_count": deleted}
    except Exception as e:
        logger.error(f"Expired job purge failed: {e}")
        return {"status": "error", "error": str(e)}


@celery_app.task(name="erp_sync.tasks.scheduler.archive_reconciliation_events")
def archive_reconciliation_events():
    try:
        deleted = worker_services().cleanup.archive_reconciliation_events()
        return {"status": "completed", "deleted_count": deleted}
    except Exception as e:
        logger.error(f"Reconciliation event archive failed: {e}")
        return {"status": "error", "error": str(e)}


@celery_app.task(name="erp_sync.tasks.scheduler.purge_resolved_dead_letters")
def purge_resolved_dead_letters():
    try:
        deleted = worker_services().cleanup.purge_resolved_dead_letters()
        return {"status": "completed", "deleted_count": deleted}
    except Exception as e:
        logger.error(f"Resolved DLQ purge failed: {e}")
        return {"status": "error", "error": str(e)}
