import pytest
import requests
from erp_sync.tasks import scheduler
from erp_sync.tasks.runtime import configure_worker_services
from conftest import FakeErp, make_item


@pytest.fixture
def worker(services):
    configure_worker_services(services)
    yield services
    configure_worker_services(None)


def test_dead_letter_check_alerts_when_entries_exist(worker, agent, slack):
    assert scheduler.check_dead_letters() == {"status": "completed", "unresolved": 0}
    assert slack.messages == []

    job = worker.jobs.create_order_job("V1", "ORD-1", {"lines": []})
    worker.dlq.add(worker.jobs.mark_failed(job.id, "boom"), "boom", attempt_count=5)
    assert scheduler.check_dead_letters()["unresolved"] == 1
    assert "dlq_entries_found" in slack.messages[0]


def test_alert_delivery_failure_never_raises(worker, agent, slack, clock):
    slack.error = ConnectionError("slack unreachable")
    clock.tick(600)
    assert scheduler.check_agent_health() == {"status": "completed", "changes": 1}
    assert slack.messages == []


def test_detect_drift_alerts_per_drifted_vendor(worker, agent, http, slack):
    erp = FakeErp([make_item("A1")])
    http.route("/sync/checksum", erp.checksum)
    http.route("/sync/items", erp.items_in_range)
    result = scheduler.detect_drift()
    assert result == {"status": "completed", "vendors": 1, "drifted": 1}
    assert "reconciliation_drift" in slack.messages[-1]


def test_task_errors_are_reported_not_raised(worker, monkeypatch):
    def broken():
        raise RuntimeError("database gone")

    monkeypatch.setattr(worker.cleanup, "purge_expired_jobs", broken)
    assert scheduler.purge_expired_jobs() == {"status": "error", "error": "database gone"}


def test_cleanup_tasks_purge_expired_rows(worker, clock):
    worker.jobs.create_order_job("V1", "ORD-1", {"lines": []})
    clock.tick(25 * 3600)
    assert scheduler.purge_expired_jobs() == {"status": "completed", "deleted_count": 1}
    assert scheduler.archive_reconciliation_events()["status"] == "completed"
    assert scheduler.purge_resolved_dead_letters() == {"status": "completed", "deleted_count": 0}


def test_breaker_opening_raises_alert(services, agent, http, slack):
    http.route("/sync/create-order", lambda body: requests.ConnectionError("refused"))
    for i in range(5):
        with pytest.raises(Exception):
            services.agents.call_agent("V1", "orders", "/sync/create-order", {"n": i})
    assert any("circuit_breaker_open" in m for m in slack.messages)


def test_beat_schedule_registers_maintenance_tasks():
    from erp_sync.infrastructure.celery_app import celery_app

    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks == {
        "erp_sync.tasks.scheduler.detect_drift",
        "erp_sync.tasks.scheduler.check_agent_health",
        "erp_sync.tasks.scheduler.check_dead_letters",
        "erp_sync.tasks.scheduler.purge_expired_jobs",
        "erp_sync.tasks.scheduler.archive_reconciliation_events",
        "erp_sync.tasks.scheduler.purge_resolved_dead_letters",
    }
