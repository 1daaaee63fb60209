import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from erp_sync.models.tables import DeadLetterEntry, Order
from erp_sync.sync.jobs import JobEnqueueError
from erp_sync.sync.processor import RetryableSyncError, retry_countdown
from conftest import AGENT_SECRET, FakeResponse

ORDER = {"lines": [{"sku": "A1", "quantity": 3}], "total": 42.0}


def _message(job, enqueue):
    return next(m for m in enqueue.messages if m["syncJobId"] == job.id)


def test_create_is_idempotent_while_active(services, enqueue):
    first = services.jobs.create_order_job("V1", "ORD-1", ORDER, correlation_id="cid-1")
    second = services.jobs.create_order_job("V1", "ORD-1", ORDER)
    assert second.id == first.id
    assert len(enqueue.messages) == 1
    assert enqueue.messages[0] == {
        "syncJobId": first.id, "vendorId": "V1", "orderId": "ORD-1", "orderData": ORDER, "correlationId": "cid-1",
    }
    assert first.status == "pending"
    assert first.expires_at is not None

    services.jobs.mark_completed(first.id, "ERP-1")
    third = services.jobs.create_order_job("V1", "ORD-1", ORDER)
    assert third.id != first.id


def test_enqueue_failure_fails_the_job(services, enqueue):
    enqueue.fail = True
    with pytest.raises(JobEnqueueError):
        services.jobs.create_order_job("V1", "ORD-2", ORDER)
    rows, total = services.jobs.list_recent("V1")
    assert total == 1
    assert rows[0].status == "failed"


def test_backoff_schedule():
    assert [retry_countdown(n) for n in range(5)] == [60, 120, 240, 480, 960]


def test_dispatch_sends_authenticated_call(services, agent, enqueue, http):
    job = services.jobs.create_order_job("V1", "ORD-3", ORDER, correlation_id="cid-3")
    result = services.processor.process(_message(job, enqueue), attempt=1)
    assert result["status"] == "dispatched"
    call = http.calls_to("/sync/create-order")[0]
    assert call["headers"]["Authorization"] == f"Bearer {AGENT_SECRET}"
    assert call["headers"]["X-Correlation-ID"] == "cid-3"
    assert call["headers"]["X-Vendor-ID"] == "V1"
    assert call["json"]["orderId"] == "ORD-3"
    assert services.jobs.get_job(job.id).status == "processing"


def test_five_transport_failures_dead_letter(services, agent, enqueue, http):
    http.route("/sync/create-order", lambda body: FakeResponse(503, {"error": "down"}))
    job = services.jobs.create_order_job("V1", "ORD-4", ORDER)
    message = _message(job, enqueue)
    for attempt in range(1, 5):
        with pytest.raises(RetryableSyncError) as exc:
            services.processor.process(message, attempt=attempt)
        assert exc.value.countdown == retry_countdown(attempt - 1)
        stored = services.jobs.get_job(job.id)
        assert stored.status == "pending"
        assert stored.retry_count == attempt
    result = services.processor.process(message, attempt=5)
    assert result["status"] == "dead_lettered"

    stored = services.jobs.get_job(job.id)
    assert stored.status == "failed"
    assert stored.error_message
    with services.session_factory() as s:
        entry = s.execute(select(DeadLetterEntry)).scalar_one()
    assert entry.original_job_id == job.id
    assert entry.attempt_count == 5
    assert entry.payload["orderId"] == "ORD-4"


def test_agent_rejection_fails_without_retry(services, agent, enqueue, http):
    http.route("/sync/create-order", lambda body: FakeResponse(422, {"error": "unknown customer"}))
    job = services.jobs.create_order_job("V1", "ORD-5", ORDER)
    result = services.processor.process(_message(job, enqueue), attempt=1)
    assert result["status"] == "failed"
    assert services.jobs.get_job(job.id).status == "failed"
    assert services.dlq.count_unresolved() == 0


def test_invalid_payload_fails_immediately(services, agent, enqueue):
    job = services.jobs.create_order_job("V1", "ORD-6", ORDER)
    message = {**_message(job, enqueue), "orderData": None}
    assert services.processor.process(message)["status"] == "failed"
    assert services.processor.process(message)["status"] == "skipped"


def test_unknown_job_is_dropped(services):
    assert services.processor.process({"syncJobId": "missing"})["status"] == "missing"


def test_celery_task_retries_until_agent_accepts(services, agent, enqueue, http):
    from erp_sync.tasks.order_sync import process_order_sync
    from erp_sync.tasks.runtime import configure_worker_services

    attempts = []

    def flaky(body):
        attempts.append(body["syncJobId"])
        if len(attempts) <= 4:
            return FakeResponse(502, {"error": "bad gateway"})
        return {"accepted": True}

    http.route("/sync/create-order", flaky)
    job = services.jobs.create_order_job("V1", "ORD-7", ORDER)
    configure_worker_services(services)
    try:
        result = process_order_sync.apply(args=[_message(job, enqueue)]).get()
    finally:
        configure_worker_services(None)
    assert result["status"] == "dispatched"
    assert result["attempt"] == 5
    assert len(attempts) == 5
    assert services.jobs.get_job(job.id).retry_count == 4

    ok, _ = services.jobs.apply_callback("V1", job.id, "completed", erp_reference="BC-0042")
    assert ok
    assert services.jobs.get_job(job.id).status == "completed"
    assert services.dlq.count_unresolved() == 0


def test_callback_updates_order(client, services, agent, agent_headers):
    job = services.jobs.create_order_job("V1", "ORD-8", ORDER)
    headers = {**agent_headers, "X-Vendor-ID": "V1"}
    resp = client.post("/api/agents/callback", headers=headers, json={
        "jobId": job.id, "status": "completed", "erpReference": "BC-0099",
        "metadata": {"erpDocumentId": 991},
    })
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    stored = services.jobs.get_job(job.id)
    assert stored.status == "completed"
    assert stored.erp_reference == "BC-0099"
    with services.session_factory() as s:
        order = s.get(Order, "ORD-8")
    assert order.erp_reference == "BC-0099"
    assert order.erp_document_id == "991"

    resp = client.post("/api/agents/callback", headers=headers, json={"jobId": job.id, "status": "failed"})
    assert resp.json()["success"] is False


def test_callback_for_another_vendors_job(client, services, agent, agent_headers):
    job = services.jobs.create_order_job("V2", "ORD-9", ORDER)
    resp = client.post("/api/agents/callback", headers={**agent_headers, "X-Vendor-ID": "V1"},
                       json={"jobId": job.id, "status": "completed", "erpReference": "X"})
    assert resp.json()["success"] is False
    assert services.jobs.get_job(job.id).status == "pending"


def test_failure_callback_marks_job_failed(client, services, agent, agent_headers):
    job = services.jobs.create_order_job("V1", "ORD-10", ORDER)
    resp = client.post("/api/agents/callback", headers={**agent_headers, "X-Vendor-ID": "V1"},
                       json={"jobId": job.id, "status": "failed", "error": "customer blocked"})
    assert resp.json()["success"] is True
    stored = services.jobs.get_job(job.id)
    assert stored.status == "failed"
    assert stored.error_message == "customer blocked"


def test_admin_order_sync_endpoint(client, services, admin_headers, enqueue):
    resp = client.post("/api/admin/orders/ORD-11/sync", headers=admin_headers,
                       json={"vendorId": "V1", "orderData": ORDER})
    assert resp.status_code == 202
    again = client.post("/api/admin/orders/ORD-11/sync", headers=admin_headers,
                        json={"vendorId": "V1", "orderData": ORDER})
    assert again.json()["jobId"] == resp.json()["jobId"]
    assert len(enqueue.messages) == 1

    enqueue.fail = True
    resp = client.post("/api/admin/orders/ORD-12/sync", headers=admin_headers,
                       json={"vendorId": "V1", "orderData": ORDER})
    assert resp.status_code == 503


def test_pending_listing_is_oldest_first(services, clock):
    first = services.jobs.create_order_job("V1", "ORD-20", ORDER)
    clock.tick(1)
    second = services.jobs.create_order_job("V1", "ORD-21", ORDER)
    services.jobs.create_order_job("V2", "ORD-22", ORDER)
    assert [j.id for j in services.jobs.list_pending("V1")] == [first.id, second.id]
    services.jobs.mark_processing(first.id)
    assert [j.id for j in services.jobs.list_pending("V1")] == [second.id]


def test_failed_order_write_keeps_job_open_for_retried_callback(services, monkeypatch):
    job = services.jobs.create_order_job("V1", "ORD-30", ORDER)

    def broken_link(*args, **kwargs):
        raise OperationalError("UPDATE orders", {}, Exception("connection reset"))

    monkeypatch.setattr(services.jobs, "_link_order", broken_link)
    with pytest.raises(OperationalError):
        services.jobs.apply_callback("V1", job.id, "completed", erp_reference="BC-0300")
    assert services.jobs.get_job(job.id).status == "pending"
    with services.session_factory() as s:
        assert s.get(Order, "ORD-30") is None

    monkeypatch.undo()
    ok, _ = services.jobs.apply_callback("V1", job.id, "completed", erp_reference="BC-0300",
                                         metadata={"erpDocumentId": "DOC-1"})
    assert ok
    assert services.jobs.get_job(job.id).status == "completed"
    with services.session_factory() as s:
        order = s.get(Order, "ORD-30")
    assert order.erp_reference == "BC-0300"
    assert order.erp_document_id == "DOC-1"


def test_callback_rejects_overlong_document_id(client, services, agent, agent_headers):
    job = services.jobs.create_order_job("V1", "ORD-31", ORDER)
    resp = client.post("/api/agents/callback", headers={**agent_headers, "X-Vendor-ID": "V1"}, json={
        "jobId": job.id, "status": "completed", "erpReference": "BC-0301",
        "metadata": {"erpDocumentId": "D" * 129},
    })
    assert resp.status_code == 422
    assert services.jobs.get_job(job.id).status == "pending"
