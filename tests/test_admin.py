import redis
from conftest import FakeResponse


def test_admin_routes_require_api_key(client):
    assert client.get("/api/admin/circuit-breakers").status_code == 401
    assert client.get("/api/admin/circuit-breakers", headers={"X-API-Key": "wrong"}).status_code == 401


def test_mapping_crud(client, admin_headers):
    resp = client.post("/api/admin/mappings", headers=admin_headers, json={
        "vendorId": "V1", "mappingType": "unit", "erpCode": "KG", "restoCode": "kilogram", "restoLabel": "Kilogram",
    })
    assert resp.status_code == 201
    mapping_id = resp.json()["id"]

    resp = client.patch(f"/api/admin/mappings/{mapping_id}", headers=admin_headers, json={"restoLabel": "Kilo"})
    assert resp.json()["restoLabel"] == "Kilo"

    listed = client.get("/api/admin/mappings", headers=admin_headers, params={"vendorId": "V1"}).json()
    assert listed["total"] == 1

    assert client.delete(f"/api/admin/mappings/{mapping_id}", headers=admin_headers).json()["isActive"] is False
    listed = client.get("/api/admin/mappings", headers=admin_headers, params={"vendorId": "V1"}).json()
    assert listed["total"] == 0
    assert client.patch("/api/admin/mappings/999", headers=admin_headers, json={}).status_code == 404


def test_mapping_type_is_validated(client, admin_headers):
    resp = client.post("/api/admin/mappings", headers=admin_headers, json={
        "vendorId": "V1", "mappingType": "color", "erpCode": "R", "restoCode": "red", "restoLabel": "Red",
    })
    assert resp.status_code == 422


def test_seed_and_cache_endpoints(client, admin_headers, services):
    resp = client.post("/api/admin/mappings/seed", headers=admin_headers, json={
        "vendorId": "V1",
        "mappings": [
            {"mappingType": "unit", "erpCode": "KG", "restoCode": "kilogram", "restoLabel": "Kilogram"},
            {"mappingType": "vat", "erpCode": "TVA20", "restoCode": "vat_20", "restoLabel": "20"},
        ],
    })
    assert resp.json() == {"success": True, "count": 2}
    services.mappings.resolve("V1", "unit", "KG")
    assert client.get("/api/admin/mappings/cache/stats", headers=admin_headers).json()["size"] == 1
    client.post("/api/admin/mappings/cache/clear", headers=admin_headers)
    assert client.get("/api/admin/mappings/cache/stats", headers=admin_headers).json()["size"] == 0


def test_circuit_breaker_status_and_reset(client, services, agent, http, admin_headers):
    http.route("/sync/create-order", lambda body: FakeResponse(500, {"error": "boom"}))
    for i in range(5):
        try:
            services.agents.call_agent("V1", "orders", "/sync/create-order", {"n": i})
        except Exception:
            pass
    breakers = client.get("/api/admin/circuit-breakers", headers=admin_headers).json()["breakers"]
    assert breakers == [{"name": "V1:orders", "state": "open", "calls": 0, "failures": 0, "errorRate": 0.0}]

    resp = client.post("/api/admin/circuit-breakers/reset", headers=admin_headers,
                       json={"vendorId": "V1", "apiType": "orders"})
    assert resp.json() == {"success": True, "reset": 1}
    assert services.breakers.find("V1", "orders").state.value == "closed"
    resp = client.post("/api/admin/circuit-breakers/reset", headers=admin_headers,
                       json={"vendorId": "V1", "apiType": "items"})
    assert resp.status_code == 404


def test_sync_metrics(client, services, clock, admin_headers):
    for n in range(4):
        job = services.jobs.create_order_job("V1", f"ORD-{n}", {"lines": []})
        services.jobs.mark_processing(job.id, attempt=1 + (n == 3))
        clock.tick(n + 1)
        if n < 3:
            services.jobs.mark_completed(job.id, f"ERP-{n}")
        else:
            services.jobs.mark_failed(job.id, "boom")
    body = client.get("/api/admin/metrics/sync", headers=admin_headers, params={"vendorId": "V1"}).json()
    assert body["total"] == 4
    assert body["completed"] == 3
    assert body["failed"] == 1
    assert body["successRate"] == 0.75
    assert body["avgLatencyMs"] == 2000.0
    assert body["p95LatencyMs"] == 3000.0
    assert body["retryRate"] == 0.25


def test_agent_metrics(client, agent, clock, admin_headers):
    clock.tick(120)
    body = client.get("/api/admin/metrics/agents", headers=admin_headers).json()
    assert body == {"total": 1, "online": 0, "degraded": 1, "offline": 0}


def test_health_and_prometheus_endpoints(client):
    assert client.get("/health").json() == {"status": "ok", "database": True}
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert b"api_requests_total" in resp.content


def test_correlation_id_is_echoed(client):
    resp = client.get("/health", headers={"X-Correlation-ID": "cid-123"})
    assert resp.headers["X-Correlation-ID"] == "cid-123"
    assert client.get("/health").headers["X-Correlation-ID"]


class _Redis:
    def __init__(self, up):
        self.up = up

    def ping(self):
        if not self.up:
            raise redis.ConnectionError("broker down")
        return True


def test_readiness_reports_broker_and_agents(client, agent, monkeypatch):
    monkeypatch.setattr(redis.Redis, "from_url", lambda url, **kw: _Redis(True))
    body = client.get("/ready").json()
    assert body == {"status": "ok", "database": True, "redis": True,
                    "agents": {"total": 1, "online": 1, "degraded": 0, "offline": 0}}

    monkeypatch.setattr(redis.Redis, "from_url", lambda url, **kw: _Redis(False))
    body = client.get("/ready").json()
    assert body["status"] == "degraded"
    assert body["redis"] is False
