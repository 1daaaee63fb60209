from datetime import datetime, timedelta
from erp_sync.sync.agent_registry import status_for, hash_token, verify_token
from conftest import AGENT_TOKEN, AGENT_URL


def test_status_thresholds():
    now = datetime(2024, 5, 1, 12, 0, 0)
    assert status_for(now - timedelta(seconds=59), now) == "online"
    assert status_for(now - timedelta(seconds=60), now) == "degraded"
    assert status_for(now - timedelta(seconds=300), now) == "degraded"
    assert status_for(now - timedelta(seconds=301), now) == "offline"
    assert status_for(None, now) == "offline"


def test_token_hash_is_not_reversible_and_verifies():
    token_hash = hash_token(AGENT_TOKEN, rounds=4)
    assert AGENT_TOKEN not in token_hash
    assert verify_token(AGENT_TOKEN, token_hash)
    assert not verify_token("another-token-123456", token_hash)
    assert not verify_token(AGENT_TOKEN, "not-a-bcrypt-hash")


def test_heartbeat_silence_degrades_then_offlines(services, agent, clock):
    registry = services.registry
    assert registry.get_agent("V1").status == "online"
    clock.tick(65)
    assert registry.get_agent("V1").status == "degraded"
    clock.tick(236)
    assert registry.get_agent("V1").status == "offline"
    view = registry.heartbeat("V1")
    assert view.status == "online"
    assert registry.get_agent("V1").status == "online"


def test_heartbeat_for_unknown_vendor(services):
    assert services.registry.heartbeat("NOPE") is None


def test_reregistration_rotates_token(services, agent):
    old_hash = services.registry.get_token_hash("V1")
    services.registry.register("V1", AGENT_URL, "ebp", "rotated-token-abcdefgh")
    new_hash = services.registry.get_token_hash("V1")
    assert new_hash != old_hash
    assert verify_token("rotated-token-abcdefgh", new_hash)
    assert not verify_token(AGENT_TOKEN, new_hash)
    assert services.registry.agent_stats()["total"] == 1


def test_health_sweep_writes_status_and_alerts_once(services, agent, clock, slack):
    clock.tick(400)
    changes = services.registry.check_health()
    assert [(c["vendorId"], c["currentStatus"]) for c in changes] == [("V1", "offline")]
    assert len(slack.messages) == 1
    assert "agent_offline" in slack.messages[0]
    assert services.registry.check_health() == []
    assert len(slack.messages) == 1


def test_register_and_heartbeat_endpoints(client):
    resp = client.post("/api/agents/register", json={
        "vendorId": "V7", "agentUrl": "http://agent.v7.test/", "erpType": "sage",
        "authToken": AGENT_TOKEN, "version": "2.1.0",
    })
    assert resp.status_code == 201
    assert resp.json()["agent"]["agentUrl"] == "http://agent.v7.test"
    assert "authToken" not in resp.json()["agent"]

    resp = client.post("/api/agents/heartbeat", json={"vendorId": "V7"},
                       headers={"Authorization": f"Bearer {AGENT_TOKEN}"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "online"

    resp = client.post("/api/agents/heartbeat", json={"vendorId": "V7"},
                       headers={"Authorization": "Bearer wrong-token-000000"})
    assert resp.status_code == 401


def test_register_rejects_unknown_erp_type(client):
    resp = client.post("/api/agents/register", json={
        "vendorId": "V7", "agentUrl": "http://agent.v7.test", "erpType": "sap", "authToken": AGENT_TOKEN,
    })
    assert resp.status_code == 422


def test_admin_agent_listing_and_deregistration(client, agent, admin_headers):
    assert client.get("/api/agents").status_code == 401
    assert client.get("/api/agents", headers={"X-API-Key": "nope"}).status_code == 401

    resp = client.get("/api/agents", headers=admin_headers)
    assert resp.status_code == 200
    assert [a["vendorId"] for a in resp.json()["agents"]] == ["V1"]
    assert client.get("/api/agents/V1", headers=admin_headers).json()["erpType"] == "ebp"

    assert client.delete("/api/agents/V1", headers=admin_headers).status_code == 200
    assert client.get("/api/agents/V1", headers=admin_headers).status_code == 404
    assert client.delete("/api/agents/V1", headers=admin_headers).status_code == 404
