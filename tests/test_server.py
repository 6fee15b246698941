import json

import pytest
from fastapi.testclient import TestClient

import guardian_gateway.store as store_mod
from guardian_gateway.auth import ENV_API_KEYS_FILE, ENV_API_KEYS_JSON
from guardian_gateway.config import GuardConfig
from guardian_gateway.gate import GuardianGate, parse_block_reason
from guardian_gateway.server import create_app
from guardian_gateway.store import MemoryEscalationStore


@pytest.fixture
def clock(monkeypatch):
    now = {"ms": 1_700_000_000_000}
    monkeypatch.setattr(store_mod, "_now_ms", lambda: now["ms"])
    return now


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    # Tests shouldn't depend on the developer's shell.
    for name in (
        ENV_API_KEYS_JSON,
        ENV_API_KEYS_FILE,
        "GA_RATE_LIMIT_APPROVE",
        "GA_MAX_REQUEST_BYTES",
        "GA_METRICS_TOKEN",
        "GA_METRICS_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)


def _client(config=None) -> TestClient:
    gate = GuardianGate(config or GuardConfig(), store=MemoryEscalationStore())
    return TestClient(create_app(gate))


def _escalate(client, command="rm -rf ./build"):
    r = client.post("/v1/tool-call", json={"toolName": "exec", "params": {"command": command}})
    assert r.status_code == 200
    return parse_block_reason(r.json()["blockReason"])[1]


def test_tool_call_allow_block_escalate(clock):
    client = _client()

    allowed = client.post("/v1/tool-call", json={"toolName": "exec", "params": {"command": "ls"}})
    assert allowed.status_code == 200
    assert allowed.json() == {}

    blocked = client.post("/v1/tool-call", json={"toolName": "exec", "params": {"command": "rm -rf /"}})
    assert blocked.json() == {
        "block": True,
        "blockReason": "GUARDIAN_ANGEL_BLOCK|Command would destroy root filesystem",
    }

    nonce = _escalate(client)
    assert len(nonce) == 8


def test_tool_call_requires_tool_name(clock):
    r = _client().post("/v1/tool-call", json={"params": {}})
    assert r.status_code == 422


def test_approve_flow_over_http(clock):
    client = _client()
    nonce = _escalate(client)

    r = client.post("/v1/approve", json={"nonce": nonce, "reason": "user confirmed"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "nonce": nonce, "windowSeconds": 30}

    retry = client.post("/v1/tool-call", json={"toolName": "exec", "params": {"command": "rm -rf ./build"}})
    assert retry.json() == {}

    again = client.post("/v1/approve", json={"nonce": nonce})
    assert again.status_code == 404
    assert again.json()["error"] == "NotFound"


def test_expired_nonce_is_410(clock):
    client = _client()
    nonce = _escalate(client)
    clock["ms"] += 300_001

    r = client.post("/v1/approve", json={"nonce": nonce})
    assert r.status_code == 410
    assert r.json() == {
        "ok": False,
        "nonce": nonce,
        "error": "Expired",
        "message": "Escalation expired. Please retry the original action.",
    }


def test_api_keys_required_when_configured(monkeypatch, clock):
    monkeypatch.setenv(ENV_API_KEYS_JSON, json.dumps({"k1": "alice"}))
    client = _client()

    r = client.post("/v1/tool-call", json={"toolName": "exec", "params": {"command": "ls"}})
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == "GA_E_AUTH_REQUIRED"
    assert r.json()["detail"]["message"] == "API_KEY_REQUIRED"

    r = client.get("/v1/stats", headers={"X-Api-Key": "nope"})
    assert r.status_code == 401
    assert r.json()["detail"]["message"] == "API_KEY_INVALID"

    r = client.post(
        "/v1/tool-call",
        json={"toolName": "exec", "params": {"command": "ls"}},
        headers={"X-Api-Key": "k1"},
    )
    assert r.status_code == 200

    # Health stays open for liveness probes.
    assert client.get("/v1/health").status_code == 200


def test_malformed_key_config_fails_closed(monkeypatch, clock):
    monkeypatch.setenv(ENV_API_KEYS_JSON, "not json")
    r = _client().post("/v1/approve", json={"nonce": "deadbeef"}, headers={"X-Api-Key": "anything"})
    assert r.status_code == 401
    assert r.json()["detail"]["message"] == "API_KEY_CONFIG_INVALID"


def test_approve_is_rate_limited(monkeypatch, clock):
    monkeypatch.setenv("GA_RATE_LIMIT_APPROVE", "2/m")
    client = _client()

    codes = [client.post("/v1/approve", json={"nonce": "deadbeef"}).status_code for _ in range(3)]
    assert codes == [404, 404, 429]

    r = client.post("/v1/approve", json={"nonce": "deadbeef"})
    assert r.json()["detail"]["code"] == "GA_E_RATE_LIMITED"
    assert r.json()["detail"]["retryable"] is True


def test_rate_limit_can_be_disabled(monkeypatch, clock):
    monkeypatch.setenv("GA_RATE_LIMIT_APPROVE", "off")
    client = _client()
    codes = {client.post("/v1/approve", json={"nonce": "deadbeef"}).status_code for _ in range(40)}
    assert codes == {404}


def test_request_size_limit(monkeypatch, clock):
    monkeypatch.setenv("GA_MAX_REQUEST_BYTES", "64")
    client = _client()
    r = client.post("/v1/tool-call", json={"toolName": "exec", "params": {"command": "x" * 200}})
    assert r.status_code == 413
    assert r.json() == {"detail": "REQUEST_TOO_LARGE"}


def test_health_and_stats(clock):
    client = _client(GuardConfig(store_backend="json"))
    health = client.get("/v1/health").json()
    assert health["status"] == "healthy"
    assert health["enabled"] is True

    _escalate(client)
    stats = client.get("/v1/stats").json()
    assert stats["store_backend"] == "json"
    assert stats["lockdown_active"] is False
    assert stats["decisions_by_outcome"]["escalate"] >= 1
    assert "uptime_seconds" in stats


def test_metrics_endpoint(monkeypatch, clock):
    client = _client()
    _escalate(client)
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "ga_decisions_total" in r.text
    assert "ga_http_requests_total" in r.text


def test_metrics_token(monkeypatch, clock):
    monkeypatch.setenv("GA_METRICS_TOKEN", "s3cret")
    client = _client()
    assert client.get("/metrics").status_code == 403
    assert client.get("/metrics", headers={"Authorization": "Bearer s3cret"}).status_code == 200


def test_store_failure_is_reported_with_error_envelope(clock):
    from guardian_gateway.errors import StoreIOError

    class BrokenStore(MemoryEscalationStore):
        def approve(self, nonce):
            raise StoreIOError("read-only filesystem")

    client = TestClient(create_app(GuardianGate(GuardConfig(), store=BrokenStore())))
    r = client.post("/v1/approve", json={"nonce": "deadbeef"})
    assert r.status_code == 503
    assert r.json()["code"] == "GA_E_STORE_IO"
    assert r.json()["retryable"] is True
