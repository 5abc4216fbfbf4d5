"""
HTTP-level tests for the reading and usage routes.
"""

import pytest
from fastapi.testclient import TestClient

from iching_gateway.app import create_app
from iching_gateway.models import AppConfig

from conftest import FakeCompletion, Throttled, make_gateway, make_response

BODY = {
    "question": "should I take the job",
    "method": "coin",
    "primary": {"number": 12, "name": "Pi"},
    "relating": {"number": 7},
    "changingLines": [2, 5],
}


def _client(completion, **config) -> TestClient:
    cfg = AppConfig.model_validate(config)
    app = create_app(config=cfg, gateway=make_gateway(completion, config=cfg))
    return TestClient(app)


def test_health_routes():
    with _client(FakeCompletion(make_response())) as client:
        for path in ("/healthz", "/health", "/"):
            resp = client.get(path)
            assert resp.status_code == 200
            assert resp.text == "ok"


@pytest.mark.parametrize("path", ["/api/read", "/api/ai", "/generate"])
def test_read_then_cache(path):
    completion = FakeCompletion(make_response({"score": 7}))
    with _client(completion) as client:
        first = client.post(path, json=BODY)
        second = client.post(path, json=BODY)

    assert first.status_code == 200
    assert first.json() == {"ok": True, "source": "provider", "reading": {"score": 7}}
    assert second.json() == {"ok": True, "source": "cache", "reading": {"score": 7}}
    assert len(completion.calls) == 1


def test_empty_or_invalid_body_is_treated_as_empty():
    completion = FakeCompletion(make_response())
    with _client(completion) as client:
        assert client.post("/api/read", content=b"").status_code == 200
        assert client.post("/api/read", content=b"[1, 2]").status_code == 200
    # Both map to the same empty fingerprint
    assert len(completion.calls) == 1


def test_invalid_request_returns_400():
    with _client(FakeCompletion(make_response())) as client:
        resp = client.post("/api/read", json={"changingLines": "not-a-list"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


def test_budget_exceeded_envelope():
    with _client(FakeCompletion(make_response()), budget={"daily_budget_usd": 0}) as client:
        resp = client.post("/api/read", json=BODY)
    assert resp.status_code == 429
    assert resp.json()["ok"] is False
    assert resp.json()["error"] == "budget_exceeded"


def test_upstream_failure_envelope():
    completion = FakeCompletion(Throttled(), Throttled())
    with _client(completion) as client:
        resp = client.post("/api/read", json=BODY)
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "generation_failed"
    assert body["code"] == "upstream_throttled"
    assert body["message"]
    assert body["hint"]


@pytest.mark.parametrize("content", ['{"reading": null}', '{"reading": "text"}', '{"reading": {}}'])
def test_non_object_reading_envelope_then_recovers(content):
    completion = FakeCompletion(make_response(content=content), make_response({"score": 3}))
    with _client(completion) as client:
        failed = client.post("/generate", json=BODY)
        retried = client.post("/generate", json=BODY)

    assert failed.status_code == 500
    assert failed.json()["error"] == "generation_failed"
    assert failed.json()["code"] == "upstream_invalid_payload"
    assert retried.status_code == 200
    assert retried.json() == {"ok": True, "source": "provider", "reading": {"score": 3}}
    assert len(completion.calls) == 2


def test_busy_envelope():
    completion = FakeCompletion(make_response())
    cfg = AppConfig()
    gateway = make_gateway(completion, config=cfg)
    gateway.gate.try_acquire()  # another request is in flight
    with TestClient(create_app(config=cfg, gateway=gateway)) as client:
        resp = client.post("/api/read", json=BODY)
    assert resp.status_code == 429
    assert resp.json()["error"] == "busy"
    assert completion.calls == []


def test_stub_mode_route():
    with _client(FakeCompletion(make_response()), llm={"enabled": False}) as client:
        resp = client.post("/api/read", json=BODY)
    assert resp.json()["source"] == "stub"


def test_usage_open_without_admin_key():
    with _client(FakeCompletion(make_response())) as client:
        client.post("/api/read", json=BODY)
        resp = client.get("/api/usage")
    assert resp.status_code == 200
    body = resp.json()
    assert body["used"]["requests"] == 1
    assert body["used"]["tokens"] == 150
    assert body["limits"]["usd"] is None


def test_usage_requires_admin_key():
    with _client(FakeCompletion(make_response()), admin_key="s3cret") as client:
        assert client.get("/api/usage").status_code == 403
        assert client.get("/usage", params={"key": "wrong"}).json() == {"ok": False, "error": "forbidden"}
        assert client.get("/api/usage", params={"key": "s3cret"}).status_code == 200
        assert client.get("/usage", headers={"X-Admin-Key": "s3cret"}).status_code == 200
