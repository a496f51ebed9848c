from fastapi.testclient import TestClient

from procureflow.main import create_app


def test_success_response_contains_trace_id_and_success_envelope(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.headers.get("x-trace-id")
    assert resp.headers.get("x-request-id")

    body = resp.json()
    assert body["success"] is True
    assert body["message"] == "ok"
    assert body["meta"]["trace_id"] == resp.headers["x-trace-id"]


def test_error_response_contains_standard_error_object(client):
    resp = client.get("/route-not-exists")
    assert resp.status_code == 404
    assert resp.headers.get("x-trace-id")
    assert resp.headers.get("x-request-id")

    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "REQ_NOT_FOUND"
    assert set(body["error"].keys()) >= {"code", "message", "retryable", "class"}
    assert body["meta"]["trace_id"]


def test_incoming_trace_id_is_propagated(client):
    resp = client.get("/api/v1/cases", headers={"x-trace-id": "trace_fixed_1", "x-request-id": "req_fixed_1"})
    assert resp.status_code == 200
    assert resp.headers["x-trace-id"] == "trace_fixed_1"
    assert resp.headers["x-request-id"] == "req_fixed_1"
    assert resp.json()["meta"]["trace_id"] == "trace_fixed_1"


def test_rejection_envelope_carries_details(client):
    resp = client.get("/api/v1/cases/case_missing", headers={"x-trace-id": "trace_missing"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["error"] == {
        "code": "NOT_FOUND",
        "message": "case not found: case_missing",
        "retryable": False,
        "class": "validation",
        "details": {"case_id": "case_missing"},
    }
    assert body["meta"]["trace_id"] == "trace_missing"


def test_unexpected_error_returns_internal_error_envelope(monkeypatch):
    for name in ("JWT_SHARED_SECRET", "JWT_ISSUER", "JWT_AUDIENCE"):
        monkeypatch.delenv(name)
    app = create_app()

    def _boom(*args, **kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(app.state.workflow, "list_cases", _boom)
    raw = TestClient(app, raise_server_exceptions=False)
    resp = raw.get("/api/v1/cases", headers={"x-actor-id": "user_a", "x-actor-role": "ADMIN"})
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "INTERNAL_ERROR"
    assert body["error"]["class"] == "internal"
    assert "unexpected" not in body["error"]["message"]
