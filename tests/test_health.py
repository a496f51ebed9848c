def test_health_endpoint(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}


def test_api_health_reports_store_backend(client):
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok", "store_backend": "memory"}


def test_api_health_does_not_require_token(client):
    resp = client.get("/api/v1/health", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 200
