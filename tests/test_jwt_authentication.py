from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import jwt
import pytest
from fastapi.testclient import TestClient

from procureflow.errors import ApiError
from procureflow.main import create_app
from procureflow.security import (
    JwtSecurityConfig,
    actor_from_headers,
    parse_and_validate_bearer_token,
    redact_sensitive,
)


def _auth_client(monkeypatch) -> tuple[TestClient, str]:
    shared_key = "jwt_test_key_material"
    monkeypatch.setenv("JWT_ISSUER", "procureflow.test")
    monkeypatch.setenv("JWT_AUDIENCE", "procureflow.api")
    monkeypatch.setenv("JWT_SHARED_SECRET", shared_key)
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,role,exp")
    return TestClient(create_app()), shared_key


def _token_for(
    *,
    secret: str,
    role: str | None = "ADMIN",
    ttl_minutes: int = 15,
    extra: dict[str, object] | None = None,
) -> str:
    now = datetime.now(UTC)
    claims: dict[str, object] = {
        "iss": "procureflow.test",
        "aud": "procureflow.api",
        "sub": "user_a",
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
    }
    if role is not None:
        claims["role"] = role
    if extra:
        claims.update(extra)
    return jwt.encode(claims, secret, algorithm="HS256")


def test_jwt_required_rejects_missing_authorization(monkeypatch):
    client, _secret = _auth_client(monkeypatch)
    resp = client.get("/api/v1/cases")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert resp.headers.get("x-trace-id")


def test_jwt_rejects_expired_token(monkeypatch):
    client, secret = _auth_client(monkeypatch)
    token = _token_for(secret=secret, ttl_minutes=-1)
    resp = client.get("/api/v1/cases", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "token expired"


def test_jwt_rejects_missing_role_claim(monkeypatch):
    client, secret = _auth_client(monkeypatch)
    token = _token_for(secret=secret, role=None)
    resp = client.get("/api/v1/cases", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "missing required claim: role"


def test_jwt_rejects_wrong_signature(monkeypatch):
    client, _secret = _auth_client(monkeypatch)
    token = _token_for(secret="some_other_key_material")
    resp = client.get("/api/v1/cases", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "invalid token signature"


def test_jwt_rejects_audience_mismatch(monkeypatch):
    client, secret = _auth_client(monkeypatch)
    token = _token_for(secret=secret, extra={"aud": "another.api"})
    resp = client.get("/api/v1/cases", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "jwt audience mismatch"


def test_jwt_role_claim_drives_permissions(monkeypatch):
    client, secret = _auth_client(monkeypatch)
    admin = {"Authorization": f"Bearer {_token_for(secret=secret)}"}
    budget = {"Authorization": f"Bearer {_token_for(secret=secret, role='BUDGET_MANAGER')}"}

    created = client.post("/api/v1/cases", json={"title": "Laptops", "method": "SMALL_VALUE_RFQ"}, headers=admin)
    assert created.status_code == 201
    assert created.json()["data"]["created_by"] == "user_a"
    case_id = created.json()["data"]["case_id"]

    denied = client.post(f"/api/v1/cases/{case_id}/stages/rfq", json={"payload": {}}, headers=budget)
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "PERMISSION_DENIED"


def test_custom_role_claim(monkeypatch):
    monkeypatch.setenv("JWT_ROLE_CLAIM", "procureflow_role")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    monkeypatch.setenv("JWT_ISSUER", "procureflow.test")
    monkeypatch.setenv("JWT_AUDIENCE", "procureflow.api")
    monkeypatch.setenv("JWT_SHARED_SECRET", "jwt_test_key_material")
    client = TestClient(create_app())
    secret = "jwt_test_key_material"
    token = _token_for(secret=secret, role=None, extra={"procureflow_role": "ADMIN"})
    resp = client.post(
        "/api/v1/cases",
        json={"title": "Desks", "method": "PUBLIC_BIDDING"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert resp.status_code == 201


def test_header_identity_when_jwt_not_configured(monkeypatch):
    for name in ("JWT_ISSUER", "JWT_AUDIENCE", "JWT_SHARED_SECRET"):
        monkeypatch.delenv(name, raising=False)
    client = TestClient(create_app())

    anonymous = client.post("/api/v1/cases", json={"title": "Paper", "method": "SMALL_VALUE_RFQ"})
    assert anonymous.status_code == 401

    resp = client.post(
        "/api/v1/cases",
        json={"title": "Paper", "method": "SMALL_VALUE_RFQ"},
        headers={"x-actor-id": "user_h", "x-actor-role": "PROCUREMENT_MANAGER"},
    )
    assert resp.status_code == 201
    assert resp.json()["data"]["created_by"] == "user_h"


def test_security_block_logs_redacted_headers(monkeypatch, caplog):
    client, _secret = _auth_client(monkeypatch)
    with caplog.at_level(logging.WARNING, logger="procureflow.main"):
        resp = client.get("/api/v1/cases", headers={"Authorization": "Bearer abc.def.ghi"})
    assert resp.status_code == 401
    blocked = [r.getMessage() for r in caplog.records if "security_blocked" in r.getMessage()]
    assert blocked
    assert "abc.def.ghi" not in blocked[0]
    assert "***REDACTED***" in blocked[0]


def test_parse_rejects_non_hs256_algorithm():
    cfg = JwtSecurityConfig(
        enabled=True,
        issuer="",
        audience="",
        shared_secret="k" * 64,
        required_claims=["sub"],
        role_claim="role",
        log_redaction_enabled=True,
    )
    token = jwt.encode({"sub": "u", "role": "ADMIN", "exp": 9999999999}, "k" * 64, algorithm="HS512")
    with pytest.raises(ApiError, match="unsupported jwt algorithm"):
        parse_and_validate_bearer_token(authorization=f"Bearer {token}", cfg=cfg)


def test_redact_sensitive_masks_nested_secrets():
    redacted = redact_sensitive({"authorization": "Bearer x", "nested": {"token": "t", "keep": "v"}})
    assert redacted == {"authorization": "***REDACTED***", "nested": {"token": "***REDACTED***", "keep": "v"}}


def test_validated_token_maps_to_actor():
    cfg = JwtSecurityConfig(
        enabled=True,
        issuer="procureflow.test",
        audience="procureflow.api",
        shared_secret="jwt_test_key_material",
        required_claims=["sub", "role", "exp"],
        role_claim="role",
        log_redaction_enabled=True,
    )
    token = _token_for(secret=cfg.shared_secret, role="BUDGET_MANAGER")
    auth = parse_and_validate_bearer_token(authorization=f"Bearer {token}", cfg=cfg)
    actor = auth.to_actor()
    assert (actor.actor_id, actor.role) == ("user_a", "BUDGET_MANAGER")


def test_header_identity_needs_both_headers():
    assert actor_from_headers({"x-actor-id": "user_x"}) is None
    actor = actor_from_headers({"x-actor-id": " user_x ", "x-actor-role": "ADMIN"})
    assert (actor.actor_id, actor.role) == ("user_x", "ADMIN")
