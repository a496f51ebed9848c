"""Caller identity for the HTTP API.

Callers present an HS256 bearer token whose ``sub`` and role claims become
the acting user. Role lookup happens upstream in whatever issued the token;
this module only verifies the token. With no JWT settings configured the API
runs in development mode and trusts ``x-actor-id`` / ``x-actor-role``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from procureflow.errors import ApiError
from procureflow.permissions import Actor

_SENSITIVE_KEYS = frozenset({"authorization", "token", "secret", "password", "api_key", "access_token"})
_REDACTED = "***REDACTED***"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _claim_names(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def redact_sensitive(value: object) -> object:
    """Mask credentials before request data reaches the logs."""
    if isinstance(value, dict):
        return {
            str(key): _REDACTED if str(key).lower() in _SENSITIVE_KEYS else redact_sensitive(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str) and len(value) >= 24 and "bearer " in value.lower():
        return _REDACTED
    return value


@dataclass
class AuthContext:
    subject: str
    role: str
    claims: dict[str, Any]

    def to_actor(self) -> Actor:
        return Actor(actor_id=self.subject, role=self.role)


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    role_claim: str
    log_redaction_enabled: bool

    @classmethod
    def from_env(cls) -> "JwtSecurityConfig":
        issuer = os.environ.get("JWT_ISSUER", "").strip()
        audience = os.environ.get("JWT_AUDIENCE", "").strip()
        shared_secret = os.environ.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_claim_names(os.environ.get("JWT_REQUIRED_CLAIMS", "sub,role,exp")),
            role_claim=os.environ.get("JWT_ROLE_CLAIM", "role").strip() or "role",
            log_redaction_enabled=_env_bool("SECURITY_LOG_REDACTION_ENABLED", True),
        )


# -- token decoding ------------------------------------------------------


def _decode_segment(segment: str) -> dict[str, Any]:
    padded = segment + "=" * (-len(segment) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(decoded, dict):
        raise _unauthorized("invalid token payload")
    return decoded


def _hs256_signature(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _timestamp(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer":
        raise _unauthorized("invalid Authorization header")
    token = token.strip()
    if not token:
        raise _unauthorized("empty bearer token")
    return token


def _check_registered_claims(claims: Mapping[str, Any], cfg: JwtSecurityConfig) -> None:
    now_ts = int(datetime.now(UTC).timestamp())
    exp = _timestamp(claims.get("exp"))
    if exp is None or exp <= now_ts:
        raise _unauthorized("token expired")
    nbf = _timestamp(claims.get("nbf"))
    if nbf is not None and nbf > now_ts:
        raise _unauthorized("token not yet valid")
    if cfg.issuer and str(claims.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience:
        aud = claims.get("aud")
        audiences = {str(x) for x in aud} if isinstance(aud, list) else {str(aud or "")}
        if cfg.audience not in audiences:
            raise _unauthorized("jwt audience mismatch")
    for claim in cfg.required_claims:
        if claim not in claims:
            raise _unauthorized(f"missing required claim: {claim}")


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    token = _bearer_token(authorization)
    parts = token.split(".")
    if len(parts) != 3:
        raise _unauthorized("invalid token format")
    header_raw, payload_raw, signature_raw = parts
    header = _decode_segment(header_raw)
    claims = _decode_segment(payload_raw)
    if str(header.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")
    expected = _hs256_signature(cfg.shared_secret, f"{header_raw}.{payload_raw}")
    if not hmac.compare_digest(expected, signature_raw):
        raise _unauthorized("invalid token signature")
    _check_registered_claims(claims, cfg)

    subject = str(claims.get("sub") or "").strip()
    role = str(claims.get(cfg.role_claim) or "").strip()
    if not subject or not role:
        raise _unauthorized("missing subject or role claim")
    return AuthContext(subject=subject, role=role, claims=claims)


def actor_from_headers(headers: Mapping[str, str]) -> Actor | None:
    """Development-mode identity; ``None`` when either header is missing."""
    actor_id = headers.get("x-actor-id", "").strip()
    role = headers.get("x-actor-role", "").strip()
    if not actor_id or not role:
        return None
    return Actor(actor_id=actor_id, role=role)
