import pathlib
import sys
import time

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from procureflow.config import WorkflowConfig
from procureflow.main import create_app
from procureflow.service import build_workflow
from procureflow.store import InMemoryStore, store

TEST_SECRET = "jwt_test_secret"
TEST_ISSUER = "test-issuer"
TEST_AUDIENCE = "test-audience"


def bearer_for(subject: str, role: str, *, secret: str = TEST_SECRET, ttl_s: int = 1800) -> str:
    issued_at = int(time.time())
    claims = {
        "sub": subject,
        "role": role,
        "iss": TEST_ISSUER,
        "aud": TEST_AUDIENCE,
        "iat": issued_at,
        "exp": issued_at + ttl_s,
    }
    return "Bearer " + jwt.encode(claims, secret, algorithm="HS256")


class ActorClient:
    """Test client that turns ``x-actor-id`` / ``x-actor-role`` into a signed token.

    Calls without those headers act as ``user_admin`` with the ADMIN role.
    """

    def __init__(self, client: TestClient):
        self._client = client

    def _sign(self, url: str, headers: dict) -> dict:
        if not url.startswith("/api/v1/") or "Authorization" in headers:
            return headers
        subject = str(headers.pop("x-actor-id", "user_admin"))
        role = str(headers.pop("x-actor-role", "ADMIN"))
        headers["Authorization"] = bearer_for(subject, role)
        return headers

    def request(self, method: str, url: str, **kwargs):
        headers = self._sign(url, dict(kwargs.pop("headers", None) or {}))
        return self._client.request(method, url, headers=headers, **kwargs)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


class RecordingNotifier:
    def __init__(self):
        self.alerts = []

    def notify(self, alert):
        self.alerts.append(alert)


@pytest.fixture(autouse=True)
def jwt_env_and_clean_store(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", TEST_SECRET)
    monkeypatch.setenv("JWT_ISSUER", TEST_ISSUER)
    monkeypatch.setenv("JWT_AUDIENCE", TEST_AUDIENCE)
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,role,exp")
    store.reset()
    yield


@pytest.fixture
def client() -> ActorClient:
    return ActorClient(TestClient(create_app()))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def workflow(notifier: RecordingNotifier):
    return build_workflow(store=InMemoryStore(), config=WorkflowConfig(), notifier=notifier)
