import asyncio
import json
import pathlib
import sys
import threading
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from streamguard.auth_provider import hash_password
from streamguard.main import create_app
from streamguard.registry import Verdict

JWT_SECRET = "jwt_test_secret_streamguard_suite"


def _issue_token(
    *,
    secret: str = JWT_SECRET,
    tenant_id: str,
    role: str,
    subject: str | None = None,
    ttl_minutes: int = 30,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject or f"user_{tenant_id}_{role}",
        "tenant_id": tenant_id,
        "role": role,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class ScriptedVerdictSource:
    """Verdict source the tests can hold open, fail, or steer."""

    def __init__(self) -> None:
        self.verdict = Verdict.ACCEPTED
        self.error: Exception | None = None
        self.gate = threading.Event()
        self.gate.set()
        self.calls: list[str] = []

    async def evaluate(self, record):
        self.calls.append(record.id)
        while not self.gate.is_set():
            await asyncio.sleep(0.005)
        if self.error is not None:
            raise self.error
        return self.verdict


class AuthenticatedClient:
    def __init__(self, client: TestClient):
        self._client = client

    def request(self, method: str, url: str, *, role: str = "editor", tenant: str = "tenant_a", **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and "Authorization" not in headers:
            headers["Authorization"] = f"Bearer {_issue_token(tenant_id=tenant, role=role)}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)


@pytest.fixture(autouse=True)
def service_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.delenv("JWT_ISSUER", raising=False)
    monkeypatch.delenv("JWT_AUDIENCE", raising=False)
    monkeypatch.delenv("JWT_REQUIRED_CLAIMS", raising=False)
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.setenv("VERDICT_LATENCY_SECONDS", "0")
    monkeypatch.setenv("VERDICT_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("SHUTDOWN_DRAIN_SECONDS", "1")
    monkeypatch.setenv(
        "AUTH_USERS_JSON",
        json.dumps(
            [
                {
                    "username": "alice",
                    "password_hash": hash_password("alice-pass", rounds=4),
                    "role": "editor",
                    "tenant_id": "tenant_a",
                    "subject": "u_alice",
                },
                {
                    "username": "victor",
                    "password_hash": hash_password("victor-pass", rounds=4),
                    "role": "viewer",
                    "tenant_id": "tenant_b",
                },
            ]
        ),
    )
    yield


@pytest.fixture
def verdict_source() -> ScriptedVerdictSource:
    return ScriptedVerdictSource()


@pytest.fixture
def app(verdict_source: ScriptedVerdictSource):
    return create_app(verdict_source=verdict_source)


@pytest.fixture
def client(app, verdict_source: ScriptedVerdictSource):
    with TestClient(app) as base:
        yield AuthenticatedClient(base)
        # Let held-open evaluations finish so shutdown drains quickly.
        verdict_source.gate.set()


@pytest.fixture
def issue_token():
    return _issue_token
