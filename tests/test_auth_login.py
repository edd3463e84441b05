from __future__ import annotations

import json

import pytest

from streamguard.auth_provider import CredentialDirectory, hash_password
from streamguard.errors import ApiError


def test_login_issues_token_usable_on_api(client):
    resp = client.post("/api/v1/auth/login", json={"username": "alice", "password": "alice-pass"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["token_type"] == "bearer"
    assert data["user"] == {"subject": "u_alice", "role": "editor", "tenant_id": "tenant_a"}
    assert data["expires_at"]

    listed = client.get("/api/v1/videos", headers={"Authorization": f"Bearer {data['token']}"})
    assert listed.status_code == 200


def test_login_token_carries_directory_role(client):
    resp = client.post("/api/v1/auth/login", json={"username": "victor", "password": "victor-pass"})
    token = resp.json()["data"]["token"]
    upload = client.post(
        "/api/v1/videos",
        files={"video": ("clip.mp4", b"1234", "video/mp4")},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert upload.status_code == 403
    assert upload.json()["error"]["code"] == "AUTH_FORBIDDEN"


@pytest.mark.parametrize(
    ("username", "password"),
    [("alice", "wrong"), ("nobody", "alice-pass")],
)
def test_login_rejects_bad_credentials(client, username, password):
    resp = client.post("/api/v1/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_INVALID_CREDENTIALS"


def test_login_requires_both_fields(client):
    resp = client.post("/api/v1/auth/login", json={"username": "alice"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


def test_directory_seeds_development_user_without_config():
    directory = CredentialDirectory.from_env({})
    identity = directory.verify(username="admin", password="admin123")
    assert identity.role == "admin"
    assert identity.tenant_id == "tenant1"
    assert identity.subject == "1"


def test_directory_rejects_unknown_roles():
    raw = json.dumps(
        [{"username": "eve", "password_hash": hash_password("x", rounds=4), "role": "root", "tenant_id": "t"}]
    )
    with pytest.raises(RuntimeError):
        CredentialDirectory.from_env({"AUTH_USERS_JSON": raw})


def test_directory_verify_failure_is_api_error():
    directory = CredentialDirectory.from_env({})
    with pytest.raises(ApiError) as exc_info:
        directory.verify(username="admin", password="nope")
    assert exc_info.value.http_status == 401
