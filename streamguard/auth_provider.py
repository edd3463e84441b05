from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

import bcrypt

from streamguard.errors import ApiError
from streamguard.security import ROLES, Identity

logger = logging.getLogger(__name__)

_DEV_USERNAME = "admin"
_DEV_PASSWORD = "admin123"


def hash_password(password: str, *, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("ascii")


@dataclass(frozen=True)
class DirectoryUser:
    username: str
    password_hash: str
    role: str
    tenant_id: str
    subject: str


class CredentialDirectory:
    """Username/password check that backs credential issuance."""

    def __init__(self, users: list[DirectoryUser]) -> None:
        self._users = {u.username: u for u in users}
        # Unknown usernames still pay for a hash check.
        self._dummy_hash = hash_password("not-a-real-password", rounds=4).encode("ascii")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "CredentialDirectory":
        env = os.environ if environ is None else environ
        raw = str(env.get("AUTH_USERS_JSON", "")).strip()
        if not raw:
            logger.warning("AUTH_USERS_JSON not set, seeding development user %r", _DEV_USERNAME)
            return cls(
                [
                    DirectoryUser(
                        username=_DEV_USERNAME,
                        password_hash=hash_password(_DEV_PASSWORD, rounds=10),
                        role="admin",
                        tenant_id="tenant1",
                        subject="1",
                    )
                ]
            )
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RuntimeError("AUTH_USERS_JSON is not valid JSON") from exc
        if not isinstance(entries, list):
            raise RuntimeError("AUTH_USERS_JSON must be a JSON list")
        users: list[DirectoryUser] = []
        for entry in entries:
            role = str(entry.get("role", "")).strip().lower()
            if role not in ROLES:
                raise RuntimeError(f"unknown role for user {entry.get('username')!r}: {role!r}")
            username = str(entry["username"])
            users.append(
                DirectoryUser(
                    username=username,
                    password_hash=str(entry["password_hash"]),
                    role=role,
                    tenant_id=str(entry["tenant_id"]),
                    subject=str(entry.get("subject") or username),
                )
            )
        return cls(users)

    def verify(self, *, username: str, password: str) -> Identity:
        user = self._users.get(username)
        stored = user.password_hash.encode("ascii") if user else self._dummy_hash
        matched = bcrypt.checkpw(password.encode("utf-8"), stored)
        if user is None or not matched:
            raise ApiError(
                code="AUTH_INVALID_CREDENTIALS",
                message="invalid username or password",
                error_class="security_sensitive",
                retryable=False,
                http_status=401,
            )
        return Identity(subject=user.subject, role=user.role, tenant_id=user.tenant_id)
