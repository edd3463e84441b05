from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from streamguard.errors import Forbidden, TenantMismatch, Unauthenticated

ROLES = ("viewer", "editor", "admin")
READ_ROLES = frozenset(ROLES)
WRITE_ROLES = frozenset({"editor", "admin"})


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str, *, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        if value.strip().isdigit():
            return int(value.strip())
    return None


def redact_sensitive(value: object) -> object:
    sensitive_keys = {"authorization", "token", "secret", "password", "api_key", "apikey", "access_token"}
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if key_lower in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("sk-", "bearer ", "token")):
            return "***REDACTED***"
    return value


@dataclass(frozen=True)
class Identity:
    subject: str
    role: str
    tenant_id: str

    def as_dict(self) -> dict[str, str]:
        return {"subject": self.subject, "role": self.role, "tenant_id": self.tenant_id}


@dataclass
class JwtSecurityConfig:
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    tenant_claim: str
    ttl_seconds: int
    log_redaction_enabled: bool

    @classmethod
    def from_env(cls) -> "JwtSecurityConfig":
        return cls(
            issuer=os.environ.get("JWT_ISSUER", "").strip(),
            audience=os.environ.get("JWT_AUDIENCE", "").strip(),
            shared_secret=os.environ.get("JWT_SHARED_SECRET", "").strip(),
            required_claims=_split_csv(os.environ.get("JWT_REQUIRED_CLAIMS", "tenant_id,sub,role,exp")),
            tenant_claim=os.environ.get("JWT_TENANT_CLAIM", "tenant_id").strip() or "tenant_id",
            ttl_seconds=_env_int("JWT_TTL_SECONDS", default=86400, minimum=1),
            log_redaction_enabled=_env_bool("SECURITY_LOG_REDACTION_ENABLED", True),
        )


def _sign(signing_input: str, secret: str) -> str:
    return _b64url_encode(
        hmac.new(
            secret.encode("utf-8"),
            signing_input.encode("ascii"),
            hashlib.sha256,
        ).digest()
    )


def _parse_token_parts(token: str) -> tuple[dict[str, Any], dict[str, Any], str, str]:
    parts = token.split(".")
    if len(parts) != 3:
        raise Unauthenticated("invalid token format")
    header_raw, payload_raw, signature_raw = parts
    try:
        header_obj = json.loads(_b64url_decode(header_raw))
        payload_obj = json.loads(_b64url_decode(payload_raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise Unauthenticated("invalid token payload") from None
    if not isinstance(header_obj, dict) or not isinstance(payload_obj, dict):
        raise Unauthenticated("invalid token payload")
    return header_obj, payload_obj, f"{header_raw}.{payload_raw}", signature_raw


def issue_token(
    *,
    subject: str,
    role: str,
    tenant_id: str,
    cfg: JwtSecurityConfig,
    now: datetime | None = None,
) -> tuple[str, datetime]:
    """Mint an HS256 credential for an already-authenticated principal.

    Returns the compact token and its expiry instant.
    """
    if not cfg.shared_secret:
        raise RuntimeError("jwt shared secret not configured")
    issued_at = now or datetime.now(UTC)
    expires_at = issued_at + timedelta(seconds=cfg.ttl_seconds)
    claims: dict[str, Any] = {
        "sub": subject,
        "role": role,
        cfg.tenant_claim: tenant_id,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if cfg.issuer:
        claims["iss"] = cfg.issuer
    if cfg.audience:
        claims["aud"] = cfg.audience
    header_raw = _b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode("utf-8"))
    payload_raw = _b64url_encode(json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header_raw}.{payload_raw}"
    return f"{signing_input}.{_sign(signing_input, cfg.shared_secret)}", expires_at


def validate_token(*, token: str, cfg: JwtSecurityConfig) -> Identity:
    header_obj, payload_obj, signing_input, signature_raw = _parse_token_parts(token)
    alg = str(header_obj.get("alg", "")).upper()
    if alg != "HS256":
        raise Unauthenticated("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise Unauthenticated("jwt shared secret not configured")
    if not hmac.compare_digest(_sign(signing_input, cfg.shared_secret), signature_raw):
        raise Unauthenticated("invalid token signature")

    now_ts = int(datetime.now(UTC).timestamp())
    exp = _as_int(payload_obj.get("exp"))
    if exp is None or exp <= now_ts:
        raise Unauthenticated("token expired")
    nbf = _as_int(payload_obj.get("nbf"))
    if nbf is not None and nbf > now_ts:
        raise Unauthenticated("token not yet valid")

    if cfg.issuer and str(payload_obj.get("iss", "")) != cfg.issuer:
        raise Unauthenticated("jwt issuer mismatch")
    if cfg.audience:
        aud = payload_obj.get("aud")
        if isinstance(aud, list):
            aud_ok = cfg.audience in {str(x) for x in aud}
        else:
            aud_ok = str(aud or "") == cfg.audience
        if not aud_ok:
            raise Unauthenticated("jwt audience mismatch")

    for claim in cfg.required_claims:
        if claim not in payload_obj:
            raise Unauthenticated(f"missing required claim: {claim}")

    tenant_id = str(payload_obj.get(cfg.tenant_claim) or "").strip()
    subject = str(payload_obj.get("sub") or "").strip()
    role = str(payload_obj.get("role") or "").strip().lower()
    if not tenant_id or not subject:
        raise Unauthenticated("missing tenant or subject claim")
    if role not in ROLES:
        raise Unauthenticated("unknown role claim")
    return Identity(subject=subject, role=role, tenant_id=tenant_id)


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> Identity:
    if not authorization:
        raise Unauthenticated("missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise Unauthenticated("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise Unauthenticated("empty bearer token")
    return validate_token(token=token, cfg=cfg)


def authorize(
    identity: Identity,
    *,
    target_tenant_id: str | None,
    allowed_roles: Iterable[str],
) -> Identity:
    if target_tenant_id is not None and target_tenant_id != identity.tenant_id:
        raise TenantMismatch()
    if identity.role not in set(allowed_roles):
        raise Forbidden()
    return identity


class AccessGuard:
    """Authenticates a bearer credential, then enforces tenant and role constraints.

    Evaluation is pure: nothing is recorded and the same inputs always give the
    same outcome until the credential expires.
    """

    def __init__(self, cfg: JwtSecurityConfig) -> None:
        self.cfg = cfg

    def authenticate(self, authorization: str | None) -> Identity:
        return parse_and_validate_bearer_token(authorization=authorization, cfg=self.cfg)

    def authenticate_token(self, token: str | None) -> Identity:
        if not token:
            raise Unauthenticated("missing token")
        return validate_token(token=token, cfg=self.cfg)

    def evaluate(
        self,
        *,
        authorization: str | None,
        target_tenant_id: str | None,
        allowed_roles: Iterable[str],
    ) -> Identity:
        identity = self.authenticate(authorization)
        return authorize(identity, target_tenant_id=target_tenant_id, allowed_roles=allowed_roles)

    def issue(self, *, subject: str, role: str, tenant_id: str) -> tuple[str, datetime]:
        return issue_token(subject=subject, role=role, tenant_id=tenant_id, cfg=self.cfg)
