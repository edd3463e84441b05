from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(
    env: Mapping[str, str],
    name: str,
    *,
    default: float,
    minimum: float = 0.0,
    maximum: float | None = None,
) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


@dataclass(frozen=True)
class ServiceConfig:
    upload_max_bytes: int
    upload_allowed_type_prefix: str
    storage_root: str
    stream_chunk_bytes: int
    verdict_timeout_s: float
    verdict_latency_s: float
    verdict_accept_ratio: float
    shutdown_drain_s: float
    cors_allow_origins: list[str]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServiceConfig":
        env = os.environ if environ is None else environ
        cors_origins = str(env.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173"))
        return cls(
            upload_max_bytes=_env_int(env, "UPLOAD_MAX_BYTES", default=100 * 1024 * 1024, minimum=1),
            upload_allowed_type_prefix=str(env.get("UPLOAD_ALLOWED_TYPE_PREFIX", "video/")).strip() or "video/",
            storage_root=str(env.get("OBJECT_STORAGE_ROOT", "./uploads")).strip() or "./uploads",
            stream_chunk_bytes=_env_int(env, "STREAM_CHUNK_BYTES", default=64 * 1024, minimum=1),
            verdict_timeout_s=_env_float(env, "VERDICT_TIMEOUT_SECONDS", default=10.0, minimum=0.001),
            verdict_latency_s=_env_float(env, "VERDICT_LATENCY_SECONDS", default=4.0),
            verdict_accept_ratio=_env_float(env, "VERDICT_ACCEPT_RATIO", default=0.7, maximum=1.0),
            shutdown_drain_s=_env_float(env, "SHUTDOWN_DRAIN_SECONDS", default=5.0),
            cors_allow_origins=[x.strip() for x in cors_origins.split(",") if x.strip()],
        )
