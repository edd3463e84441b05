from __future__ import annotations

import logging
import uuid
from collections.abc import Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from streamguard.errors import ApiError
from streamguard.schemas import error_envelope
from streamguard.security import Identity, authorize, redact_sensitive

logger = logging.getLogger(__name__)


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def target_tenant_from_request(request: Request) -> str | None:
    return request.headers.get("x-tenant-id", "").strip() or None


def error_response(request: Request, exc: ApiError) -> JSONResponse:
    response = JSONResponse(
        status_code=exc.http_status,
        content=error_envelope(
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            trace_id=trace_id_from_request(request),
            details=exc.details,
        ),
    )
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


def log_security_block(request: Request, exc: ApiError) -> None:
    security_cfg = request.app.state.security_cfg
    headers_obj = dict(request.headers.items())
    headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
    logger.warning(
        "security_blocked code=%s detail=%s path=%s trace_id=%s headers=%s",
        exc.code,
        exc.message,
        request.url.path,
        trace_id_from_request(request),
        headers_payload,
    )


def require_roles(*allowed_roles: str) -> Callable[[Request], Identity]:
    """Dependency: authenticated identity that passes tenant and role checks."""

    def _dependency(request: Request) -> Identity:
        identity = getattr(request.state, "identity", None)
        if identity is None:
            identity = request.app.state.guard.authenticate(request.headers.get("Authorization"))
            request.state.identity = identity
        authorize(
            identity,
            target_tenant_id=target_tenant_from_request(request),
            allowed_roles=allowed_roles,
        )
        request.state.tenant_id = identity.tenant_id
        return identity

    return _dependency
