from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details
        self.headers = headers


class Unauthenticated(ApiError):
    def __init__(self, message: str = "authentication required") -> None:
        super().__init__(
            code="AUTH_UNAUTHORIZED",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )


class Forbidden(ApiError):
    def __init__(self, message: str = "insufficient permissions") -> None:
        super().__init__(
            code="AUTH_FORBIDDEN",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


class TenantMismatch(ApiError):
    def __init__(self, message: str = "tenant mismatch") -> None:
        super().__init__(
            code="TENANT_SCOPE_VIOLATION",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


class NotFound(ApiError):
    def __init__(self, message: str = "video not found") -> None:
        super().__init__(
            code="VIDEO_NOT_FOUND",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class RangeNotSatisfiable(ApiError):
    def __init__(self, *, total_size: int, message: str = "requested range not satisfiable") -> None:
        super().__init__(
            code="RANGE_NOT_SATISFIABLE",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=416,
            details={"total_size": total_size},
            headers={"Content-Range": f"bytes */{total_size}"},
        )
        self.total_size = total_size


class PayloadRejected(ApiError):
    def __init__(self, *, code: str, message: str, http_status: int) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=http_status,
        )

    @classmethod
    def unsupported_type(cls, content_type: str | None) -> "PayloadRejected":
        return cls(
            code="UPLOAD_UNSUPPORTED_TYPE",
            message=f"only video uploads are accepted, got {content_type or 'unknown'}",
            http_status=400,
        )

    @classmethod
    def too_large(cls, limit_bytes: int) -> "PayloadRejected":
        return cls(
            code="UPLOAD_TOO_LARGE",
            message=f"upload exceeds {limit_bytes} bytes",
            http_status=413,
        )


class InvalidTransition(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="WF_STATE_TRANSITION_INVALID",
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )


class PipelineFailure(ApiError):
    """Verdict evaluation could not complete; never rendered, degrades to a rejected record."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="PIPELINE_EVALUATION_FAILED",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=500,
        )
