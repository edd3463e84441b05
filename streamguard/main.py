from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from streamguard.auth_provider import CredentialDirectory
from streamguard.config import ServiceConfig
from streamguard.errors import ApiError
from streamguard.events import TenantEventBus
from streamguard.object_storage import LocalObjectStorage
from streamguard.pipeline import ProcessingPipeline, SimulatedVerdictSource, VerdictSource
from streamguard.registry import UploadRegistry
from streamguard.routes import auth as auth_routes
from streamguard.routes import events as events_routes
from streamguard.routes import videos as videos_routes
from streamguard.routes._deps import (
    error_response,
    log_security_block,
    request_id_from_request,
    trace_id_from_request,
)
from streamguard.schemas import success_envelope
from streamguard.security import AccessGuard, JwtSecurityConfig
from streamguard.streaming import RangeStreamer

logger = logging.getLogger(__name__)

SECURITY_CODES = {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN", "AUTH_INVALID_CREDENTIALS", "TENANT_SCOPE_VIOLATION"}
AUTH_EXEMPT_PATHS = {"/api/v1/health", "/api/v1/auth/login"}


def create_app(
    *,
    service_cfg: ServiceConfig | None = None,
    security_cfg: JwtSecurityConfig | None = None,
    verdict_source: VerdictSource | None = None,
    directory: CredentialDirectory | None = None,
) -> FastAPI:
    service_cfg = service_cfg or ServiceConfig.from_env()
    security_cfg = security_cfg or JwtSecurityConfig.from_env()

    registry = UploadRegistry()
    bus = TenantEventBus()
    storage = LocalObjectStorage(root=service_cfg.storage_root)
    pipeline = ProcessingPipeline(
        registry=registry,
        bus=bus,
        verdict_source=verdict_source
        or SimulatedVerdictSource(
            accept_ratio=service_cfg.verdict_accept_ratio,
            latency_s=service_cfg.verdict_latency_s,
        ),
        timeout_s=service_cfg.verdict_timeout_s,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        drained = await pipeline.drain(timeout_s=service_cfg.shutdown_drain_s)
        if drained:
            logger.info("drained %d in-flight pipeline task(s) on shutdown", drained)

    app = FastAPI(title="StreamGuard Video Service", version="0.1.0", lifespan=lifespan)
    app.state.service_cfg = service_cfg
    app.state.security_cfg = security_cfg
    app.state.guard = AccessGuard(security_cfg)
    app.state.directory = directory or CredentialDirectory.from_env()
    app.state.registry = registry
    app.state.bus = bus
    app.state.storage = storage
    app.state.pipeline = pipeline
    app.state.streamer = RangeStreamer(registry=registry, storage=storage, chunk_size=service_cfg.stream_chunk_bytes)

    if service_cfg.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=service_cfg.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["Content-Range", "Accept-Ranges", "Content-Length", "x-trace-id", "x-request-id"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.identity = None
        try:
            path = request.url.path
            if path.startswith("/api/v1/") and path not in AUTH_EXEMPT_PATHS and request.method != "OPTIONS":
                request.state.identity = app.state.guard.authenticate(request.headers.get("Authorization"))
            if request.method == "POST" and path == videos_routes.UPLOAD_PATH:
                videos_routes.reject_oversized_declared_length(
                    request.headers.get("content-length"),
                    service_cfg.upload_max_bytes,
                )
            response = await call_next(request)
        except ApiError as exc:
            if exc.code in SECURITY_CODES:
                log_security_block(request, exc)
            response = error_response(request, exc)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in SECURITY_CODES:
            log_security_block(request, exc)
        return error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            ApiError(
                code="REQ_VALIDATION_FAILED",
                message="invalid payload",
                error_class="validation",
                retryable=False,
                http_status=400,
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                ApiError(
                    code="REQ_NOT_FOUND",
                    message="resource not found",
                    error_class="validation",
                    retryable=False,
                    http_status=404,
                ),
            )
        return error_response(
            request,
            ApiError(
                code="REQ_HTTP_ERROR",
                message=str(exc.detail),
                error_class="validation",
                retryable=False,
                http_status=exc.status_code,
            ),
        )

    @app.get("/")
    def root() -> dict[str, str]:
        return {"message": "StreamGuard video intake and playback service"}

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(auth_routes.router)
    app.include_router(videos_routes.router)
    app.include_router(events_routes.router)
    return app
