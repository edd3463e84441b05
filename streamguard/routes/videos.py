from __future__ import annotations

from fastapi import APIRouter, Depends, File, Header, Request, UploadFile
from fastapi.responses import StreamingResponse

from streamguard.errors import PayloadRejected
from streamguard.routes._deps import require_roles, trace_id_from_request
from streamguard.schemas import success_envelope
from streamguard.security import READ_ROLES, WRITE_ROLES, Identity

router = APIRouter(prefix="/api/v1", tags=["videos"])

UPLOAD_ACCEPTED_MESSAGE = "Upload success! Processing safety check..."
UPLOAD_PATH = "/api/v1/videos"
# Room for multipart boundaries and part headers around the video bytes.
UPLOAD_FORM_OVERHEAD_BYTES = 16 * 1024


def reject_oversized_declared_length(content_length: str | None, max_bytes: int) -> None:
    """Refuse an upload from its Content-Length alone, before the form body is read."""
    declared = (content_length or "").strip()
    if not declared.isdigit():
        return
    if len(declared) > 19 or int(declared) > max_bytes + UPLOAD_FORM_OVERHEAD_BYTES:
        raise PayloadRejected.too_large(max_bytes)


@router.get("/videos")
def list_videos(request: Request, identity: Identity = Depends(require_roles(*READ_ROLES))):
    records = request.app.state.registry.list_for_tenant(tenant_id=identity.tenant_id)
    return success_envelope(
        {
            "items": [record.as_dict() for record in records],
            "total": len(records),
        },
        trace_id_from_request(request),
    )


@router.post("/videos")
async def upload_video(
    request: Request,
    video: UploadFile = File(...),
    identity: Identity = Depends(require_roles(*WRITE_ROLES)),
):
    cfg = request.app.state.service_cfg
    registry = request.app.state.registry
    content_type = (video.content_type or "").strip().lower()
    if not content_type.startswith(cfg.upload_allowed_type_prefix):
        await video.close()
        raise PayloadRejected.unsupported_type(video.content_type)
    if video.size is not None and video.size > cfg.upload_max_bytes:
        await video.close()
        raise PayloadRejected.too_large(cfg.upload_max_bytes)

    record_id = registry.reserve_id()
    try:
        blob = await request.app.state.storage.put_stream(
            tenant_id=identity.tenant_id,
            object_id=record_id,
            filename=video.filename or f"video_{record_id}.mp4",
            source=video,
            content_type=content_type,
            max_bytes=cfg.upload_max_bytes,
            chunk_size=cfg.stream_chunk_bytes,
        )
    except BaseException:
        registry.release_id(record_id)
        raise
    finally:
        await video.close()

    record = registry.register(blob, identity, record_id=record_id)
    request.app.state.pipeline.start(record)
    return success_envelope(
        {
            "video_id": record.id,
            "status": record.state.value,
            "message": UPLOAD_ACCEPTED_MESSAGE,
        },
        trace_id_from_request(request),
        message=UPLOAD_ACCEPTED_MESSAGE,
    )


@router.get("/videos/{video_id}")
def get_video(video_id: str, request: Request, identity: Identity = Depends(require_roles(*READ_ROLES))):
    record = request.app.state.registry.get_for_tenant(record_id=video_id, tenant_id=identity.tenant_id)
    return success_envelope(record.as_dict(), trace_id_from_request(request))


@router.get("/videos/{video_id}/stream")
def stream_video(
    video_id: str,
    request: Request,
    identity: Identity = Depends(require_roles(*READ_ROLES)),
    range_header: str | None = Header(default=None, alias="Range"),
) -> StreamingResponse:
    return request.app.state.streamer.serve(record_id=video_id, identity=identity, range_header=range_header)
