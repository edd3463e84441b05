from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass

from starlette.concurrency import run_in_threadpool
from starlette.responses import StreamingResponse

from streamguard.errors import NotFound, RangeNotSatisfiable
from streamguard.object_storage import LocalObjectStorage
from streamguard.registry import UploadRecord, UploadRegistry
from streamguard.security import Identity

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"bytes=(\d{1,19})-(\d{0,19})")


@dataclass(frozen=True)
class StreamRange:
    start: int
    end: int
    total_size: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total_size}"


def parse_range_header(header: str | None, total_size: int) -> StreamRange | None:
    """Parse a single ``bytes=<start>-[<end>]`` range against a blob of ``total_size`` bytes.

    Returns None when no range was requested. Suffix ranges, multiple ranges,
    and anything outside ``0 <= start <= end < total_size`` are unsatisfiable.
    """
    if header is None or not header.strip():
        return None
    m = _RANGE_RE.fullmatch(header.strip())
    if not m:
        raise RangeNotSatisfiable(total_size=total_size, message="malformed range header")
    start = int(m.group(1))
    end = int(m.group(2)) if m.group(2) else total_size - 1
    if not 0 <= start <= end < total_size:
        raise RangeNotSatisfiable(total_size=total_size)
    return StreamRange(start=start, end=end, total_size=total_size)


async def iter_blob_range(
    storage: LocalObjectStorage,
    *,
    storage_uri: str,
    start: int,
    end: int,
    chunk_size: int,
) -> AsyncIterator[bytes]:
    # Each call owns its file handle, so concurrent streams never share a cursor.
    handle = await run_in_threadpool(storage.open_object, storage_uri=storage_uri)
    try:
        await run_in_threadpool(handle.seek, start)
        remaining = end - start + 1
        while remaining > 0:
            chunk = await run_in_threadpool(handle.read, min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
    finally:
        handle.close()


@dataclass(frozen=True)
class StreamPlan:
    record: UploadRecord
    status_code: int
    start: int
    end: int
    headers: dict[str, str]


class RangeStreamer:
    def __init__(self, *, registry: UploadRegistry, storage: LocalObjectStorage, chunk_size: int = 64 * 1024) -> None:
        self.registry = registry
        self.storage = storage
        self.chunk_size = max(1, int(chunk_size))

    def prepare(self, *, record_id: str, identity: Identity, range_header: str | None) -> StreamPlan:
        record = self.registry.get_for_tenant(record_id=record_id, tenant_id=identity.tenant_id)
        try:
            total_size = self.storage.object_size(storage_uri=record.storage_uri)
        except FileNotFoundError:
            logger.warning("blob missing for id=%s uri=%s", record.id, record.storage_uri)
            raise NotFound() from None
        requested = parse_range_header(range_header, total_size)
        if requested is None:
            return StreamPlan(
                record=record,
                status_code=200,
                start=0,
                end=total_size - 1,
                headers={
                    "Content-Length": str(total_size),
                    "Accept-Ranges": "bytes",
                },
            )
        return StreamPlan(
            record=record,
            status_code=206,
            start=requested.start,
            end=requested.end,
            headers={
                "Content-Range": requested.content_range(),
                "Content-Length": str(requested.length),
                "Accept-Ranges": "bytes",
            },
        )

    def serve(self, *, record_id: str, identity: Identity, range_header: str | None) -> StreamingResponse:
        plan = self.prepare(record_id=record_id, identity=identity, range_header=range_header)
        body = iter_blob_range(
            self.storage,
            storage_uri=plan.record.storage_uri,
            start=plan.start,
            end=plan.end,
            chunk_size=self.chunk_size,
        )
        return StreamingResponse(
            body,
            status_code=plan.status_code,
            headers=plan.headers,
            media_type=plan.record.content_type,
        )
