from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Protocol

from starlette.concurrency import run_in_threadpool

from streamguard.errors import PayloadRejected


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


class AsyncReadable(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


@dataclass(frozen=True)
class BlobDescriptor:
    storage_uri: str
    size_bytes: int
    content_type: str
    filename: str


class LocalObjectStorage:
    """Blob sink on the local filesystem, one file per upload under a tenant directory."""

    backend_name = "local"

    def __init__(self, *, root: str | Path, bucket: str = "videos") -> None:
        self._bucket = bucket
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    async def put_stream(
        self,
        *,
        tenant_id: str,
        object_id: str,
        filename: str,
        source: AsyncReadable,
        content_type: str,
        max_bytes: int,
        chunk_size: int = 1024 * 1024,
    ) -> BlobDescriptor:
        key = self._build_key(tenant_id=tenant_id, object_id=object_id)
        path = self._path_for_key(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        handle = await run_in_threadpool(path.open, "wb")
        try:
            while True:
                chunk = await source.read(chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise PayloadRejected.too_large(max_bytes)
                await run_in_threadpool(handle.write, chunk)
        except BaseException:
            handle.close()
            path.unlink(missing_ok=True)
            raise
        handle.close()
        return BlobDescriptor(
            storage_uri=self._uri_for_key(key),
            size_bytes=written,
            content_type=content_type,
            filename=filename,
        )

    def open_object(self, *, storage_uri: str) -> BinaryIO:
        path = self._path_for_uri(storage_uri)
        if not path.exists():
            raise FileNotFoundError(storage_uri)
        return path.open("rb")

    def object_size(self, *, storage_uri: str) -> int:
        path = self._path_for_uri(storage_uri)
        if not path.exists():
            raise FileNotFoundError(storage_uri)
        return path.stat().st_size

    def _build_key(self, *, tenant_id: str, object_id: str) -> str:
        return f"tenants/{_clean_segment(tenant_id)}/videos/{_clean_segment(object_id)}"

    def _uri_for_key(self, key: str) -> str:
        return f"object://{self.backend_name}/{self._bucket}/{key}"

    def _path_for_key(self, key: str) -> Path:
        return self._root / self._bucket / key

    def _path_for_uri(self, storage_uri: str) -> Path:
        parsed = _parse_storage_uri(storage_uri)
        if parsed["backend"] != self.backend_name:
            raise ValueError("storage backend mismatch")
        return self._root / parsed["bucket"] / parsed["key"]


def _parse_storage_uri(uri: str) -> dict[str, str]:
    if not uri.startswith("object://"):
        raise ValueError("invalid storage uri")
    raw = uri[len("object://") :]
    parts = raw.split("/", 2)
    if len(parts) != 3:
        raise ValueError("invalid storage uri")
    return {"backend": parts[0], "bucket": parts[1], "key": parts[2]}
