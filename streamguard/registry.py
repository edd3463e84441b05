from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from streamguard.errors import InvalidTransition, NotFound
from streamguard.object_storage import BlobDescriptor
from streamguard.security import Identity

logger = logging.getLogger(__name__)


class RecordState(StrEnum):
    PROCESSING = "processing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class Verdict(StrEnum):
    UNKNOWN = "unknown"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset({RecordState.ACCEPTED, RecordState.REJECTED})


@dataclass(frozen=True)
class UploadRecord:
    id: str
    display_name: str
    storage_uri: str
    content_type: str
    size_bytes: int
    tenant_id: str
    uploaded_by: str
    state: RecordState = RecordState.PROCESSING
    verdict: Verdict = Verdict.UNKNOWN
    reason: str | None = None
    progress: int = 0
    created_at: str = ""
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.display_name,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "tenant_id": self.tenant_id,
            "uploaded_by": self.uploaded_by,
            "status": self.state.value,
            "verdict": self.verdict.value,
            "safe": None if self.verdict is Verdict.UNKNOWN else self.verdict is Verdict.ACCEPTED,
            "reason": self.reason,
            "progress": self.progress,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


class UploadRegistry:
    """Process-lifetime catalog of upload records; nothing here survives a restart.

    Records are immutable values. Every mutation builds a new record and swaps
    it in by id under the lock, so readers see either the old or the new
    record and never a half-applied change.
    """

    ALLOWED_TRANSITIONS: dict[RecordState, set[RecordState]] = {
        RecordState.PROCESSING: {RecordState.ACCEPTED, RecordState.REJECTED},
        RecordState.ACCEPTED: set(),
        RecordState.REJECTED: set(),
    }

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, UploadRecord] = {}
        self._reserved: set[str] = set()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def _new_record_id() -> str:
        return f"vid_{uuid.uuid4().hex}"

    def reserve_id(self) -> str:
        """Allocate an id ahead of registration so the blob can be stored under it."""
        with self._lock:
            while True:
                record_id = self._new_record_id()
                if record_id not in self._records and record_id not in self._reserved:
                    self._reserved.add(record_id)
                    return record_id

    def release_id(self, record_id: str) -> None:
        with self._lock:
            self._reserved.discard(record_id)

    def register(
        self,
        blob: BlobDescriptor,
        identity: Identity,
        *,
        record_id: str | None = None,
    ) -> UploadRecord:
        with self._lock:
            if record_id is None:
                record_id = self.reserve_id()
            if record_id not in self._reserved:
                raise ValueError(f"record id was not reserved: {record_id}")
            self._reserved.discard(record_id)
            record = UploadRecord(
                id=record_id,
                display_name=blob.filename or f"video_{record_id}.mp4",
                storage_uri=blob.storage_uri,
                content_type=blob.content_type,
                size_bytes=blob.size_bytes,
                tenant_id=identity.tenant_id,
                uploaded_by=identity.subject,
                created_at=self._utcnow_iso(),
            )
            self._records[record_id] = record
        logger.info("upload registered id=%s tenant=%s name=%s", record.id, record.tenant_id, record.display_name)
        return record

    def get_for_tenant(self, *, record_id: str, tenant_id: str) -> UploadRecord:
        with self._lock:
            record = self._records.get(record_id)
        # Cross-tenant records are reported exactly like missing ones.
        if record is None or record.tenant_id != tenant_id:
            raise NotFound()
        return record

    def list_for_tenant(self, *, tenant_id: str) -> list[UploadRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.tenant_id == tenant_id]

    def update(self, record_id: str, mutation: Callable[[UploadRecord], UploadRecord]) -> UploadRecord:
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise NotFound()
            updated = mutation(current)
            self._check_mutation(current, updated)
            self._records[record_id] = updated
            return updated

    def complete(self, record_id: str, *, verdict: Verdict, reason: str) -> UploadRecord:
        if verdict is Verdict.UNKNOWN:
            raise InvalidTransition("terminal verdict must be accepted or rejected")
        state = RecordState.ACCEPTED if verdict is Verdict.ACCEPTED else RecordState.REJECTED
        return self.update(
            record_id,
            lambda current: replace(
                current,
                state=state,
                verdict=verdict,
                reason=reason,
                progress=100,
                completed_at=self._utcnow_iso(),
            ),
        )

    def _check_mutation(self, current: UploadRecord, updated: UploadRecord) -> None:
        if updated.id != current.id or updated.tenant_id != current.tenant_id:
            raise InvalidTransition("record id and tenant are immutable")
        if updated.state != current.state:
            allowed = self.ALLOWED_TRANSITIONS.get(current.state, set())
            if updated.state not in allowed:
                raise InvalidTransition(f"invalid transition: {current.state} -> {updated.state}")
        elif current.is_terminal and updated != current:
            raise InvalidTransition("terminal records are immutable")
        if updated.progress < current.progress or not 0 <= updated.progress <= 100:
            raise InvalidTransition(f"progress cannot move from {current.progress} to {updated.progress}")
        if updated.is_terminal:
            if updated.verdict.value != updated.state.value or updated.progress != 100:
                raise InvalidTransition("terminal record needs a matching verdict and full progress")
        elif updated.verdict is not Verdict.UNKNOWN:
            raise InvalidTransition("verdict is only set on terminal transition")
