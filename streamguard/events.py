from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from streamguard.errors import TenantMismatch
from streamguard.registry import UploadRecord, Verdict

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    STARTED = "started"
    COMPLETED = "completed"


_WIRE_TYPES = {
    EventKind.STARTED: "processing-started",
    EventKind.COMPLETED: "processing-complete",
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    tenant_id: str
    video_id: str
    verdict: Verdict | None = None
    reason: str | None = None
    occurred_at: str = field(default_factory=_utcnow_iso)

    @classmethod
    def started(cls, record: UploadRecord) -> "LifecycleEvent":
        return cls(kind=EventKind.STARTED, tenant_id=record.tenant_id, video_id=record.id)

    @classmethod
    def completed(cls, record: UploadRecord) -> "LifecycleEvent":
        return cls(
            kind=EventKind.COMPLETED,
            tenant_id=record.tenant_id,
            video_id=record.id,
            verdict=record.verdict,
            reason=record.reason,
        )

    def as_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "type": _WIRE_TYPES[self.kind],
            "kind": self.kind.value,
            "video_id": self.video_id,
            "tenant_id": self.tenant_id,
            "occurred_at": self.occurred_at,
        }
        if self.kind is EventKind.COMPLETED:
            message["verdict"] = self.verdict.value if self.verdict else Verdict.UNKNOWN.value
            message["safe"] = self.verdict is Verdict.ACCEPTED
            message["reason"] = self.reason
        return message


class Subscription:
    """One connection's membership in a tenant partition.

    Events are buffered in a bounded queue that the connection drains at its
    own pace; a full queue drops the event for this connection only.
    """

    def __init__(self, *, connection_id: str, tenant_id: str, max_pending: int) -> None:
        self.connection_id = connection_id
        self.tenant_id = tenant_id
        self.dropped = 0
        self._queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue(maxsize=max_pending)

    def deliver(self, event: LifecycleEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def next_event(self) -> LifecycleEvent:
        return await self._queue.get()

    def pending(self) -> list[LifecycleEvent]:
        items: list[LifecycleEvent] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items


class TenantEventBus:
    """Publish/subscribe partitioned by tenant id.

    Delivery is best effort and at most once per connection; there is no replay
    for late subscribers. Publish snapshots the partition before notifying, so
    connections may join or leave while a publish is in progress.
    """

    def __init__(self, *, max_pending: int = 100) -> None:
        self._lock = threading.Lock()
        self._partitions: dict[str, dict[str, Subscription]] = {}
        self._connections: dict[str, Subscription] = {}
        self.max_pending = max(1, int(max_pending))

    def subscribe(self, connection_id: str, tenant_id: str) -> Subscription:
        with self._lock:
            existing = self._connections.get(connection_id)
            if existing is not None:
                if existing.tenant_id != tenant_id:
                    raise TenantMismatch("connection already joined another tenant")
                return existing
            subscription = Subscription(
                connection_id=connection_id,
                tenant_id=tenant_id,
                max_pending=self.max_pending,
            )
            self._connections[connection_id] = subscription
            self._partitions.setdefault(tenant_id, {})[connection_id] = subscription
        logger.info("subscriber joined tenant=%s connection=%s", tenant_id, connection_id)
        return subscription

    def unsubscribe(self, connection_id: str) -> bool:
        with self._lock:
            subscription = self._connections.pop(connection_id, None)
            if subscription is None:
                return False
            partition = self._partitions.get(subscription.tenant_id, {})
            partition.pop(connection_id, None)
            if not partition:
                self._partitions.pop(subscription.tenant_id, None)
        logger.info("subscriber left tenant=%s connection=%s", subscription.tenant_id, connection_id)
        return True

    def publish(self, tenant_id: str, event: LifecycleEvent) -> int:
        if event.tenant_id != tenant_id:
            raise TenantMismatch("event does not belong to the target tenant")
        with self._lock:
            targets = list(self._partitions.get(tenant_id, {}).values())
        delivered = 0
        for subscription in targets:
            if subscription.deliver(event):
                delivered += 1
            else:
                logger.warning(
                    "dropped %s event for connection=%s tenant=%s (queue full)",
                    event.kind.value,
                    subscription.connection_id,
                    tenant_id,
                )
        return delivered

    def subscriber_count(self, tenant_id: str) -> int:
        with self._lock:
            return len(self._partitions.get(tenant_id, {}))
