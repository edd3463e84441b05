from __future__ import annotations

import asyncio

import pytest

from streamguard.errors import ApiError
from streamguard.events import EventKind, LifecycleEvent, TenantEventBus
from streamguard.registry import UploadRecord, Verdict


def _event(tenant_id: str, video_id: str = "vid_1", kind: EventKind = EventKind.STARTED) -> LifecycleEvent:
    return LifecycleEvent(kind=kind, tenant_id=tenant_id, video_id=video_id)


def test_publish_reaches_only_subscribers_of_that_tenant():
    bus = TenantEventBus()
    a1 = bus.subscribe("conn_a1", "tenant_a")
    a2 = bus.subscribe("conn_a2", "tenant_a")
    b1 = bus.subscribe("conn_b1", "tenant_b")

    delivered = bus.publish("tenant_a", _event("tenant_a"))

    assert delivered == 2
    assert [e.video_id for e in a1.pending()] == ["vid_1"]
    assert [e.video_id for e in a2.pending()] == ["vid_1"]
    assert b1.pending() == []


def test_publish_with_foreign_event_is_rejected():
    bus = TenantEventBus()
    b1 = bus.subscribe("conn_b1", "tenant_b")
    with pytest.raises(ApiError) as exc_info:
        bus.publish("tenant_b", _event("tenant_a"))
    assert exc_info.value.code == "TENANT_SCOPE_VIOLATION"
    assert b1.pending() == []


def test_publish_without_subscribers_is_a_no_op():
    bus = TenantEventBus()
    assert bus.publish("tenant_a", _event("tenant_a")) == 0


def test_late_subscriber_gets_no_replay():
    bus = TenantEventBus()
    bus.publish("tenant_a", _event("tenant_a", "vid_early"))
    late = bus.subscribe("conn_late", "tenant_a")
    bus.publish("tenant_a", _event("tenant_a", "vid_late"))
    assert [e.video_id for e in late.pending()] == ["vid_late"]


def test_unsubscribe_is_idempotent():
    bus = TenantEventBus()
    sub = bus.subscribe("conn_a1", "tenant_a")
    assert bus.unsubscribe("conn_a1") is True
    assert bus.unsubscribe("conn_a1") is False
    assert bus.unsubscribe("conn_never") is False
    assert bus.subscriber_count("tenant_a") == 0

    bus.publish("tenant_a", _event("tenant_a"))
    assert sub.pending() == []


def test_subscribe_is_idempotent_for_same_tenant_and_refuses_another():
    bus = TenantEventBus()
    first = bus.subscribe("conn_a1", "tenant_a")
    assert bus.subscribe("conn_a1", "tenant_a") is first
    assert bus.subscriber_count("tenant_a") == 1

    with pytest.raises(ApiError) as exc_info:
        bus.subscribe("conn_a1", "tenant_b")
    assert exc_info.value.code == "TENANT_SCOPE_VIOLATION"
    assert bus.subscriber_count("tenant_b") == 0


def test_membership_changes_during_publish_do_not_break_delivery():
    bus = TenantEventBus()
    received: list[str] = []

    class _Leaver:
        def __init__(self, inner):
            self.inner = inner

        def deliver(self, event):
            received.append(self.inner.connection_id)
            bus.unsubscribe("conn_a2")
            bus.subscribe("conn_a3", "tenant_a")
            return self.inner.deliver(event)

    leaver = bus.subscribe("conn_a1", "tenant_a")
    bus.subscribe("conn_a2", "tenant_a")
    # Swap in a wrapper that mutates the partition mid-delivery.
    bus._partitions["tenant_a"]["conn_a1"] = _Leaver(leaver)

    delivered = bus.publish("tenant_a", _event("tenant_a"))

    assert received == ["conn_a1"]
    assert delivered == 2
    assert bus.subscriber_count("tenant_a") == 2


def test_full_queue_drops_event_for_slow_connection_only():
    bus = TenantEventBus(max_pending=1)
    slow = bus.subscribe("conn_slow", "tenant_a")
    fast = bus.subscribe("conn_fast", "tenant_a")

    bus.publish("tenant_a", _event("tenant_a", "vid_1"))
    fast.pending()
    delivered = bus.publish("tenant_a", _event("tenant_a", "vid_2"))

    assert delivered == 1
    assert slow.dropped == 1
    assert [e.video_id for e in slow.pending()] == ["vid_1"]


def test_subscription_delivers_to_awaiting_consumer():
    async def _scenario():
        bus = TenantEventBus()
        sub = bus.subscribe("conn_a1", "tenant_a")
        waiter = asyncio.create_task(sub.next_event())
        await asyncio.sleep(0)
        bus.publish("tenant_a", _event("tenant_a", "vid_async"))
        return await asyncio.wait_for(waiter, timeout=1)

    event = asyncio.run(_scenario())
    assert event.video_id == "vid_async"


def test_completed_event_message_carries_verdict_and_reason():
    record = UploadRecord(
        id="vid_9",
        display_name="clip.mp4",
        storage_uri="object://local/videos/k",
        content_type="video/mp4",
        size_bytes=3,
        tenant_id="tenant_a",
        uploaded_by="u_alice",
    )
    started = LifecycleEvent.started(record).as_message()
    assert started["type"] == "processing-started"
    assert "verdict" not in started

    finished = LifecycleEvent(
        kind=EventKind.COMPLETED,
        tenant_id="tenant_a",
        video_id="vid_9",
        verdict=Verdict.ACCEPTED,
        reason="No violations detected",
    ).as_message()
    assert finished["type"] == "processing-complete"
    assert finished["verdict"] == "accepted"
    assert finished["safe"] is True
    assert finished["reason"] == "No violations detected"
    assert finished["tenant_id"] == "tenant_a"
