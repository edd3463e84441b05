from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from streamguard.errors import ApiError
from streamguard.events import Subscription
from streamguard.schemas import JoinTenantMessage
from streamguard.security import READ_ROLES, authorize

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["events"])

CLOSE_UNAUTHENTICATED = 4001
CLOSE_TENANT_MISMATCH = 4003


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        event = await subscription.next_event()
        try:
            await websocket.send_json(event.as_message())
        except (WebSocketDisconnect, RuntimeError):
            return


def _token_from_websocket(websocket: WebSocket, token: str | None) -> str | None:
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer ") :].strip()
    return None


@router.websocket("/events")
async def tenant_events(websocket: WebSocket, token: str | None = Query(default=None)):
    guard = websocket.app.state.guard
    bus = websocket.app.state.bus
    try:
        identity = guard.authenticate_token(_token_from_websocket(websocket, token))
    except ApiError as exc:
        logger.warning("websocket rejected code=%s detail=%s", exc.code, exc.message)
        await websocket.close(code=CLOSE_UNAUTHENTICATED, reason=exc.code)
        return

    await websocket.accept()
    connection_id = f"conn_{uuid.uuid4().hex[:12]}"
    logger.info("websocket connected connection=%s subject=%s", connection_id, identity.subject)
    sender: asyncio.Task[None] | None = None
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = JoinTenantMessage.model_validate_json(raw)
            except ValidationError:
                await websocket.send_json(
                    {"type": "error", "code": "REQ_VALIDATION_FAILED", "message": "expected a join-tenant action"}
                )
                continue
            try:
                authorize(identity, target_tenant_id=message.tenant_id, allowed_roles=READ_ROLES)
                subscription = bus.subscribe(connection_id, message.tenant_id)
            except ApiError as exc:
                logger.warning("websocket join blocked connection=%s code=%s", connection_id, exc.code)
                await websocket.send_json({"type": "error", "code": exc.code, "message": exc.message})
                await websocket.close(code=CLOSE_TENANT_MISMATCH, reason=exc.code)
                return
            await websocket.send_json({"type": "joined", "tenant_id": subscription.tenant_id})
            if sender is None:
                sender = asyncio.create_task(_forward_events(websocket, subscription))
    except WebSocketDisconnect:
        pass
    finally:
        bus.unsubscribe(connection_id)
        if sender is not None:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender
        logger.info("websocket disconnected connection=%s", connection_id)
