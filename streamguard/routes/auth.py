from __future__ import annotations

from fastapi import APIRouter, Request

from streamguard.routes._deps import trace_id_from_request
from streamguard.schemas import LoginRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["auth"])


@router.post("/auth/login")
def login(payload: LoginRequest, request: Request):
    identity = request.app.state.directory.verify(username=payload.username, password=payload.password)
    token, expires_at = request.app.state.guard.issue(
        subject=identity.subject,
        role=identity.role,
        tenant_id=identity.tenant_id,
    )
    return success_envelope(
        {
            "token": token,
            "token_type": "bearer",
            "expires_at": expires_at.isoformat(),
            "user": identity.as_dict(),
        },
        trace_id_from_request(request),
    )
