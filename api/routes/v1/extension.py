"""
api/routes/v1/extension.py -- Endpoints for the browser extension.

Routes:
  GET /api/v1/extension/session  -- identity + session summary
  GET /api/v1/extension/config   -- session timers for the extension's keep-alive

Both gates apply, in this order:
  1. require_extension_key (router dependency) -- 403 without the shared key
  2. get_current_identity                       -- 401 without a live session

Router-level dependencies run before the endpoint's own dependencies, so a
request missing the extension key is rejected before its token is looked at.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import ExtensionConfigResponse, ExtensionSessionResponse, UserResponse
from auth.dependencies import get_current_identity
from auth.errors import SessionTerminated, UserNotFound
from auth.extension import require_extension_key
from auth.models import AuthContext

router = APIRouter(prefix="/extension", dependencies=[Depends(require_extension_key)])


@router.get("/session", response_model=ExtensionSessionResponse)
def extension_session(request: Request, ctx: AuthContext = Depends(get_current_identity)) -> ExtensionSessionResponse:
    user = request.app.state.users.get_by_id(ctx.user_id)
    if user is None:
        raise UserNotFound()
    session = request.app.state.sessions.get(ctx.session_id)
    if session is None:
        # Terminated between the gate check and this read.
        raise SessionTerminated()
    return ExtensionSessionResponse(
        user=UserResponse.from_user(user),
        session_id=session.id,
        expires_at=session.expires_at,
        last_active=session.last_active,
    )


@router.get("/config", response_model=ExtensionConfigResponse)
def extension_config(request: Request, ctx: AuthContext = Depends(get_current_identity)) -> ExtensionConfigResponse:
    policy = request.app.state.policy.get_policy()
    return ExtensionConfigResponse(
        session_inactivity_minutes=policy.session_inactivity_minutes,
        session_lifetime_minutes=policy.session_lifetime_minutes,
    )
