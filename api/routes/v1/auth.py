"""
api/routes/v1/auth.py -- Login, logout and self-service session endpoints.

Routes:
  POST /api/v1/auth/login            -- password login; returns a bearer token bound to a new session
  POST /api/v1/auth/logout           -- end one of the caller's sessions, or all of them
  GET  /api/v1/auth/me               -- current identity (requires auth)
  GET  /api/v1/auth/sessions         -- caller's live sessions, current one marked (requires auth)
  POST /api/v1/auth/change-password  -- replace the caller's password (requires auth)

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [C1] AuthService.login() goes through verify_credentials() for timing
       equalization -- never inline the user lookup and password check here.
  [M5] Cache-Control: no-store on login responses.
  Locked accounts get 423 with failed_attempts / max_attempts; unknown email
  and wrong password share one 401 "invalid_credentials" response.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    MessageResponse,
    SessionResponse,
    UserResponse,
)
from auth.dependencies import get_current_identity, get_origin
from auth.errors import AuthError, UserNotFound
from auth.models import AuthContext
from auth.service import AuthService
from auth.users import UserStore

# Auth policy:
# - POST /api/v1/auth/login:            public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:           requires auth (get_current_identity)
# - GET  /api/v1/auth/me:               requires auth (get_current_identity)
# - GET  /api/v1/auth/sessions:         requires auth (get_current_identity)
# - POST /api/v1/auth/change-password:  requires auth (get_current_identity)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and open a new session.

    Every outcome (success, bad credentials, inactive account, lockout) is
    recorded as a login attempt by the service before this handler returns.
    """
    service: AuthService = request.app.state.auth_service
    try:
        result = service.login(body.email, body.password, get_origin(request))
    except AuthError as exc:
        # Rendered here rather than by the app-level handler so the
        # no-store header is also set on failures [M5].
        resp = JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": exc.code, "message": exc.message, "detail": None, **exc.extra}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=UserResponse.from_user(result.user),
            token=result.token,
            session_id=result.session_id,
            expires_at=result.expires_at,
        ).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    ctx: AuthContext = Depends(get_current_identity),
) -> LogoutResponse:
    """End the given session of the caller, or every session when none is named."""
    service: AuthService = request.app.state.auth_service
    count = service.logout(ctx.user_id, body.session_id if body else None, get_origin(request))
    return LogoutResponse(message="Logged out successfully.", sessions_ended=count)


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, ctx: AuthContext = Depends(get_current_identity)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    users: UserStore = request.app.state.users
    user = users.get_by_id(ctx.user_id)
    if user is None:
        raise UserNotFound()
    return MeResponse(user=UserResponse.from_user(user), session_id=ctx.session_id)


@router.get("/auth/sessions", response_model=list[SessionResponse])
def my_sessions(request: Request, ctx: AuthContext = Depends(get_current_identity)) -> list[SessionResponse]:
    """List the caller's unexpired sessions, most recently active first."""
    sessions = request.app.state.sessions.list_for_user(ctx.user_id)
    return [SessionResponse.from_session(s, current_id=ctx.session_id) for s in sessions]


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(get_current_identity),
) -> MessageResponse:
    """Replace the caller's password. Other sessions are not terminated."""
    service: AuthService = request.app.state.auth_service
    service.change_password(
        ctx.user_id,
        body.current_password,
        body.new_password,
        get_origin(request),
        session_id=ctx.session_id,
    )
    return MessageResponse(message="Password changed successfully.")
