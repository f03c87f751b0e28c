"""
api/routes/v1/admin.py -- Account, session, audit and policy administration.

Routes (all require an ADMIN_ROLES caller via require_admin):
  POST   /api/v1/admin/users                   -- create an account
  PATCH  /api/v1/admin/users/{id}/status       -- activate / deactivate / suspend
  POST   /api/v1/admin/users/{id}/reset-password -- set a new password, end all sessions
  GET    /api/v1/admin/sessions                -- paginated live sessions (?user_id=)
  DELETE /api/v1/admin/sessions/{id}           -- force-end one session
  DELETE /api/v1/admin/users/{id}/sessions     -- force-end every session of a user
  GET    /api/v1/admin/audit-logs              -- filtered, paginated audit trail
  GET    /api/v1/admin/audit-logs/stats        -- counts by action / severity / status
  GET    /api/v1/admin/login-attempts          -- filtered, paginated login attempts
  GET    /api/v1/admin/login-attempts/stats    -- last-N-hours attempt summary
  GET    /api/v1/admin/security-policy         -- live security policy
  PATCH  /api/v1/admin/security-policy         -- partial policy update

Security:
  [M4] An admin cannot change the status of their own account.
  Forced terminations push a "session:terminated" event to the affected
  user's personal realtime channel so open clients can sign out at once.
  The termination itself does not depend on the push succeeding.
  The async routes run AuthService calls in the threadpool and keep only the
  realtime push on the event loop.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool

from api.models import (
    AuditEventResponse,
    LoginAttemptResponse,
    Page,
    Pagination,
    PasswordResetRequest,
    SecurityPolicyPatch,
    SecurityPolicyResponse,
    SessionResponse,
    SessionsTerminatedResponse,
    UserCreate,
    UserResponse,
    UserStatusUpdate,
)
from auth.audit import AuditLog, AuditQuery
from auth.dependencies import get_origin, require_admin
from auth.lockout import LoginAttemptStore
from auth.models import AuditAction, AuditSeverity, AuditStatus, AuthContext
from auth.realtime import ChannelHub
from auth.service import AuthService

# Auth policy: every route below requires require_admin.
router = APIRouter(prefix="/admin")


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    ctx: AuthContext = Depends(require_admin),
) -> UserResponse:
    """Create an account. The password must satisfy the live security policy."""
    service: AuthService = request.app.state.auth_service
    user = service.create_user(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
        actor_id=ctx.user_id,
        origin=get_origin(request),
    )
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}/status", response_model=UserResponse)
def update_user_status(
    request: Request,
    user_id: int,
    body: UserStatusUpdate,
    ctx: AuthContext = Depends(require_admin),
) -> UserResponse:
    """Change an account's status. Existing sessions are not terminated implicitly."""
    service: AuthService = request.app.state.auth_service
    user = service.set_status(user_id, body.status, actor_id=ctx.user_id, origin=get_origin(request))
    return UserResponse.from_user(user)


@router.post("/users/{user_id}/reset-password", response_model=SessionsTerminatedResponse)
async def reset_user_password(
    request: Request,
    user_id: int,
    body: PasswordResetRequest,
    ctx: AuthContext = Depends(require_admin),
) -> SessionsTerminatedResponse:
    """Set a new password for a user and end every one of their sessions."""
    service: AuthService = request.app.state.auth_service
    count = await run_in_threadpool(service.reset_password, user_id, body.new_password, ctx.user_id, get_origin(request))
    hub: ChannelHub = request.app.state.hub
    await hub.emit_to_user(user_id, "session:terminated", {"session_id": None, "reason": "password_reset"})
    return SessionsTerminatedResponse(message="Password reset.", count=count)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/sessions", response_model=Page[SessionResponse])
def list_sessions(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    user_id: Optional[int] = Query(default=None),
    ctx: AuthContext = Depends(require_admin),
) -> Page[SessionResponse]:
    sessions, total = request.app.state.sessions.list_active(page=page, limit=limit, user_id=user_id)
    return Page[SessionResponse](
        items=[SessionResponse.from_session(s, current_id=ctx.session_id) for s in sessions],
        pagination=Pagination.build(page, limit, total),
    )


@router.delete("/sessions/{session_id}", response_model=SessionsTerminatedResponse)
async def terminate_session(
    request: Request,
    session_id: str,
    ctx: AuthContext = Depends(require_admin),
) -> SessionsTerminatedResponse:
    """Force-end one session (404 if it does not exist) and notify its owner."""
    service: AuthService = request.app.state.auth_service
    session = await run_in_threadpool(service.terminate_session, session_id, ctx.user_id, get_origin(request))
    hub: ChannelHub = request.app.state.hub
    await hub.emit_to_user(session.user_id, "session:terminated", {"session_id": session.id, "reason": "admin"})
    return SessionsTerminatedResponse(message="Session terminated.", count=1)


@router.delete("/users/{user_id}/sessions", response_model=SessionsTerminatedResponse)
async def terminate_user_sessions(
    request: Request,
    user_id: int,
    ctx: AuthContext = Depends(require_admin),
) -> SessionsTerminatedResponse:
    """Force-end every session of a user and notify them."""
    service: AuthService = request.app.state.auth_service
    count = await run_in_threadpool(service.terminate_user_sessions, user_id, ctx.user_id, get_origin(request))
    hub: ChannelHub = request.app.state.hub
    await hub.emit_to_user(user_id, "session:terminated", {"session_id": None, "reason": "admin"})
    return SessionsTerminatedResponse(message=f"{count} session(s) terminated.", count=count)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


@router.get("/audit-logs", response_model=Page[AuditEventResponse])
def list_audit_logs(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    user_id: Optional[int] = Query(default=None),
    action: Optional[AuditAction] = Query(default=None),
    entity_type: Optional[str] = Query(default=None, max_length=50),
    severity: Optional[AuditSeverity] = Query(default=None),
    status: Optional[AuditStatus] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    ctx: AuthContext = Depends(require_admin),
) -> Page[AuditEventResponse]:
    audit: AuditLog = request.app.state.audit
    events, total = audit.list_events(
        AuditQuery(
            page=page,
            limit=limit,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            severity=severity,
            status=status,
            start=start,
            end=end,
        )
    )
    return Page[AuditEventResponse](
        items=[AuditEventResponse.from_event(e) for e in events],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/audit-logs/stats")
def audit_log_stats(
    request: Request,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    ctx: AuthContext = Depends(require_admin),
) -> dict:
    return request.app.state.audit.stats(start=start, end=end)


# ---------------------------------------------------------------------------
# Login attempts
# ---------------------------------------------------------------------------


@router.get("/login-attempts", response_model=Page[LoginAttemptResponse])
def list_login_attempts(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    email: Optional[str] = Query(default=None, max_length=255),
    success: Optional[bool] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    ctx: AuthContext = Depends(require_admin),
) -> Page[LoginAttemptResponse]:
    attempts: LoginAttemptStore = request.app.state.attempts
    rows, total = attempts.list_attempts(page=page, limit=limit, email=email, success=success, start=start, end=end)
    return Page[LoginAttemptResponse](
        items=[LoginAttemptResponse.from_attempt(a) for a in rows],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/login-attempts/stats")
def login_attempt_stats(
    request: Request,
    hours: int = Query(default=24, ge=1, le=24 * 30),
    ctx: AuthContext = Depends(require_admin),
) -> dict:
    return request.app.state.attempts.stats(hours=hours)


# ---------------------------------------------------------------------------
# Security policy
# ---------------------------------------------------------------------------


@router.get("/security-policy", response_model=SecurityPolicyResponse)
def get_security_policy(request: Request, ctx: AuthContext = Depends(require_admin)) -> SecurityPolicyResponse:
    return SecurityPolicyResponse.from_policy(request.app.state.policy.get_policy())


@router.patch("/security-policy", response_model=SecurityPolicyResponse)
def update_security_policy(
    request: Request,
    body: SecurityPolicyPatch,
    ctx: AuthContext = Depends(require_admin),
) -> SecurityPolicyResponse:
    """Apply a partial policy update. Takes effect on the next decision; existing sessions keep their expiry."""
    service: AuthService = request.app.state.auth_service
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    try:
        policy = service.update_policy(changes, actor_id=ctx.user_id, origin=get_origin(request))
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_policy", "message": str(exc)},
        ) from exc
    return SecurityPolicyResponse.from_policy(policy)
