"""
API request and response models for the pmo-access REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from __future__ import annotations

import math
from dataclasses import asdict
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import (
    AccountStatus,
    AuditAction,
    AuditEvent,
    LoginAttempt,
    Role,
    SecurityPolicy,
    Session,
    User,
    detail_to_dict,
)

T = TypeVar("T")

# Passwords are capped well below anything bcrypt would choke on after encoding.
_PASSWORD_MAX = 255


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class LogoutRequest(BaseModel):
    """Optional body for POST /api/v1/auth/logout. Omit session_id to end every session."""

    session_id: Optional[str] = Field(default=None, max_length=64)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a User. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: str
    last_name: str
    role: Role
    status: AccountStatus
    created_at: Optional[str] = None
    last_login_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            status=user.status,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    token: str
    token_type: str = "bearer"
    session_id: str
    expires_at: datetime


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    session_id: str


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: int
    ip_address: Optional[str]
    user_agent: Optional[str]
    last_active: datetime
    expires_at: datetime
    created_at: datetime
    is_current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            user_id=session.user_id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            last_active=session.last_active,
            expires_at=session.expires_at,
            created_at=session.created_at,
            is_current=session.id == current_id,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutResponse(MessageResponse):
    sessions_ended: int


# ---------------------------------------------------------------------------
# Admin -- request models
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/admin/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    role: Role = Role.TEAM_MEMBER


class UserStatusUpdate(BaseModel):
    status: AccountStatus


class PasswordResetRequest(BaseModel):
    """Request body for POST /api/v1/admin/users/{id}/reset-password."""

    new_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class SecurityPolicyPatch(BaseModel):
    """Partial update for PATCH /api/v1/admin/security-policy. Omitted fields are unchanged."""

    model_config = ConfigDict(extra="forbid")

    max_login_attempts: Optional[int] = Field(default=None, ge=1, le=100)
    lockout_duration_minutes: Optional[int] = Field(default=None, ge=1, le=1440)
    session_lifetime_minutes: Optional[int] = Field(default=None, ge=1, le=43200)
    session_inactivity_minutes: Optional[int] = Field(default=None, ge=1, le=1440)
    password_min_length: Optional[int] = Field(default=None, ge=1, le=128)
    password_require_uppercase: Optional[bool] = None
    password_require_number: Optional[bool] = None
    password_require_special: Optional[bool] = None


# ---------------------------------------------------------------------------
# Admin -- response models
# ---------------------------------------------------------------------------


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit) if limit else 0)


class Page(BaseModel, Generic[T]):
    """Paginated list envelope."""

    model_config = ConfigDict(frozen=True)

    items: list[T]
    pagination: Pagination


class SecurityPolicyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_login_attempts: int
    lockout_duration_minutes: int
    session_lifetime_minutes: int
    session_inactivity_minutes: int
    password_min_length: int
    password_require_uppercase: bool
    password_require_number: bool
    password_require_special: bool

    @classmethod
    def from_policy(cls, policy: SecurityPolicy) -> "SecurityPolicyResponse":
        return cls(**asdict(policy))


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    action: AuditAction
    user_id: Optional[int]
    entity_type: Optional[str]
    entity_id: Optional[str]
    severity: str
    status: str
    metadata: Optional[dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    session_id: Optional[str]
    error_detail: Optional[str]
    created_at: datetime

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            action=event.action,
            user_id=event.user_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            severity=event.severity.value,
            status=event.status.value,
            metadata=detail_to_dict(event.detail),
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            session_id=event.session_id,
            error_detail=event.error_detail,
            created_at=event.created_at,
        )


class LoginAttemptResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    success: bool
    ip_address: Optional[str]
    user_agent: Optional[str]
    fail_reason: Optional[str]
    created_at: datetime

    @classmethod
    def from_attempt(cls, attempt: LoginAttempt) -> "LoginAttemptResponse":
        return cls(
            id=attempt.id,
            email=attempt.email,
            success=attempt.success,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            fail_reason=attempt.fail_reason,
            created_at=attempt.created_at,
        )


class SessionsTerminatedResponse(MessageResponse):
    count: int


# ---------------------------------------------------------------------------
# Extension
# ---------------------------------------------------------------------------


class ExtensionSessionResponse(BaseModel):
    """Identity plus session summary for the browser extension."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    session_id: str
    expires_at: datetime
    last_active: datetime


class ExtensionConfigResponse(BaseModel):
    """Timer settings the extension needs for its keep-alive."""

    model_config = ConfigDict(frozen=True)

    session_inactivity_minutes: int
    session_lifetime_minutes: int


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload. Extra keys (e.g. failed_attempts) are kept."""

    model_config = ConfigDict(frozen=True, extra="allow")

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
