"""
auth/models.py -- Domain dataclasses and enumerations for access control.

Pattern: Data class (pure data container, near-zero logic). Stores and the
service layer do the work; these types only own the shape of the data.

Roles are a closed enumeration. Operations declare which roles may run them
as a frozenset allow-set (e.g. ADMIN_ROLES) instead of comparing
role strings at call sites.

Audit metadata uses a structured detail class for the actions that matter
most (login failure, lockout, session termination, status change) and falls
back to a plain dict for anything heterogeneous.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    PMO_MANAGER = "PMO_MANAGER"
    PROJECT_MANAGER = "PROJECT_MANAGER"
    RESOURCE_MANAGER = "RESOURCE_MANAGER"
    TEAM_MEMBER = "TEAM_MEMBER"
    VIEWER = "VIEWER"


ADMIN_ROLES: frozenset[Role] = frozenset({Role.SUPER_ADMIN, Role.ADMIN})


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class AuditAction(str, Enum):
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET = "PASSWORD_RESET"
    USER_CREATED = "USER_CREATED"
    USER_STATUS_CHANGED = "USER_STATUS_CHANGED"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SETTING_UPDATED = "SETTING_UPDATED"


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass(frozen=True)
class OriginMeta:
    """Where a request came from. Both fields are best-effort and may be None."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class User:
    """An identity plus its credential.

    email is always stored lower-cased; the store normalizes on write and on
    lookup so the unique constraint is effectively case-insensitive.
    hashed_password is a bcrypt hash and never leaves the auth package.
    """

    email: str
    hashed_password: str
    first_name: str = ""
    last_name: str = ""
    role: Role = Role.TEAM_MEMBER
    status: AccountStatus = AccountStatus.ACTIVE
    id: int | None = None
    created_at: str | None = None
    last_login_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.ACTIVE


@dataclass
class Session:
    """One authenticated device/client binding.

    Valid at time T iff the row exists, T < expires_at and
    T - last_active < inactivity window (see auth.sessions.is_expired).
    """

    id: str
    user_id: int
    last_active: datetime
    expires_at: datetime
    created_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class LoginAttempt:
    email: str
    success: bool
    created_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    fail_reason: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class LockoutStatus:
    is_locked: bool
    failed_attempts: int
    max_attempts: int


@dataclass(frozen=True)
class SecurityPolicy:
    """Live security policy, read at decision time (auth/policy.py)."""

    max_login_attempts: int = 5
    lockout_duration_minutes: int = 30
    session_lifetime_minutes: int = 480
    session_inactivity_minutes: int = 5
    password_min_length: int = 8
    password_require_uppercase: bool = True
    password_require_number: bool = True
    password_require_special: bool = False


# ---------------------------------------------------------------------------
# Structured audit detail
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoginFailureDetail:
    reason: str


@dataclass(frozen=True)
class LockoutDetail:
    failed_attempts: int
    max_attempts: int


@dataclass(frozen=True)
class SessionTerminationDetail:
    reason: str  # "logout" | "admin" | "hard_expiry" | "inactivity"
    target_user_id: int | None = None
    session_count: int = 1


@dataclass(frozen=True)
class StatusChangeDetail:
    old_status: str
    new_status: str


AuditDetail = Union[LoginFailureDetail, LockoutDetail, SessionTerminationDetail, StatusChangeDetail, dict]


def detail_to_dict(detail: AuditDetail | None) -> dict[str, Any] | None:
    if detail is None:
        return None
    if isinstance(detail, dict):
        return dict(detail)
    return asdict(detail)


@dataclass
class AuditEvent:
    """Immutable fact describing a security-relevant transition.

    user_id is None for system-initiated events. id and created_at are set by
    the store on insert.
    """

    action: AuditAction
    user_id: int | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    severity: AuditSeverity = AuditSeverity.INFO
    status: AuditStatus = AuditStatus.SUCCESS
    detail: AuditDetail | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None
    error_detail: str | None = None
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_origin(cls, action: AuditAction, origin: OriginMeta | None, **kwargs: Any) -> "AuditEvent":
        origin = origin or OriginMeta()
        return cls(action=action, ip_address=origin.ip_address, user_agent=origin.user_agent, **kwargs)


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to a request after the gate accepts it."""

    user_id: int
    email: str
    role: Role
    session_id: str
