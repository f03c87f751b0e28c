"""
auth/service.py -- Use cases: login, logout, password change and admin account/session actions.

AuthService composes the stores. Route handlers and the CLI call it; it never
touches SQL itself.

Ordering rules:
  - Every audit event is written after the effect it describes has
    committed. An audit write failure is swallowed by AuditLog.record() and
    never rolls the effect back.
  - login() reads the live policy once at the start and uses that snapshot
    for the lockout window, the attempt limit and the session lifetime.

Security:
  [C1] verify_credentials() burns one bcrypt round for an unknown email so
       the response time does not reveal whether an account exists. Callers
       must use it rather than inlining get_by_email() + verify_password().
  [M4] set_status() refuses to change the caller's own account.
  reset_password() ends every session of the target account; change_password()
  leaves the caller's other sessions alive.
  A SUSPENDED or INACTIVE account gets AccountNotActive (checked before the
  password) and exactly one USER_LOGIN_FAILED audit event; no session.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditLog
from auth.errors import (
    AccountLocked,
    AccountNotActive,
    CurrentPasswordIncorrect,
    EmailAlreadyRegistered,
    InvalidCredentials,
    InvalidStatusChange,
    PasswordPolicyViolation,
    SessionNotFound,
    UserNotFound,
)
from auth.lockout import LoginAttemptStore
from auth.models import (
    AccountStatus,
    AuditAction,
    AuditEvent,
    AuditSeverity,
    AuditStatus,
    AuthContext,
    LockoutDetail,
    LoginFailureDetail,
    OriginMeta,
    Role,
    SecurityPolicy,
    Session,
    SessionTerminationDetail,
    StatusChangeDetail,
    User,
)
from auth.policy import PolicyStore, validate_password
from auth.sessions import SessionStore
from auth.tokens import TokenCodec, burn_dummy_check, hash_password, verify_password
from auth.users import UserStore, normalize_email

logger = logging.getLogger("pmoaccess.auth")


def verify_credentials(users: UserStore, email: str, password: str) -> User:
    """Return the User for a valid, active credential pair. No side effects.

    Raises InvalidCredentials for an unknown email or a wrong password and
    AccountNotActive for a non-ACTIVE account.
    """
    user = users.get_by_email(email)
    if user is None:
        burn_dummy_check(password)  # [C1]
        raise InvalidCredentials()
    if not user.is_active:
        raise AccountNotActive()
    if not verify_password(password, user.hashed_password):
        raise InvalidCredentials()
    return user


@dataclass(frozen=True)
class LoginResult:
    user: User
    token: str
    session_id: str
    expires_at: datetime


class AuthService:
    def __init__(
        self,
        users: UserStore,
        attempts: LoginAttemptStore,
        sessions: SessionStore,
        audit: AuditLog,
        policy: PolicyStore,
        codec: TokenCodec,
    ) -> None:
        self.users = users
        self.attempts = attempts
        self.sessions = sessions
        self.audit = audit
        self.policy = policy
        self.codec = codec

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, origin: OriginMeta | None = None) -> LoginResult:
        email = normalize_email(email)
        policy = self.policy.get_policy()

        lockout = self.attempts.check_lockout(email, policy.max_login_attempts, policy.lockout_duration_minutes)
        if lockout.is_locked:
            self.attempts.record(email, False, origin, fail_reason="Account locked")
            known = self.users.get_by_email(email)
            if known is not None:
                self.audit.record(
                    AuditEvent.from_origin(
                        AuditAction.ACCOUNT_LOCKED,
                        origin,
                        user_id=known.id,
                        entity_type="User",
                        entity_id=str(known.id),
                        severity=AuditSeverity.WARNING,
                        status=AuditStatus.FAILURE,
                        detail=LockoutDetail(lockout.failed_attempts, lockout.max_attempts),
                    )
                )
            logger.warning("Login rejected for locked account (%d/%d failures)", lockout.failed_attempts, lockout.max_attempts)
            raise AccountLocked(lockout.failed_attempts, lockout.max_attempts)

        try:
            user = verify_credentials(self.users, email, password)
        except AccountNotActive:
            self.attempts.record(email, False, origin, fail_reason="Account not active")
            self._audit_login_failure(self.users.get_by_email(email), origin, "Account not active")
            raise
        except InvalidCredentials:
            known = self.users.get_by_email(email)
            reason = "Invalid password" if known is not None else "User not found"
            self.attempts.record(email, False, origin, fail_reason=reason)
            if known is not None:
                self._audit_login_failure(known, origin, reason)
            raise

        self.attempts.record(email, True, origin)
        session = self.sessions.create(user.id, origin, policy.session_lifetime_minutes)
        self.users.update_last_login(user.id)

        self.audit.record(
            AuditEvent.from_origin(
                AuditAction.SESSION_CREATED,
                origin,
                user_id=user.id,
                entity_type="UserSession",
                entity_id=session.id,
                session_id=session.id,
            )
        )
        self.audit.record(
            AuditEvent.from_origin(
                AuditAction.USER_LOGIN,
                origin,
                user_id=user.id,
                entity_type="User",
                entity_id=str(user.id),
                session_id=session.id,
            )
        )

        token = self.codec.encode(
            AuthContext(user_id=user.id, email=user.email, role=user.role, session_id=session.id),
            expires_at=session.expires_at,
        )
        logger.info("User %s logged in (session %s)", user.id, session.id)
        return LoginResult(user=user, token=token, session_id=session.id, expires_at=session.expires_at)

    def _audit_login_failure(self, user: User | None, origin: OriginMeta | None, reason: str) -> None:
        if user is None:
            return
        self.audit.record(
            AuditEvent.from_origin(
                AuditAction.USER_LOGIN_FAILED,
                origin,
                user_id=user.id,
                entity_type="User",
                entity_id=str(user.id),
                severity=AuditSeverity.WARNING,
                status=AuditStatus.FAILURE,
                detail=LoginFailureDetail(reason=reason),
            )
        )

    def logout(self, user_id: int, session_id: str | None = None, origin: OriginMeta | None = None) -> int:
        """End one session of the caller, or all of them. Always succeeds; returns the number removed.

        A session_id owned by another user is ignored (count 0).
        """
        if session_id:
            session = self.sessions.get(session_id)
            count = 1 if session is not None and session.user_id == user_id and self.sessions.terminate(session_id) else 0
        else:
            count = self.sessions.terminate_all(user_id)

        self.audit.record(
            AuditEvent.from_origin(
                AuditAction.USER_LOGOUT,
                origin,
                user_id=user_id,
                entity_type="User",
                entity_id=str(user_id),
                session_id=session_id,
                detail=SessionTerminationDetail(reason="logout", target_user_id=user_id, session_count=count),
            )
        )
        logger.info("User %s logged out (%d sessions ended)", user_id, count)
        return count

    # ------------------------------------------------------------------
    # Password
    # ------------------------------------------------------------------

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        origin: OriginMeta | None = None,
        session_id: str | None = None,
    ) -> None:
        """Replace the caller's password. Other sessions stay alive."""
        user = self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFound()

        if not verify_password(current_password, user.hashed_password):
            self.audit.record(
                AuditEvent.from_origin(
                    AuditAction.PASSWORD_CHANGED,
                    origin,
                    user_id=user_id,
                    entity_type="User",
                    entity_id=str(user_id),
                    severity=AuditSeverity.WARNING,
                    status=AuditStatus.FAILURE,
                    session_id=session_id,
                    error_detail="Current password is incorrect",
                )
            )
            raise CurrentPasswordIncorrect()

        violations = validate_password(new_password, self.policy.get_policy())
        if violations:
            raise PasswordPolicyViolation(violations)

        self.users.update_password(user_id, hash_password(new_password))
        self.audit.record(
            AuditEvent.from_origin(
                AuditAction.PASSWORD_CHANGED,
                origin,
                user_id=user_id,
                entity_type="User",
                entity_id=str(user_id),
                session_id=session_id,
            )
        )
        logger.info("Password changed for user %s", user_id)

    def reset_password(
        self,
        user_id: int,
        new_password: str,
        actor_id: int | None = None,
        origin: OriginMeta | None = None,
    ) -> int:
        """Set a new password for user_id on an admin's behalf and end all of their sessions.

        Unlike change_password() no current password is needed, so every
        existing session is terminated. Returns the number of sessions ended.
        """
        user = self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFound()

        violations = validate_password(new_password, self.policy.get_policy())
        if violations:
            raise PasswordPolicyViolation(violations)

        self.users.update_password(user_id, hash_password(new_password))
        count = self.terminate_user_sessions(user_id, actor_id=actor_id, origin=origin)
        self.audit.record(
            AuditEvent.from_origin(
                AuditAction.PASSWORD_RESET,
                origin,
                user_id=actor_id,
                entity_type="User",
                entity_id=str(user_id),
                severity=AuditSeverity.WARNING,
                detail={"email": user.email, "reset_by": actor_id, "sessions_terminated": count},
            )
        )
        logger.info("Password reset for user %s by %s", user_id, actor_id)
        return count

    # ------------------------------------------------------------------
    # Admin: accounts
    # ------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        role: Role = Role.TEAM_MEMBER,
        actor_id: int | None = None,
        origin: OriginMeta | None = None,
        enforce_policy: bool = True,
    ) -> User:
        """Create an account. Raises PasswordPolicyViolation or EmailAlreadyRegistered."""
        if enforce_policy:
            violations = validate_password(password, self.policy.get_policy())
            if violations:
                raise PasswordPolicyViolation(violations)
        try:
            user_id = self.users.create_user(
                User(
                    email=email,
                    hashed_password=hash_password(password),
                    first_name=first_name,
                    last_name=last_name,
                    role=role,
                )
            )
        except IntegrityError as exc:
            raise EmailAlreadyRegistered() from exc

        self.audit.record(
            AuditEvent.from_origin(
                AuditAction.USER_CREATED,
                origin,
                user_id=actor_id,
                entity_type="User",
                entity_id=str(user_id),
                detail={"email": normalize_email(email), "role": role.value},
            )
        )
        logger.info("User %s created (%s)", user_id, role.value)
        return self.users.get_by_id(user_id)

    def set_status(
        self,
        user_id: int,
        status: AccountStatus,
        actor_id: int | None = None,
        origin: OriginMeta | None = None,
    ) -> User:
        """Change an account's status. Existing sessions are left alone."""
        if actor_id is not None and actor_id == user_id:
            raise InvalidStatusChange()  # [M4]
        target = self.users.get_by_id(user_id)
        if target is None:
            raise UserNotFound()

        self.users.set_status(user_id, status)
        self.audit.record(
            AuditEvent.from_origin(
                AuditAction.USER_STATUS_CHANGED,
                origin,
                user_id=actor_id,
                entity_type="User",
                entity_id=str(user_id),
                severity=AuditSeverity.INFO if status is AccountStatus.ACTIVE else AuditSeverity.WARNING,
                detail=StatusChangeDetail(old_status=target.status.value, new_status=status.value),
            )
        )
        logger.info("User %s status %s -> %s", user_id, target.status.value, status.value)
        return self.users.get_by_id(user_id)

    # ------------------------------------------------------------------
    # Admin: sessions
    # ------------------------------------------------------------------

    def terminate_session(self, session_id: str, actor_id: int | None = None, origin: OriginMeta | None = None) -> Session:
        """Force-end one session. Raises SessionNotFound. Returns the removed session."""
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound()

        self.sessions.terminate(session_id)
        self.audit.record(
            AuditEvent.from_origin(
                AuditAction.SESSION_TERMINATED,
                origin,
                user_id=actor_id,
                entity_type="UserSession",
                entity_id=session_id,
                severity=AuditSeverity.WARNING,
                detail=SessionTerminationDetail(reason="admin", target_user_id=session.user_id),
            )
        )
        logger.info("Session %s of user %s terminated by %s", session_id, session.user_id, actor_id)
        return session

    def terminate_user_sessions(self, user_id: int, actor_id: int | None = None, origin: OriginMeta | None = None) -> int:
        """Force-end every session of user_id. Raises UserNotFound. Returns the count."""
        if self.users.get_by_id(user_id) is None:
            raise UserNotFound()

        count = self.sessions.terminate_all(user_id)
        self.audit.record(
            AuditEvent.from_origin(
                AuditAction.SESSION_TERMINATED,
                origin,
                user_id=actor_id,
                entity_type="User",
                entity_id=str(user_id),
                severity=AuditSeverity.WARNING,
                detail=SessionTerminationDetail(reason="admin", target_user_id=user_id, session_count=count),
            )
        )
        logger.info("%d sessions of user %s terminated by %s", count, user_id, actor_id)
        return count

    def cleanup_sessions(self) -> int:
        """Delete every expired or idle session under the live policy."""
        return self.sessions.cleanup_expired(self.policy.get_policy().session_inactivity_minutes)

    # ------------------------------------------------------------------
    # Admin: policy
    # ------------------------------------------------------------------

    def update_policy(self, changes: dict, actor_id: int | None = None, origin: OriginMeta | None = None) -> SecurityPolicy:
        """Apply policy changes. Raises ValueError on unknown keys or bad values."""
        policy = self.policy.update(updated_by=actor_id, **changes)
        if changes:
            self.audit.record(
                AuditEvent.from_origin(
                    AuditAction.SETTING_UPDATED,
                    origin,
                    user_id=actor_id,
                    entity_type="SecuritySettings",
                    entity_id="1",
                    detail={"changes": changes},
                )
            )
            logger.info("Security policy updated by %s: %s", actor_id, sorted(changes))
        return policy
