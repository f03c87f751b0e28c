"""
auth/errors.py -- Exception taxonomy for the access-control core.

Every failure a caller can observe is an AuthError subclass carrying:
  code        -- stable machine-readable string for the error envelope
  status_code -- HTTP-equivalent status the API layer responds with
  message     -- human-readable text; never reveals whether an email exists
  extra       -- optional structured fields merged into the envelope
                 (e.g. failed_attempts / max_attempts on a lockout)

api/main.py renders these through one exception handler, so route code
raises them directly instead of building HTTPException payloads.

Information hiding: an unknown email and a wrong password both surface as
InvalidCredentials. The store/verifier never raise anything more specific.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from typing import Any


class AuthError(Exception):
    code: str = "unauthorized"
    status_code: int = 401
    message: str = "Authentication required."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.message
        self.extra: dict[str, Any] = extra
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Credential verification / login
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."


class AccountNotActive(AuthError):
    code = "account_not_active"
    message = "Account is not active."


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 423
    message = "Account is locked. Too many failed attempts. Please try again later."

    def __init__(self, failed_attempts: int, max_attempts: int) -> None:
        super().__init__(
            f"Account is locked. Too many failed attempts ({failed_attempts}/{max_attempts}). "
            "Please try again later.",
            failed_attempts=failed_attempts,
            max_attempts=max_attempts,
        )
        self.failed_attempts = failed_attempts
        self.max_attempts = max_attempts


# ---------------------------------------------------------------------------
# Token / request gate
# ---------------------------------------------------------------------------


class MissingToken(AuthError):
    code = "missing_token"
    message = "No token provided."


class InvalidToken(AuthError):
    code = "invalid_token"
    message = "Invalid or expired token."


class NoSession(AuthError):
    code = "no_session"
    message = "Invalid token: no session."


class SessionStateError(AuthError):
    """Base for the three ways a referenced session can be unusable."""


class SessionTerminated(SessionStateError):
    code = "session_terminated"
    message = "Session terminated."


class SessionExpired(SessionStateError):
    code = "session_expired"
    message = "Session expired."


class SessionTimedOut(SessionStateError):
    code = "session_timed_out"
    message = "Session timed out due to inactivity."


class InsufficientPermissions(AuthError):
    code = "insufficient_permissions"
    status_code = 403
    message = "Insufficient permissions."


# ---------------------------------------------------------------------------
# External client gate
# ---------------------------------------------------------------------------


class ExternalClientKeyMissing(AuthError):
    code = "extension_key_required"
    status_code = 403
    message = "Extension API key required. Please update your extension to the latest version."


class ExternalClientKeyInvalid(AuthError):
    code = "extension_key_invalid"
    status_code = 403
    message = "Extension authentication failed."


# ---------------------------------------------------------------------------
# Account management
# ---------------------------------------------------------------------------


class CurrentPasswordIncorrect(AuthError):
    code = "current_password_incorrect"
    status_code = 400
    message = "Current password is incorrect."


class PasswordPolicyViolation(AuthError):
    code = "password_policy"
    status_code = 400
    message = "Password does not meet the security policy."

    def __init__(self, violations: list[str]) -> None:
        super().__init__(violations=violations)
        self.violations = violations


class EmailAlreadyRegistered(AuthError):
    code = "conflict"
    status_code = 409
    message = "A user with that email already exists."


class UserNotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "User not found."


class SessionNotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "Session not found."


class InvalidStatusChange(AuthError):
    code = "self_deactivation"
    status_code = 400
    message = "You cannot change the status of your own account."
