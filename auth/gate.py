"""
auth/gate.py -- Per-request authentication: the Request Gate state machine.

    Unauthenticated -> TokenParsed -> SessionValidated -> Active

Each step either advances or raises, in this fixed order:

  1. no "Bearer <token>"                  -> MissingToken
  2. signature / exp / payload invalid    -> InvalidToken
  3. token carries no session id          -> NoSession
  4. session row absent                   -> SessionTerminated
  5. now >= expires_at                    -> delete row, SessionExpired
  6. now - last_active >= inactivity      -> delete row, SessionTimedOut
  7. accept; dispatch a fire-and-forget touch (sliding window)

Step 3 closes the gap where a well-formed token minted without a session
would otherwise outlive an explicit logout.

Steps 5 and 6 delete the row before raising so the next request sees
SessionTerminated, and write a SESSION_EXPIRED audit event after the delete.

validate_session() runs steps 3-6 without the touch. The realtime handshake
reuses it when session validation is enabled for that channel.

This module is framework-agnostic; auth/dependencies.py adapts it to FastAPI.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.audit import AuditLog
from auth.errors import MissingToken, NoSession, SessionExpired, SessionTerminated, SessionTimedOut
from auth.models import (
    AuditAction,
    AuditEvent,
    AuthContext,
    OriginMeta,
    Role,
    SessionTerminationDetail,
)
from auth.policy import PolicyStore
from auth.sessions import ExpiryReason, SessionStore, SessionToucher, expiry_reason
from auth.tokens import TokenCodec

logger = logging.getLogger("pmoaccess.auth.gate")

_BEARER_PREFIX = "Bearer "


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token from an Authorization header value, or None."""
    if not authorization or not authorization.startswith(_BEARER_PREFIX):
        return None
    token = authorization[len(_BEARER_PREFIX) :].strip()
    return token or None


def role_allowed(role: Role, allowed: frozenset[Role] | set[Role]) -> bool:
    return role in allowed


class RequestGate:
    """Composes TokenCodec + SessionStore into the per-request accept/reject decision."""

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionStore,
        policy: PolicyStore,
        audit: AuditLog,
        toucher: SessionToucher,
    ) -> None:
        self._codec = codec
        self._sessions = sessions
        self._policy = policy
        self._audit = audit
        self._toucher = toucher

    def authenticate(self, authorization: str | None, origin: OriginMeta | None = None) -> AuthContext:
        token = extract_bearer(authorization)
        if token is None:
            raise MissingToken()
        ctx = self._codec.decode(token)
        self.validate_session(ctx, origin)
        self._toucher.dispatch(ctx.session_id)
        return ctx

    def validate_session(self, ctx: AuthContext, origin: OriginMeta | None = None) -> None:
        """Steps 3-6. Raises on any session-state failure; returns None on success."""
        if not ctx.session_id:
            raise NoSession()

        session = self._sessions.get(ctx.session_id)
        if session is None:
            raise SessionTerminated()

        policy = self._policy.get_policy()
        reason = expiry_reason(session, self._sessions.now(), policy.session_inactivity_minutes)
        if reason is None:
            return

        self._sessions.terminate(session.id)
        self._audit.record(
            AuditEvent.from_origin(
                AuditAction.SESSION_EXPIRED,
                origin,
                user_id=session.user_id,
                entity_type="UserSession",
                entity_id=session.id,
                session_id=session.id,
                detail=SessionTerminationDetail(reason=reason.value, target_user_id=session.user_id),
            )
        )
        logger.info("Session %s ended (%s)", session.id, reason.value)
        if reason is ExpiryReason.HARD_EXPIRY:
            raise SessionExpired()
        raise SessionTimedOut()
