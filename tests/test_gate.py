"""
tests/test_gate.py -- Unit tests for the Request Gate state machine.

Each rejection step is exercised in isolation, in the documented order:
missing token, invalid token, no session, terminated, hard expiry,
inactivity. Expiry deletes the row (so the next call says "terminated")
and writes a SESSION_EXPIRED audit event.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.audit import AuditQuery
from auth.errors import (
    InvalidToken,
    MissingToken,
    NoSession,
    SessionExpired,
    SessionStateError,
    SessionTerminated,
    SessionTimedOut,
)
from auth.gate import RequestGate, extract_bearer, role_allowed
from auth.models import ADMIN_ROLES, AuditAction, AuthContext, OriginMeta, Role
from auth.sessions import SessionToucher
from auth.tokens import TokenCodec

SECRET = "g" * 40


@pytest.fixture
def toucher(sessions):
    t = SessionToucher(sessions, max_workers=1)
    yield t
    t.shutdown()


@pytest.fixture
def gate(sessions, policy, audit, toucher) -> RequestGate:
    return RequestGate(TokenCodec(SECRET), sessions, policy, audit, toucher)


def _bearer_for(sessions, lifetime: int = 480, user_id: int = 1, role: Role = Role.TEAM_MEMBER):
    session = sessions.create(user_id, OriginMeta("10.0.0.9", "pytest"), expires_in_minutes=lifetime)
    ctx = AuthContext(user_id=user_id, email="u@example.com", role=role, session_id=session.id)
    token = TokenCodec(SECRET).encode(ctx, session.expires_at + timedelta(days=1))
    return session, f"Bearer {token}"


class TestExtractBearer:
    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer   ", "bearer abc"])
    def test_rejects_non_bearer(self, header):
        assert extract_bearer(header) is None

    def test_returns_token(self):
        assert extract_bearer("Bearer abc.def") == "abc.def"


class TestAuthenticate:
    def test_accepts_live_session(self, gate, sessions):
        session, header = _bearer_for(sessions)
        ctx = gate.authenticate(header)
        assert ctx.user_id == 1
        assert ctx.session_id == session.id

    def test_missing_token(self, gate):
        with pytest.raises(MissingToken):
            gate.authenticate(None)

    def test_invalid_token(self, gate):
        with pytest.raises(InvalidToken):
            gate.authenticate("Bearer garbage")

    def test_token_without_session(self, gate):
        token = TokenCodec(SECRET).encode(
            AuthContext(user_id=1, email="u@example.com", role=Role.ADMIN, session_id=""),
            datetime.now(timezone.utc) + timedelta(hours=1),
        )
        with pytest.raises(NoSession):
            gate.authenticate(f"Bearer {token}")

    def test_terminated_session(self, gate, sessions):
        session, header = _bearer_for(sessions)
        sessions.terminate(session.id)
        with pytest.raises(SessionTerminated):
            gate.authenticate(header)

    def test_hard_expiry_deletes_and_audits(self, gate, sessions, audit, clock):
        session, header = _bearer_for(sessions, lifetime=60)
        # Keep the session active so only the hard deadline can trip.
        for _ in range(15):
            clock.advance(minutes=4)
            sessions.touch(session.id)
        with pytest.raises(SessionExpired):
            gate.authenticate(header)
        assert sessions.get(session.id) is None
        events, _ = audit.list_events(AuditQuery(action=AuditAction.SESSION_EXPIRED))
        assert len(events) == 1
        assert events[0].detail["reason"] == "hard_expiry"
        assert events[0].user_id == 1

    def test_inactivity_deletes_and_audits(self, gate, sessions, audit, clock):
        session, header = _bearer_for(sessions, lifetime=10080)
        clock.advance(minutes=6)
        with pytest.raises(SessionTimedOut):
            gate.authenticate(header)
        assert sessions.get(session.id) is None
        events, _ = audit.list_events(AuditQuery(action=AuditAction.SESSION_EXPIRED))
        assert events[0].detail["reason"] == "inactivity"

    def test_after_expiry_next_call_is_terminated(self, gate, sessions, clock):
        _session, header = _bearer_for(sessions)
        clock.advance(minutes=6)
        with pytest.raises(SessionTimedOut):
            gate.authenticate(header)
        with pytest.raises(SessionTerminated):
            gate.authenticate(header)

    def test_session_errors_share_a_base(self):
        for exc in (SessionTerminated, SessionExpired, SessionTimedOut):
            assert issubclass(exc, SessionStateError)
            assert exc.status_code == 401
        assert len({SessionTerminated.code, SessionExpired.code, SessionTimedOut.code}) == 3

    def test_accept_dispatches_touch(self, gate, sessions, toucher, clock):
        session, header = _bearer_for(sessions)
        clock.advance(minutes=4)
        gate.authenticate(header)
        toucher.shutdown(wait=True)
        assert sessions.get(session.id).last_active == clock()

    def test_inactivity_follows_live_policy(self, gate, sessions, policy, clock):
        _session, header = _bearer_for(sessions)
        policy.update(session_inactivity_minutes=30)
        clock.advance(minutes=20)
        assert gate.authenticate(header).user_id == 1


class TestValidateSession:
    def test_does_not_touch(self, gate, sessions, clock):
        session, _header = _bearer_for(sessions)
        clock.advance(minutes=3)
        ctx = AuthContext(user_id=1, email="u@example.com", role=Role.VIEWER, session_id=session.id)
        gate.validate_session(ctx)
        assert sessions.get(session.id).last_active == session.last_active


class TestRoleAllowed:
    @pytest.mark.parametrize("role", list(Role))
    def test_admin_set(self, role):
        assert role_allowed(role, ADMIN_ROLES) is (role in (Role.SUPER_ADMIN, Role.ADMIN))

    def test_ad_hoc_allow_set(self):
        allowed = frozenset({Role.PROJECT_MANAGER, Role.RESOURCE_MANAGER})
        assert role_allowed(Role.RESOURCE_MANAGER, allowed)
        assert not role_allowed(Role.ADMIN, allowed)
        assert not role_allowed(Role.VIEWER, allowed)
