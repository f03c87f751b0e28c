"""
tests/conftest.py -- Shared test fixtures for pmo-access.

This module provides:
  - FakeClock: a controllable clock injected into every store
  - db / stores: a fresh database per test plus the stores built on it
  - _patch_lifespan(): wires test state into app.state, bypassing real startup
  - api: TestClient over the real app with a patched lifespan, plus helpers
    to create users and log in

Design: each test gets its own SQLite file under tmp_path rather than a
shared-memory URI. The session-touch pool writes from its own threads while
request handlers read; file databases in WAL mode let those proceed side by
side, where a shared-cache memory database would raise "table is locked".

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# TestClient sends Host: testserver; TrustedHostMiddleware reads this at app import.
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_state
from auth.audit import AuditLog
from auth.lockout import LoginAttemptStore
from auth.models import Role, SecurityPolicy
from auth.policy import PolicyStore
from auth.sessions import SessionStore
from auth.users import UserStore
from core.config import get_settings
from core.database import Database

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "AdminPass123"
MEMBER_PASSWORD = "MemberPass123"


class FakeClock:
    """Callable clock that only moves when told to.

    Starts at the real current time: token exp is checked by python-jose
    against the wall clock, so fake time must not start in the past.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Store-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path) -> Generator[Database, None, None]:
    database = Database(f"sqlite:///{tmp_path / 'pmoaccess-test.db'}")
    yield database
    database.close()


@pytest.fixture
def users(db: Database, clock: FakeClock) -> UserStore:
    return UserStore(db, clock=clock)


@pytest.fixture
def attempts(db: Database, clock: FakeClock) -> LoginAttemptStore:
    return LoginAttemptStore(db, clock=clock)


@pytest.fixture
def sessions(db: Database, clock: FakeClock) -> SessionStore:
    return SessionStore(db, clock=clock)


@pytest.fixture
def audit(db: Database, clock: FakeClock) -> AuditLog:
    return AuditLog(db, clock=clock)


@pytest.fixture
def policy(db: Database, clock: FakeClock) -> PolicyStore:
    return PolicyStore(db, defaults=SecurityPolicy(), clock=clock)


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Every test starts with empty slowapi counters."""
    limiter.reset()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(db: Database, clock: FakeClock):
    """Return an async context manager that replaces the real lifespan.

    Builds the real stores and services on the test database with the fake
    clock. The cleanup task is a long sleep so shutdown can cancel it like
    the real one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, db, get_settings(), clock=clock)
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()
        app.state.toucher.shutdown(wait=True)

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    clock: FakeClock

    @property
    def state(self):
        return self.client.app.state

    def create_user(self, email: str, password: str = MEMBER_PASSWORD, role: Role = Role.TEAM_MEMBER):
        return self.state.auth_service.create_user(email=email, password=password, role=role)

    def login(self, email: str, password: str) -> dict:
        resp = self.client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()

    def headers_for(self, email: str, password: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.login(email, password)['token']}"}

    def admin_headers(self) -> dict[str, str]:
        return self.headers_for(ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def api(db: Database, clock: FakeClock) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around a TestClient on a fresh database.

    One admin account (ADMIN_EMAIL / ADMIN_PASSWORD) exists before the first
    request.
    """
    app.router.lifespan_context = _patch_lifespan(db, clock)
    with TestClient(app, raise_server_exceptions=True) as client:
        harness = ApiHarness(client=client, clock=clock)
        harness.create_user(ADMIN_EMAIL, ADMIN_PASSWORD, Role.ADMIN)
        yield harness
