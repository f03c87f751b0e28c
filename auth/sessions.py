"""
auth/sessions.py -- Session Store: the single source of truth for "is this token usable".

Pattern: Repository + Data Mapper (same shape as auth/users.py).

Validity rule (checked by auth/gate.py on every request):
    valid at T  iff  row exists  and  T < expires_at  and  T - last_active < inactivity

Concurrency:
  touch() is an UPDATE guarded by ``last_active < :now``. It never inserts,
  so a touch racing a terminate cannot resurrect a deleted session, and it
  never moves last_active backwards when two touches land out of order.
  Last write wins otherwise; no locks are taken.

  SessionToucher runs touch() on a small thread pool so the request path
  never waits on the write. Failures are logged from the future's done
  callback and never reach the caller.

No in-process cache of session rows exists anywhere: every check re-reads
the table, so a terminate in one worker process is visible to all others
on their next read.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import and_, desc, func, or_, select, true

from auth.models import OriginMeta, Session
from auth.schema import create_schema, user_sessions
from core.clock import Clock, from_iso, to_iso, utcnow
from core.database import Database

logger = logging.getLogger("pmoaccess.auth.sessions")


class ExpiryReason(str, Enum):
    HARD_EXPIRY = "hard_expiry"
    INACTIVITY = "inactivity"


def expiry_reason(session: Session, now: datetime, inactivity_minutes: int) -> ExpiryReason | None:
    """Return why the session is no longer valid at `now`, or None if it is.

    Hard expiry is checked first: a session past both deadlines is reported
    as expired rather than timed out.
    """
    if now >= session.expires_at:
        return ExpiryReason.HARD_EXPIRY
    if now - session.last_active >= timedelta(minutes=inactivity_minutes):
        return ExpiryReason.INACTIVITY
    return None


def is_expired(session: Session, now: datetime, inactivity_minutes: int) -> bool:
    return expiry_reason(session, now, inactivity_minutes) is not None


class SessionStore:
    """Repository for Session rows.

    Usage:
        store = SessionStore(db)
        session = store.create(user_id, OriginMeta("10.0.0.1", "curl/8"), expires_in_minutes=480)
        store.touch(session.id)
        store.terminate(session.id)
    """

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.engine = db.engine
        self._clock = clock
        create_schema(self.engine)

    def now(self) -> datetime:
        return self._clock()

    def create(self, user_id: int, origin: OriginMeta | None, expires_in_minutes: int) -> Session:
        """Insert a new session with last_active = now, expires_at = now + expires_in_minutes."""
        origin = origin or OriginMeta()
        now = self._clock()
        session = Session(
            id=secrets.token_hex(16),
            user_id=user_id,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            last_active=now,
            expires_at=now + timedelta(minutes=expires_in_minutes),
            created_at=now,
        )
        with self.engine.connect() as conn:
            conn.execute(
                user_sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    last_active=to_iso(session.last_active),
                    expires_at=to_iso(session.expires_at),
                    created_at=to_iso(session.created_at),
                )
            )
            conn.commit()
        return session

    def get(self, session_id: str) -> Session | None:
        """Look up a session by id. Returns None if it does not exist (terminated or never created)."""
        with self.engine.connect() as conn:
            row = conn.execute(user_sessions.select().where(user_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch(self, session_id: str) -> bool:
        """Bump last_active to now. Returns False if nothing was updated.

        Update-only: a session deleted in the meantime stays deleted.
        """
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.update()
                .where(and_(user_sessions.c.id == session_id, user_sessions.c.last_active < now))
                .values(last_active=now)
            )
            conn.commit()
        return result.rowcount > 0

    def terminate(self, session_id: str) -> bool:
        """Delete one session. Idempotent: returns False if it was already gone."""
        with self.engine.connect() as conn:
            result = conn.execute(user_sessions.delete().where(user_sessions.c.id == session_id))
            conn.commit()
        return result.rowcount > 0

    def terminate_all(self, user_id: int) -> int:
        """Delete every session owned by user_id. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(user_sessions.delete().where(user_sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def list_for_user(self, user_id: int) -> list[Session]:
        """Sessions of one user that have not passed hard expiry, most recently active first."""
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            rows = conn.execute(
                user_sessions.select()
                .where(and_(user_sessions.c.user_id == user_id, user_sessions.c.expires_at > now))
                .order_by(desc(user_sessions.c.last_active))
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def list_active(self, page: int = 1, limit: int = 50, user_id: int | None = None) -> tuple[list[Session], int]:
        """Paginated admin listing of sessions that have not passed hard expiry."""
        now = to_iso(self._clock())
        where = and_(
            user_sessions.c.expires_at > now,
            user_sessions.c.user_id == user_id if user_id is not None else true(),
        )
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(user_sessions).where(where)).scalar() or 0
            rows = conn.execute(
                user_sessions.select()
                .where(where)
                .order_by(desc(user_sessions.c.last_active))
                .offset((page - 1) * limit)
                .limit(limit)
            ).fetchall()
        return [_row_to_session(r) for r in rows], total

    def cleanup_expired(self, inactivity_minutes: int) -> int:
        """Delete sessions past hard expiry or idle for at least the inactivity window."""
        now = self._clock()
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.delete().where(
                    or_(
                        user_sessions.c.expires_at <= to_iso(now),
                        user_sessions.c.last_active <= to_iso(now - timedelta(minutes=inactivity_minutes)),
                    )
                )
            )
            conn.commit()
        if result.rowcount > 0:
            logger.info("Cleaned up %d expired sessions", result.rowcount)
        return result.rowcount


class SessionToucher:
    """Fire-and-forget dispatcher for SessionStore.touch().

    dispatch() returns immediately; the write happens on a worker thread.
    shutdown() waits for queued touches so none are lost on graceful exit.
    """

    def __init__(self, store: SessionStore, max_workers: int = 4) -> None:
        self._store = store
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="session-touch")

    def dispatch(self, session_id: str) -> Future | None:
        try:
            future = self._executor.submit(self._store.touch, session_id)
        except RuntimeError:
            # Executor already shut down (process is exiting).
            logger.warning("Session touch skipped after shutdown")
            return None
        future.add_done_callback(_log_touch_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _log_touch_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.warning("Failed to update session activity: %s", exc)


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        last_active=from_iso(row.last_active),
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
    )
