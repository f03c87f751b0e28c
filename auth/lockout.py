"""
auth/lockout.py -- Login attempt facts and the derived lockout decision.

Lockout is derived, never stored. There is no "locked_until" column and no
failure counter to increment or reset: check_lockout() counts failed
LoginAttempt rows inside the trailing window on every call. Once the window
rolls past the failures the account is usable again with no unlock action.

record() is best-effort. A failed write is logged and swallowed so that a
storage hiccup can neither block a valid login nor turn a denial into a 500.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, desc, func, select, true

from auth.models import LockoutStatus, LoginAttempt, OriginMeta
from auth.schema import create_schema, login_attempts
from auth.users import normalize_email
from core.clock import Clock, from_iso, to_iso, utcnow
from core.database import Database

logger = logging.getLogger("pmoaccess.auth.lockout")


class LoginAttemptStore:
    """Append-only store of login attempts plus the lockout query over them."""

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.engine = db.engine
        self._clock = clock
        create_schema(self.engine)

    def record(
        self,
        email: str,
        success: bool,
        origin: OriginMeta | None = None,
        fail_reason: str | None = None,
    ) -> None:
        """Append one attempt. Never raises."""
        origin = origin or OriginMeta()
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    login_attempts.insert().values(
                        email=normalize_email(email),
                        success=success,
                        ip_address=origin.ip_address,
                        user_agent=origin.user_agent,
                        fail_reason=None if success else fail_reason,
                        created_at=to_iso(self._clock()),
                    )
                )
                conn.commit()
        except Exception:
            logger.exception("Failed to record login attempt")

    def check_lockout(self, email: str, max_attempts: int = 5, window_minutes: int = 30) -> LockoutStatus:
        """Count failures for email in the trailing window and decide.

        Locked iff failed_attempts >= max_attempts.
        """
        since = self._clock() - timedelta(minutes=window_minutes)
        with self.engine.connect() as conn:
            failed = conn.execute(
                select(func.count())
                .select_from(login_attempts)
                .where(
                    and_(
                        login_attempts.c.email == normalize_email(email),
                        login_attempts.c.success.is_(False),
                        login_attempts.c.created_at >= to_iso(since),
                    )
                )
            ).scalar()
        failed = failed or 0
        return LockoutStatus(is_locked=failed >= max_attempts, failed_attempts=failed, max_attempts=max_attempts)

    # ------------------------------------------------------------------
    # Admin queries
    # ------------------------------------------------------------------

    def list_attempts(
        self,
        page: int = 1,
        limit: int = 50,
        email: str | None = None,
        success: bool | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[list[LoginAttempt], int]:
        """Return (attempts newest first, total matching).

        email is a case-insensitive substring match -- admins search by
        fragments ("@contractor.com").
        """
        conditions = []
        if email:
            conditions.append(login_attempts.c.email.contains(normalize_email(email), autoescape=True))
        if success is not None:
            conditions.append(login_attempts.c.success.is_(success))
        if start is not None:
            conditions.append(login_attempts.c.created_at >= to_iso(start))
        if end is not None:
            conditions.append(login_attempts.c.created_at <= to_iso(end))
        where = and_(true(), *conditions)

        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(login_attempts).where(where)).scalar() or 0
            rows = conn.execute(
                login_attempts.select()
                .where(where)
                .order_by(desc(login_attempts.c.created_at), desc(login_attempts.c.id))
                .offset((page - 1) * limit)
                .limit(limit)
            ).fetchall()
        return [_row_to_attempt(r) for r in rows], total

    def stats(self, hours: int = 24) -> dict:
        """Aggregate counts over the last `hours` hours plus the top failing emails."""
        since = to_iso(self._clock() - timedelta(hours=hours))
        recent = login_attempts.c.created_at >= since
        failed = login_attempts.c.success.is_(False)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(login_attempts).where(recent)).scalar() or 0
            failures = (
                conn.execute(select(func.count()).select_from(login_attempts).where(and_(recent, failed))).scalar()
                or 0
            )
            top = conn.execute(
                select(login_attempts.c.email, func.count().label("attempts"))
                .where(and_(recent, failed))
                .group_by(login_attempts.c.email)
                .order_by(desc("attempts"))
                .limit(10)
            ).fetchall()
        return {
            "total": total,
            "successful": total - failures,
            "failed": failures,
            "top_failed_emails": [{"email": r.email, "count": r.attempts} for r in top],
        }


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        id=row.id,
        email=row.email,
        success=bool(row.success),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        fail_reason=row.fail_reason,
        created_at=from_iso(row.created_at),
    )
