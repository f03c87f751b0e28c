"""
auth/audit.py -- Append-only security audit log.

record() is the only write path and it is best-effort: callers decide their
own success or failure first, then hand the outcome here. A failed insert is
logged with a traceback and swallowed, so an audit outage can never block a
login, a logout, or an authorization decision.

Ordering contract: within one operation the caller writes the audit event
*after* the state change it describes has committed (session created, session
deleted, password updated). A reader therefore never sees an audit entry for
an effect that did not happen. Across concurrent requests no ordering is
promised beyond created_at.

Rows are never updated or deleted here; retention is an external concern.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime

from sqlalchemy import and_, desc, func, select, true

from auth.models import AuditAction, AuditEvent, AuditSeverity, AuditStatus, detail_to_dict
from auth.schema import audit_logs, create_schema
from core.clock import Clock, from_iso, to_iso, utcnow
from core.database import Database

logger = logging.getLogger("pmoaccess.auth.audit")

_ESCALATED = (AuditSeverity.ERROR, AuditSeverity.CRITICAL)


@dataclass(frozen=True)
class AuditQuery:
    page: int = 1
    limit: int = 50
    user_id: int | None = None
    action: AuditAction | None = None
    entity_type: str | None = None
    severity: AuditSeverity | None = None
    status: AuditStatus | None = None
    start: datetime | None = None
    end: datetime | None = None


class AuditLog:
    """Writer and admin reader for audit_logs."""

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.engine = db.engine
        self._clock = clock
        create_schema(self.engine)

    def record(self, event: AuditEvent) -> AuditEvent | None:
        """Append one event. Returns the stored event, or None if the write failed."""
        created_at = self._clock()
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    audit_logs.insert().values(
                        user_id=event.user_id,
                        action=event.action.value,
                        entity_type=event.entity_type,
                        entity_id=event.entity_id,
                        severity=event.severity.value,
                        status=event.status.value,
                        metadata=detail_to_dict(event.detail),
                        ip_address=event.ip_address,
                        user_agent=event.user_agent,
                        session_id=event.session_id,
                        error_detail=event.error_detail,
                        created_at=to_iso(created_at),
                    )
                )
                conn.commit()
                event_id = result.inserted_primary_key[0]
        except Exception:
            logger.exception("Failed to create audit log (%s)", event.action.value)
            return None

        if event.severity in _ESCALATED:
            logger.warning(
                "Audit: %s - %s entity=%s/%s user=%s",
                event.action.value,
                event.status.value,
                event.entity_type,
                event.entity_id,
                event.user_id,
            )
        return replace(event, id=event_id, created_at=created_at)

    # ------------------------------------------------------------------
    # Admin queries
    # ------------------------------------------------------------------

    def list_events(self, query: AuditQuery = AuditQuery()) -> tuple[list[AuditEvent], int]:
        """Return (events newest first, total matching) for the given filters."""
        conditions = []
        if query.user_id is not None:
            conditions.append(audit_logs.c.user_id == query.user_id)
        if query.action is not None:
            conditions.append(audit_logs.c.action == query.action.value)
        if query.entity_type:
            conditions.append(audit_logs.c.entity_type == query.entity_type)
        if query.severity is not None:
            conditions.append(audit_logs.c.severity == query.severity.value)
        if query.status is not None:
            conditions.append(audit_logs.c.status == query.status.value)
        if query.start is not None:
            conditions.append(audit_logs.c.created_at >= to_iso(query.start))
        if query.end is not None:
            conditions.append(audit_logs.c.created_at <= to_iso(query.end))
        where = and_(true(), *conditions)

        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(audit_logs).where(where)).scalar() or 0
            rows = conn.execute(
                audit_logs.select()
                .where(where)
                .order_by(desc(audit_logs.c.created_at), desc(audit_logs.c.id))
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
            ).fetchall()
        return [_row_to_event(r) for r in rows], total

    def get(self, event_id: int) -> AuditEvent | None:
        with self.engine.connect() as conn:
            row = conn.execute(audit_logs.select().where(audit_logs.c.id == event_id)).fetchone()
        return _row_to_event(row) if row is not None else None

    def stats(self, start: datetime | None = None, end: datetime | None = None) -> dict:
        """Totals plus breakdowns by action (top 10), severity and status."""
        conditions = []
        if start is not None:
            conditions.append(audit_logs.c.created_at >= to_iso(start))
        if end is not None:
            conditions.append(audit_logs.c.created_at <= to_iso(end))
        where = and_(true(), *conditions)

        def _grouped(conn, column, limit: int | None = None) -> list:
            stmt = (
                select(column, func.count().label("n"))
                .where(where)
                .group_by(column)
                .order_by(desc("n"))
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return conn.execute(stmt).fetchall()

        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(audit_logs).where(where)).scalar() or 0
            by_action = _grouped(conn, audit_logs.c.action, limit=10)
            by_severity = _grouped(conn, audit_logs.c.severity)
            by_status = _grouped(conn, audit_logs.c.status)
        return {
            "total": total,
            "by_action": [{"action": r.action, "count": r.n} for r in by_action],
            "by_severity": [{"severity": r.severity, "count": r.n} for r in by_severity],
            "by_status": [{"status": r.status, "count": r.n} for r in by_status],
        }


def _row_to_event(row) -> AuditEvent:
    # Stored metadata comes back as a plain dict; the structured detail
    # classes only exist on the write side.
    return AuditEvent(
        id=row.id,
        user_id=row.user_id,
        action=AuditAction(row.action),
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        severity=AuditSeverity(row.severity),
        status=AuditStatus(row.status),
        detail=row.metadata,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        session_id=row.session_id,
        error_detail=row.error_detail,
        created_at=from_iso(row.created_at),
    )
