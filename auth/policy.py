"""
auth/policy.py -- Live security policy backed by the single-row security_settings table.

The policy is read at decision time: the login flow, the request gate and
the cleanup loop each call get_policy() for every decision, so an admin
update applies to the next decision and never re-evaluates sessions that were
already created (a new session lifetime only affects sessions created after
the change).

Seed values come from core.config.Settings and are written once, when the row
does not exist yet. The CHECK (id = 1) constraint keeps the table single-row.

update() only accepts keys in _POLICY_KEYS -- unknown keys raise ValueError
rather than being silently ignored.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, fields

from sqlalchemy.exc import IntegrityError

from auth.models import SecurityPolicy
from auth.schema import create_schema, security_settings
from core.clock import Clock, to_iso, utcnow
from core.database import Database

logger = logging.getLogger("pmoaccess.auth.policy")

_POLICY_KEYS = frozenset(f.name for f in fields(SecurityPolicy))


def validate_password(password: str, policy: SecurityPolicy) -> list[str]:
    """Return a list of human-readable violations; empty means the password is acceptable."""
    errors: list[str] = []
    if len(password) < policy.password_min_length:
        errors.append(f"Password must be at least {policy.password_min_length} characters")
    if policy.password_require_uppercase and not any(c.isupper() for c in password):
        errors.append("Password must contain at least one uppercase letter")
    if policy.password_require_number and not any(c.isdigit() for c in password):
        errors.append("Password must contain at least one number")
    if policy.password_require_special and not any(not c.isalnum() and not c.isspace() for c in password):
        errors.append("Password must contain at least one special character")
    return errors


class PolicyStore:
    """Reads and updates the live SecurityPolicy."""

    def __init__(self, db: Database, defaults: SecurityPolicy | None = None, clock: Clock = utcnow) -> None:
        self.engine = db.engine
        self._clock = clock
        create_schema(self.engine)
        self._ensure_row(defaults or SecurityPolicy())

    def _ensure_row(self, defaults: SecurityPolicy) -> None:
        """Seed the single row if missing. Safe to call on every startup and from concurrent processes."""
        with self.engine.connect() as conn:
            exists = conn.execute(security_settings.select().where(security_settings.c.id == 1)).fetchone()
            if exists is not None:
                return
            try:
                conn.execute(security_settings.insert().values(id=1, **asdict(defaults)))
                conn.commit()
                logger.info("Initialized default security policy")
            except IntegrityError:
                # Another process seeded it first.
                conn.rollback()

    def get_policy(self) -> SecurityPolicy:
        with self.engine.connect() as conn:
            row = conn.execute(security_settings.select().where(security_settings.c.id == 1)).fetchone()
        if row is None:
            # Should never happen; _ensure_row() seeds this row.
            return SecurityPolicy()
        return SecurityPolicy(**{key: row._mapping[key] for key in _POLICY_KEYS})

    def update(self, updated_by: int | None = None, **changes) -> SecurityPolicy:
        """Apply changes and return the resulting policy.

        Raises ValueError on unknown keys or non-positive numeric limits.
        """
        unknown = set(changes) - _POLICY_KEYS
        if unknown:
            raise ValueError(f"Unknown security policy keys: {sorted(unknown)!r}")
        for key, value in changes.items():
            if isinstance(value, int) and not isinstance(value, bool) and value < 1:
                raise ValueError(f"{key} must be a positive integer")
        if changes:
            with self.engine.connect() as conn:
                conn.execute(
                    security_settings.update()
                    .where(security_settings.c.id == 1)
                    .values(updated_at=to_iso(self._clock()), updated_by=updated_by, **changes)
                )
                conn.commit()
        return self.get_policy()
