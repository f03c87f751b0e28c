"""
auth/schema.py -- SQLAlchemy Core table definitions for the access-control core.

All four entity tables plus the single-row security_settings table share one
MetaData so any store can call create_schema() on startup; create_all is
idempotent (checkfirst) so every store does it without coordination.

Timestamps are TEXT in fixed-width ISO 8601 (core/clock.py) so that range
filters are plain string comparisons.

Indexes follow the hot queries:
  login_attempts(email, success, created_at) -- lockout window count
  user_sessions(user_id)                     -- terminate_all / list_for_user
  audit_logs(created_at), audit_logs(user_id, action) -- admin filters

Layer rule: no imports from api/.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-cased
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("role", String(30), nullable=False, server_default="TEAM_MEMBER"),
    Column("status", String(20), nullable=False, server_default="ACTIVE"),
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

login_attempts = Table(
    "login_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("success", Boolean, nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("fail_reason", String(255)),  # NULL on success
    Column("created_at", String(32), nullable=False),
    Index("ix_login_attempts_email_window", "email", "success", "created_at"),
)

user_sessions = Table(
    "user_sessions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("last_active", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),  # NULL for system-initiated events
    Column("action", String(50), nullable=False),
    Column("entity_type", String(50)),
    Column("entity_id", String(64)),
    Column("severity", String(10), nullable=False, server_default="INFO"),
    Column("status", String(10), nullable=False, server_default="SUCCESS"),
    Column("metadata", JSON),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("session_id", String(64)),
    Column("error_detail", Text),
    Column("created_at", String(32), nullable=False),
    Index("ix_audit_logs_created_at", "created_at"),
    Index("ix_audit_logs_user_action", "user_id", "action"),
)

# Single-row table: the CHECK constraint enforces the invariant at the DB level.
security_settings = Table(
    "security_settings",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("max_login_attempts", Integer, nullable=False),
    Column("lockout_duration_minutes", Integer, nullable=False),
    Column("session_lifetime_minutes", Integer, nullable=False),
    Column("session_inactivity_minutes", Integer, nullable=False),
    Column("password_min_length", Integer, nullable=False),
    Column("password_require_uppercase", Boolean, nullable=False),
    Column("password_require_number", Boolean, nullable=False),
    Column("password_require_special", Boolean, nullable=False),
    Column("updated_at", String(32)),
    Column("updated_by", Integer),
    CheckConstraint("id = 1", name="ck_security_settings_single_row"),
)


def create_schema(engine: Engine) -> None:
    metadata.create_all(engine)
