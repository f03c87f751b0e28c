"""
core/database.py -- The explicitly constructed storage handle.

One Database owns one SQLAlchemy Engine. It is created once per process (by
the API lifespan, the CLI, or a test fixture) and passed into every store
constructor. There is no module-level client: anything that needs storage
receives the handle it should use, and whoever created the handle disposes
of it.

SQLite specifics (the default backend):
  check_same_thread=False -- FastAPI runs sync handlers and the session-touch
      pool on worker threads, all sharing one pool of connections.
  WAL journal mode        -- readers proceed while a writer commits.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine

logger = logging.getLogger("pmoaccess.database")


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class Database:
    """Storage handle shared by the user, session, lockout, audit and policy stores.

    Usage:
        db = Database("sqlite:///pmoaccess.db")
        sessions = SessionStore(db)
        ...
        db.close()
    """

    def __init__(self, db_url: str) -> None:
        self.url = db_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()
