"""
auth/users.py -- SQLAlchemy Core persistence for identities and credentials.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is case-insensitive: every write and every lookup goes
  through normalize_email(), so the plain UNIQUE(email) constraint covers
  "Alice@X.com" and "alice@x.com" as the same account.

  Users are never deleted by this store. Account removal is a status change
  (INACTIVE / SUSPENDED) so audit rows keep a valid actor.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from sqlalchemy import func, select

from auth.models import AccountStatus, Role, User
from auth.schema import create_schema, users
from core.clock import Clock, to_iso, utcnow
from core.database import Database


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore(db)
        uid = store.create_user(User(email="a@x.com", hashed_password=hash_password("secret")))
        user = store.get_by_email("A@X.com")
    """

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.engine = db.engine
        self._clock = clock
        create_schema(self.engine)

    def has_users(self) -> bool:
        """Return True if at least one user record exists."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the (normalized) email already
        exists. The service layer turns that into EmailAlreadyRegistered.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                users.insert().values(
                    email=normalize_email(user.email),
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=user.role.value,
                    status=user.status.value,
                    created_at=to_iso(self._clock()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup by email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(users.select().order_by(users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_password(self, user_id: int, hashed_password: str) -> bool:
        """Replace the stored hash. Returns False if user_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(hashed_password=hashed_password))
            conn.commit()
        return result.rowcount > 0

    def set_status(self, user_id: int, status: AccountStatus) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(status=status.value))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login_at for the given user."""
        with self.engine.connect() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login_at=to_iso(self._clock())))
            conn.commit()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        role=Role(row.role),
        status=AccountStatus(row.status),
        created_at=row.created_at,
        last_login_at=row.last_login_at,
    )
