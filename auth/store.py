"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. Services and routes
never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  UNIQUE(username) and UNIQUE(email) are database constraints. The service
  layer pre-checks for a friendlier error, but the constraint is what decides
  a race between two concurrent registrations.

Transactions:
  Write methods accept an optional `conn`. When given, the statement joins the
  caller's transaction and nothing is committed here. Otherwise each call runs
  in its own engine.begin() block.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import Column, Integer, String, Table, Text, func, literal, or_, select, text
from sqlalchemy.engine import Connection, Engine

from auth.models import User
from auth.permissions import Permission, Role, UserStatus
from core.database import metadata, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(100), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(20), nullable=False),
    Column("permission", String(20), nullable=False, server_default=Permission.VISITOR.value),
    Column("status", String(20), nullable=False, server_default=UserStatus.ACTIVE.value),
    Column("phone", String(20)),
    Column("reset_token", String(255)),
    Column("reset_token_expires", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

# Columns update_user() will write. Anything else is a programming error.
_MUTABLE_FIELDS = frozenset(
    {"username", "email", "password_hash", "role", "permission", "status", "phone", "reset_token", "reset_token_expires"}
)


@contextmanager
def _transaction(engine: Engine, conn: Connection | None):
    if conn is not None:
        yield conn
    else:
        with engine.begin() as own:
            yield own


def _db_value(value):
    # Enum members are stored by value
    return value.value if isinstance(value, (Role, Permission, UserStatus)) else value


def _insert_values(user: User) -> dict:
    stamp = now_iso()
    return {
        "username": user.username,
        "email": user.email,
        "password_hash": user.password_hash,
        "role": user.role.value,
        "permission": user.permission.value,
        "status": user.status.value,
        "phone": user.phone,
        "created_at": stamp,
        "updated_at": stamp,
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore(engine)
        uid = store.create_user(User(username="ana", email="ana@example.com", ...))
        user = store.get_by_username("ana")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(users)).scalar() or 0

    def has_users(self) -> bool:
        """Return True if at least one account exists (first-user bootstrap probe)."""
        return self.count() > 0

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Exact, case-sensitive lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(
        self,
        search: str | None = None,
        permission: Permission | None = None,
        status: UserStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[User]:
        """Return users ordered by newest first, optionally filtered.

        search matches a substring of username or email.
        """
        query = users.select()
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(users.c.username.like(pattern), users.c.email.like(pattern)))
        if permission is not None:
            query = query.where(users.c.permission == permission.value)
        if status is not None:
            query = query.where(users.c.status == status.value)
        query = query.order_by(users.c.created_at.desc(), users.c.id.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_active(self, permission: Permission) -> int:
        """Number of Active accounts holding exactly `permission`."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(users)
                .where((users.c.permission == permission.value) & (users.c.status == UserStatus.ACTIVE.value))
            ).scalar()
        return result or 0

    def stats(self) -> dict:
        """Return {"total", "by_status", "by_permission"} counts."""
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(users)).scalar() or 0
            by_status = conn.execute(select(users.c.status, func.count()).group_by(users.c.status)).fetchall()
            by_permission = conn.execute(
                select(users.c.permission, func.count()).group_by(users.c.permission)
            ).fetchall()
        return {
            "total": total,
            "by_status": {s.value: 0 for s in UserStatus} | {row[0]: row[1] for row in by_status},
            "by_permission": {p.value: 0 for p in Permission} | {row[0]: row[1] for row in by_permission},
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User, conn: Connection | None = None) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. The service maps that to DuplicateUsername / DuplicateEmail.
        """
        with _transaction(self.engine, conn) as c:
            result = c.execute(users.insert().values(**_insert_values(user)))
            return result.inserted_primary_key[0]

    def create_first_user(self, user: User, conn: Connection | None = None) -> int | None:
        """Insert `user` only if the table is empty; return its ID, or None.

        The emptiness test and the insert are one INSERT ... SELECT ... WHERE
        NOT EXISTS statement. SQLite takes the database write lock before the
        statement reads, so two concurrent callers cannot both see an empty
        table. On PostgreSQL the table is locked against concurrent writers
        first, since READ COMMITTED alone would let both subqueries pass.
        After a None return the caller's transaction still holds that lock.
        """
        values = _insert_values(user)
        columns = list(values)
        row = select(*[literal(values[name], users.c[name].type) for name in columns]).where(
            ~select(users.c.id).correlate(None).exists()
        )
        with _transaction(self.engine, conn) as c:
            if c.dialect.name == "postgresql":
                c.execute(text("LOCK TABLE users IN SHARE ROW EXCLUSIVE MODE"))
            result = c.execute(users.insert().from_select(columns, row))
            if result.rowcount != 1:
                return None
            return c.execute(select(users.c.id).where(users.c.username == user.username)).scalar_one()

    def update_user(self, user_id: int, conn: Connection | None = None, **fields) -> bool:
        """Update mutable fields on an existing user.

        Returns True if a row was updated, False if user_id was not found.
        Raises ValueError for a field outside the mutable set and
        IntegrityError if a new username/email collides.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        values = {k: _db_value(v) for k, v in fields.items()}
        values["updated_at"] = now_iso()
        with _transaction(self.engine, conn) as c:
            result = c.execute(users.update().where(users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def set_status(self, user_id: int, status: UserStatus) -> bool:
        return self.update_user(user_id, status=status)

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC time as last_login. updated_at is left alone."""
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login=now_iso()))


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        role=Role(row.role),
        permission=Permission(row.permission),
        status=UserStatus(row.status),
        phone=row.phone,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
        reset_token=row.reset_token,
        reset_token_expires=row.reset_token_expires,
    )
