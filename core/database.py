"""
core/database.py -- Shared SQLAlchemy engine and schema metadata.

Every store (users, access keys, audit log) registers its Table on the single
`metadata` object defined here, so one create_all() call builds the whole
schema and one Engine is shared across stores. Sharing the engine is what lets
AuthService.register() run the key consumption and the user insert inside one
transaction.

SQLite specifics:
  check_same_thread=False -- FastAPI runs sync handlers in a thread pool, so a
      pooled connection may be used by a different thread than created it.
  WAL mode -- readers proceed without blocking during writes. Set per
      connection because SQLite PRAGMAs are not inherited from the pool.
  busy_timeout -- concurrent writers wait instead of failing immediately with
      "database is locked".

Layer rule: core/ is the kernel. No imports from api/, auth/, keys/, or audit/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import MetaData, create_engine, event, text
from sqlalchemy.engine import Engine

metadata = MetaData()


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new SQLite connection."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA busy_timeout=5000")


def make_engine(db_url: str) -> Engine:
    """Create an Engine for db_url and make sure every table exists.

    Table definitions live in the store modules. Importing them here registers
    them on `metadata` before create_all() runs, whatever order callers
    imported things in.
    """
    import audit.store  # noqa: F401
    import auth.store  # noqa: F401
    import keys.store  # noqa: F401

    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


def ping(engine: Engine) -> bool:
    """Return True if a trivial query succeeds. Used by the health endpoint."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


# ---------------------------------------------------------------------------
# Timestamp helpers
#
# Timestamps are stored as ISO 8601 UTC strings in String(32) columns. A fixed
# microsecond precision keeps lexical order identical to chronological order,
# which the conditional UPDATE in AccessKeyStore.consume() relies on.
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def now_iso() -> str:
    return to_iso(utcnow())


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
