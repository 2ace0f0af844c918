"""
keys/store.py -- SQLAlchemy Core persistence and lifecycle rules for access keys.

Pattern: Repository + Data Mapper, with the lifecycle rules kept next to the
data they guard.

Consumption [K1]:
  consume() is one conditional UPDATE. The WHERE clause re-states every
  validity condition (active, not exhausted, not expired) and the SET clause
  increments use_count and flips status to "used" when the last use is taken.
  Zero affected rows means the key was not consumable at that instant, so two
  concurrent registrations can never both spend a single-use key.

Status refresh [K2]:
  Expiry and exhaustion are also evaluated lazily on read. Any active key
  found past its expiry (or at its use cap) is persisted with the new status
  before it is returned, so listings never show a stale "active".

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, String, Table, Text, and_, case, func, or_, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.permissions import GRANTABLE_PERMISSIONS, Permission
from core.database import as_utc, from_iso, metadata, to_iso, utcnow
from core.errors import Conflict, NotFound, ValidationError
from keys.models import AccessKey, KeyStatus, KeyType

logger = logging.getLogger("conductor.keys")

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_CODE_LENGTH = 16
_CODE_ATTEMPTS = 10

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

access_keys = Table(
    "access_keys",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(100), nullable=False, unique=True),
    Column("key_type", String(20), nullable=False),
    Column("permission", String(20), nullable=False),
    Column("status", String(20), nullable=False, server_default=KeyStatus.ACTIVE.value),
    Column("expires_at", String(32)),
    Column("use_count", Integer, nullable=False, server_default="0"),
    Column("max_uses", Integer),
    Column("description", Text),
    Column("created_by", String(100)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


def generate_code() -> str:
    """Return a random 16-character A-Z0-9 key code."""
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(_CODE_LENGTH))


@contextmanager
def _transaction(engine: Engine, conn: Connection | None):
    if conn is not None:
        yield conn
    else:
        with engine.begin() as own:
            yield own


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccessKeyStore:
    """Repository for AccessKey entities.

    Usage:
        store = AccessKeyStore(engine)
        key = store.create(KeyType.SINGLE_USE, Permission.OPERATOR, created_by="ana")
        key, reason = store.check(key.code)   # reason is None when usable
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        key_type: KeyType,
        permission: Permission,
        code: str | None = None,
        expires_at: datetime | None = None,
        max_uses: int | None = None,
        description: str | None = None,
        created_by: str | None = None,
    ) -> AccessKey:
        """Insert a new active key and return it.

        A missing code is generated. Generated codes are retried on collision;
        a caller-supplied code that collides raises Conflict.
        """
        if permission not in GRANTABLE_PERMISSIONS:
            raise ValidationError(f"Access keys cannot grant {permission.value}.")
        now = self._clock()
        expires_at = as_utc(expires_at)
        if key_type is KeyType.EXPIRING:
            if expires_at is None:
                raise ValidationError("An expiry date is required for expiring keys.")
            if expires_at <= now:
                raise ValidationError("Expiry date must be in the future.")
        else:
            expires_at = None
        if key_type is KeyType.SINGLE_USE:
            max_uses = 1
        if max_uses is not None and max_uses < 1:
            raise ValidationError("max_uses must be at least 1.")

        supplied = bool(code and code.strip())
        attempts = 1 if supplied else _CODE_ATTEMPTS
        stamp = to_iso(now)
        for _ in range(attempts):
            candidate = code.strip() if supplied else generate_code()
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(
                        access_keys.insert().values(
                            code=candidate,
                            key_type=key_type.value,
                            permission=permission.value,
                            status=KeyStatus.ACTIVE.value,
                            expires_at=to_iso(expires_at) if expires_at else None,
                            use_count=0,
                            max_uses=max_uses,
                            description=description,
                            created_by=created_by,
                            created_at=stamp,
                            updated_at=stamp,
                        )
                    )
                    key_id = result.inserted_primary_key[0]
            except IntegrityError:
                if supplied:
                    raise Conflict("An access key with that code already exists.") from None
                logger.info("Generated key code collided, retrying")
                continue
            return self._get_raw(key_id)
        raise Conflict("Could not generate a unique key code.")

    # ------------------------------------------------------------------
    # Reads (all refresh status first [K2])
    # ------------------------------------------------------------------

    def get(self, key_id: int) -> AccessKey | None:
        key = self._get_raw(key_id)
        return self._refresh(key) if key is not None else None

    def get_by_code(self, code: str, conn: Connection | None = None) -> AccessKey | None:
        with _transaction(self.engine, conn) as c:
            row = c.execute(access_keys.select().where(access_keys.c.code == code)).fetchone()
        if row is None:
            return None
        return self._refresh(_row_to_key(row), conn)

    def list_keys(
        self,
        status: KeyStatus | None = None,
        key_type: KeyType | None = None,
    ) -> list[AccessKey]:
        """Return keys newest first. Filters apply after the status refresh."""
        self.refresh_statuses()
        query = access_keys.select()
        if status is not None:
            query = query.where(access_keys.c.status == status.value)
        if key_type is not None:
            query = query.where(access_keys.c.key_type == key_type.value)
        query = query.order_by(access_keys.c.created_at.desc(), access_keys.c.id.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_key(r) for r in rows]

    def expiring_soon(self, days: int = 7) -> list[AccessKey]:
        """Active expiring keys whose expiry falls within the next `days` days."""
        now = self._clock()
        self.refresh_statuses()
        with self.engine.connect() as conn:
            rows = conn.execute(
                access_keys.select()
                .where(
                    (access_keys.c.status == KeyStatus.ACTIVE.value)
                    & (access_keys.c.key_type == KeyType.EXPIRING.value)
                    & (access_keys.c.expires_at <= to_iso(now + timedelta(days=days)))
                )
                .order_by(access_keys.c.expires_at)
            ).fetchall()
        return [_row_to_key(r) for r in rows]

    def stats(self) -> dict:
        keys = self.list_keys()
        return {
            "total": len(keys),
            "by_status": {s.value: sum(1 for k in keys if k.status is s) for s in KeyStatus},
            "by_type": {t.value: sum(1 for k in keys if k.key_type is t) for t in KeyType},
            "by_permission": {
                p.value: sum(1 for k in keys if k.permission is p)
                for p in sorted(GRANTABLE_PERMISSIONS, key=lambda p: p.level)
            },
        }

    # ------------------------------------------------------------------
    # Validation and consumption
    # ------------------------------------------------------------------

    def check(self, code: str, conn: Connection | None = None) -> tuple[AccessKey | None, str | None]:
        """Return (key, reason). reason is None when the key could be consumed now.

        Nothing is consumed. Observing an expired key persists status=expired.
        """
        key = self.get_by_code(code, conn)
        if key is None:
            return None, "not_found"
        return key, key.rejection_reason(self._clock())

    def consume(self, key_id: int, conn: Connection | None = None) -> bool:
        """Atomically take one use of the key [K1]. Returns False if it was not consumable."""
        stamp = to_iso(self._clock())
        c = access_keys.c
        stmt = (
            access_keys.update()
            .where(
                (c.id == key_id)
                & (c.status == KeyStatus.ACTIVE.value)
                & or_(c.max_uses.is_(None), c.use_count < c.max_uses)
                & or_(c.key_type != KeyType.EXPIRING.value, c.expires_at.is_(None), c.expires_at > stamp)
            )
            .values(
                use_count=c.use_count + 1,
                status=case(
                    (and_(c.max_uses.is_not(None), c.use_count + 1 >= c.max_uses), KeyStatus.USED.value),
                    else_=c.status,
                ),
                updated_at=stamp,
            )
        )
        with _transaction(self.engine, conn) as tx:
            result = tx.execute(stmt)
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    def update(
        self,
        key_id: int,
        status: KeyStatus | None = None,
        expires_at: datetime | None = None,
        max_uses: int | None = None,
        description: str | None = None,
    ) -> AccessKey:
        """Apply administrative changes. Type and granted permission are immutable."""
        key = self.get(key_id)
        if key is None:
            raise NotFound("Access key not found.")
        now = self._clock()
        values: dict = {}
        expires_at = as_utc(expires_at)

        if expires_at is not None:
            if key.key_type is not KeyType.EXPIRING:
                raise ValidationError("Only expiring keys have an expiry date.")
            if expires_at <= now:
                raise ValidationError("New expiry date must be in the future.")
            values["expires_at"] = to_iso(expires_at)

        if max_uses is not None:
            if key.key_type is KeyType.SINGLE_USE:
                raise ValidationError("Single-use keys always allow exactly one use.")
            if max_uses < max(1, key.use_count):
                raise ValidationError("max_uses cannot be lower than the current use count.")
            values["max_uses"] = max_uses

        if description is not None:
            values["description"] = description

        if status is not None:
            if status is KeyStatus.ACTIVE and key.status is not KeyStatus.ACTIVE:
                if key.key_type is KeyType.SINGLE_USE and key.use_count > 0:
                    raise ValidationError("A used single-use key cannot be reactivated.")
                effective_expiry = from_iso(values.get("expires_at") or key.expires_at)
                if key.key_type is KeyType.EXPIRING and effective_expiry is not None and effective_expiry <= now:
                    raise ValidationError("An expired key cannot be reactivated.")
                effective_max = values.get("max_uses", key.max_uses)
                if effective_max is not None and key.use_count >= effective_max:
                    raise ValidationError("A key with no uses left cannot be reactivated.")
            values["status"] = status.value

        # Extending an expired key's deadline does not revive it; status must be set explicitly.
        if not values:
            raise ValidationError("No fields to update.")
        values["updated_at"] = to_iso(now)
        with self.engine.begin() as conn:
            conn.execute(access_keys.update().where(access_keys.c.id == key_id).values(**values))
        return self.get(key_id)

    def delete(self, key_id: int) -> None:
        """Permanently delete a key. Active keys must be deactivated first."""
        key = self.get(key_id)
        if key is None:
            raise NotFound("Access key not found.")
        if key.status is KeyStatus.ACTIVE:
            raise ValidationError("An active key cannot be deleted. Deactivate it first.")
        with self.engine.begin() as conn:
            conn.execute(access_keys.delete().where(access_keys.c.id == key_id))

    def refresh_statuses(self) -> int:
        """Persist expired/used status for every active key that has lapsed. Returns rows changed."""
        stamp = to_iso(self._clock())
        c = access_keys.c
        with self.engine.begin() as conn:
            expired = conn.execute(
                access_keys.update()
                .where(
                    (c.status == KeyStatus.ACTIVE.value)
                    & (c.key_type == KeyType.EXPIRING.value)
                    & c.expires_at.is_not(None)
                    & (c.expires_at <= stamp)
                )
                .values(status=KeyStatus.EXPIRED.value, updated_at=stamp)
            ).rowcount
            used = conn.execute(
                access_keys.update()
                .where(
                    (c.status == KeyStatus.ACTIVE.value) & c.max_uses.is_not(None) & (c.use_count >= c.max_uses)
                )
                .values(status=KeyStatus.USED.value, updated_at=stamp)
            ).rowcount
        if expired or used:
            logger.info("Key status refresh: %d expired, %d used", expired, used)
        return expired + used

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_raw(self, key_id: int) -> AccessKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(access_keys.select().where(access_keys.c.id == key_id)).fetchone()
        return _row_to_key(row) if row is not None else None

    def _refresh(self, key: AccessKey, conn: Connection | None = None) -> AccessKey:
        new_status = key.computed_status(self._clock())
        if new_status is key.status:
            return key
        stamp = to_iso(self._clock())
        with _transaction(self.engine, conn) as c:
            c.execute(
                access_keys.update()
                .where((access_keys.c.id == key.id) & (access_keys.c.status == KeyStatus.ACTIVE.value))
                .values(status=new_status.value, updated_at=stamp)
            )
        logger.info("Access key %d marked %s", key.id, new_status.value)
        key.status = new_status
        key.updated_at = stamp
        return key


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_key(row) -> AccessKey:
    return AccessKey(
        id=row.id,
        code=row.code,
        key_type=KeyType(row.key_type),
        permission=Permission(row.permission),
        status=KeyStatus(row.status),
        expires_at=row.expires_at,
        use_count=row.use_count,
        max_uses=row.max_uses,
        description=row.description,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
