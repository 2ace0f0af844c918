"""
audit/store.py -- Append-only audit log.

AuditLog exposes record() and reads only. There is no update or
delete method; entries are immutable once written.

record_from_request() pulls the originating address and User-Agent from a
Starlette Request so route handlers do not repeat that plumbing.

Audit writes from the auth flows are best-effort: a failure to record is
logged and never turns a successful login or registration into an error.
Use record() directly where the caller wants the exception.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.database import metadata, now_iso

logger = logging.getLogger("conductor.audit")

audit_log = Table(
    "audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("action", String(100), nullable=False),
    Column("detail", Text),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
)


@dataclass(frozen=True)
class AuditEntry:
    id: int
    action: str
    created_at: str
    user_id: int | None = None
    detail: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def public_view(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "detail": self.detail,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at,
        }


class AuditLog:
    def __init__(self, engine: Engine, recent_limit: int = 100) -> None:
        self.engine = engine
        self.recent_limit = recent_limit

    def record(
        self,
        action: str,
        user_id: int | None = None,
        detail: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEntry:
        """Append an entry and return it."""
        stamp = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                audit_log.insert().values(
                    user_id=user_id,
                    action=action[:100],
                    detail=detail,
                    ip_address=ip_address[:45] if ip_address else None,
                    user_agent=user_agent,
                    created_at=stamp,
                )
            )
            entry_id = result.inserted_primary_key[0]
        return AuditEntry(
            id=entry_id,
            action=action[:100],
            created_at=stamp,
            user_id=user_id,
            detail=detail,
            ip_address=ip_address[:45] if ip_address else None,
            user_agent=user_agent,
        )

    def record_from_request(self, request, action: str, user_id: int | None = None, detail: str | None = None):
        return self.record(
            action,
            user_id=user_id,
            detail=detail,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )

    def safe_record(self, action: str, **kwargs) -> None:
        """record() that logs instead of raising on a database error."""
        try:
            self.record(action, **kwargs)
        except SQLAlchemyError:
            logger.exception("Failed to write audit entry %r", action)

    def recent(self, limit: int | None = None) -> list[AuditEntry]:
        """Most recent entries, newest first."""
        limit = self.recent_limit if limit is None else limit
        with self.engine.connect() as conn:
            rows = conn.execute(
                audit_log.select().order_by(audit_log.c.created_at.desc(), audit_log.c.id.desc()).limit(limit)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        action=row.action,
        created_at=row.created_at,
        user_id=row.user_id,
        detail=row.detail,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )
