"""
keys/models.py -- Domain dataclass and vocabularies for access keys.

An access key is an invite credential: presenting a valid one at registration
grants the key's permission instead of the public Visitor default.

Lifecycle:
  permanent   -- usable until an administrator deactivates it or max_uses is hit.
  expiring    -- like permanent, but unusable once now >= expires_at.
  single_use  -- max_uses is forced to 1; the first registration marks it used.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from auth.permissions import Permission
from core.database import from_iso


class KeyType(str, Enum):
    PERMANENT = "permanent"
    EXPIRING = "expiring"
    SINGLE_USE = "single_use"


class KeyStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    USED = "used"
    EXPIRED = "expired"


@dataclass
class AccessKey:
    code: str
    key_type: KeyType
    permission: Permission
    id: int | None = None
    status: KeyStatus = KeyStatus.ACTIVE
    expires_at: str | None = None  # ISO 8601 UTC
    use_count: int = 0
    max_uses: int | None = None
    description: str | None = None
    created_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def rejection_reason(self, now: datetime) -> str | None:
        """Return why this key cannot be consumed at `now`, or None if it can.

        Order matters: a stored status wins over the computed checks so an
        administrator's deactivation is reported as "inactive" even when the
        key is also past its expiry.
        """
        if self.status is KeyStatus.INACTIVE:
            return "inactive"
        if self.status is KeyStatus.EXPIRED:
            return "expired"
        if self.status is KeyStatus.USED:
            return "exhausted"
        expires = from_iso(self.expires_at)
        if self.key_type is KeyType.EXPIRING and expires is not None and now >= expires:
            return "expired"
        if self.max_uses is not None and self.use_count >= self.max_uses:
            return "exhausted"
        return None

    def computed_status(self, now: datetime) -> KeyStatus:
        """Status this key should have at `now` (only active keys can flip)."""
        if self.status is not KeyStatus.ACTIVE:
            return self.status
        reason = self.rejection_reason(now)
        if reason == "expired":
            return KeyStatus.EXPIRED
        if reason == "exhausted":
            return KeyStatus.USED
        return KeyStatus.ACTIVE

    def public_view(self) -> dict:
        return {
            "id": self.id,
            "key": self.code,
            "type": self.key_type.value,
            "permission": self.permission.value,
            "status": self.status.value,
            "expires_at": self.expires_at,
            "use_count": self.use_count,
            "max_uses": self.max_uses,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
