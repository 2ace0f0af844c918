"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Stores build these
from rows; services and routes read them. The password hash and the recovery
token live on User but are never part of public_view().

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from auth.permissions import Permission, Role, UserStatus


@dataclass
class User:
    """A portal account.

    password_hash is an argon2id PHC string (or a legacy bcrypt hash awaiting
    rehash on the next successful login). reset_token / reset_token_expires
    back the password-recovery flow and, like the hash, are never serialized.
    """

    username: str
    email: str
    role: Role
    permission: Permission
    password_hash: str
    id: int | None = None
    status: UserStatus = UserStatus.ACTIVE
    phone: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None
    reset_token: str | None = None
    reset_token_expires: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status is UserStatus.ACTIVE

    def public_view(self) -> dict:
        """Return the redacted representation safe to send to clients."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role.value,
            "permission": self.permission.value,
            "status": self.status.value,
            "phone": self.phone,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_login": self.last_login,
        }


@dataclass(frozen=True)
class Claims:
    """Verified content of a bearer token."""

    user_id: int
    username: str
    permission: Permission
    role: Role
    issued_at: datetime
    expires_at: datetime

    def as_dict(self) -> dict:
        return {
            "id": self.user_id,
            "username": self.username,
            "permission": self.permission.value,
            "role": self.role.value,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class TokenValidation:
    """Result of AuthService.validate_token(). reason is set only when invalid."""

    valid: bool
    claims: Claims | None = None
    reason: str | None = None


@dataclass(frozen=True)
class LoginResult:
    token: str
    expires_in: int
    user: User


@dataclass(frozen=True)
class RegistrationResult:
    user: User
    policy: str  # "first_user", "access_key", "public"

    @property
    def message(self) -> str:
        if self.policy == "first_user":
            return "First user created with Developer permission."
        if self.policy == "access_key":
            return f"User registered with {self.user.permission.value} permission."
        return "User registered with Visitor permission."
