"""
auth/permissions.py -- Closed vocabularies for roles, permissions and status.

Role is organizational (job title) and never consulted for access decisions.
Permission is the access tier. The ladder order below exists only so an
administrator can step a user one rung up or down; authorization checks use
exact set membership (see auth.dependencies.require_permissions) and never
compare ladder levels.

parse_role / parse_permission / parse_status are total: every string either
maps to a member or raises ValidationError. Nothing silently falls back to a
default value.

Layer rule: may import from core/ only.
"""

from __future__ import annotations

from enum import Enum

from core.errors import Forbidden, ValidationError


class Role(str, Enum):
    INTERN = "Intern"
    MANAGER = "Manager"
    ANALYST = "Analyst"
    COORDINATOR = "Coordinator"
    DIRECTOR = "Director"


class Permission(str, Enum):
    VISITOR = "Visitor"
    USER = "User"
    OPERATOR = "Operator"
    ADMINISTRATOR = "Administrator"
    DEVELOPER = "Developer"

    @property
    def level(self) -> int:
        return _LADDER.index(self)

    def promote(self) -> "Permission":
        """Return the next rung up. Raises ValidationError at the top."""
        if self.level == len(_LADDER) - 1:
            raise ValidationError(f"{self.value} is already the highest permission.")
        return _LADDER[self.level + 1]

    def demote(self) -> "Permission":
        """Return the next rung down. Raises ValidationError at the bottom."""
        if self.level == 0:
            raise ValidationError(f"{self.value} is already the lowest permission.")
        return _LADDER[self.level - 1]


_LADDER: tuple[Permission, ...] = (
    Permission.VISITOR,
    Permission.USER,
    Permission.OPERATOR,
    Permission.ADMINISTRATOR,
    Permission.DEVELOPER,
)

# Access keys may grant anything except the public default.
GRANTABLE_PERMISSIONS: frozenset[Permission] = frozenset(_LADDER) - {Permission.VISITOR}

# Who may assign each permission, to an account or through an access key.
# Exact sets, not a ladder rule.
GRANTORS: dict[Permission, frozenset[Permission]] = {
    Permission.VISITOR: frozenset({Permission.ADMINISTRATOR, Permission.DEVELOPER}),
    Permission.USER: frozenset({Permission.ADMINISTRATOR, Permission.DEVELOPER}),
    Permission.OPERATOR: frozenset({Permission.ADMINISTRATOR, Permission.DEVELOPER}),
    Permission.ADMINISTRATOR: frozenset({Permission.ADMINISTRATOR, Permission.DEVELOPER}),
    Permission.DEVELOPER: frozenset({Permission.DEVELOPER}),
}

# Permission sets used by route guards
ADMINS: frozenset[Permission] = frozenset({Permission.ADMINISTRATOR, Permission.DEVELOPER})
DEVELOPERS: frozenset[Permission] = frozenset({Permission.DEVELOPER})


class UserStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    BLOCKED = "Blocked"


def _parse(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required.")
    needle = value.strip().casefold()
    for member in enum_cls:
        if member.value.casefold() == needle or member.name.casefold() == needle:
            return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise ValidationError(f"Unknown {label.lower()} {value!r}.", detail=f"Expected one of: {allowed}")


def parse_role(value) -> Role:
    return _parse(Role, value, "Role")


def parse_permission(value) -> Permission:
    return _parse(Permission, value, "Permission")


def parse_status(value) -> UserStatus:
    return _parse(UserStatus, value, "Status")


def ensure_can_grant(grantor: Permission, permission: Permission) -> None:
    """Raise Forbidden unless `grantor` may assign `permission` (see GRANTORS)."""
    if grantor not in GRANTORS[permission]:
        raise Forbidden(f"{grantor.value} cannot assign {permission.value} permission.")
