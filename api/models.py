"""
API request and response models for Conductor REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/, keys/ and
audit/, which own the internal domain representation. Route handlers map
between the two with the from_* factory methods below.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from audit.store import AuditEntry
from auth.models import Claims, User
from auth.permissions import Permission, Role, UserStatus
from keys.models import AccessKey, KeyStatus, KeyType

# Trimmed on input. Usernames and passwords are stored exactly as typed.
EmailField = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=3, max_length=100, pattern=r"^[^@\s]+@[^@\s]+$")
]
RoleField = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=20)]
PhoneField = Annotated[str, StringConstraints(strip_whitespace=True, max_length=20)]

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of an account. Never includes the password hash or recovery fields."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: Role
    permission: Permission
    status: UserStatus
    phone: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**user.public_view())


class UserCreate(BaseModel):
    """Request body for POST /api/users (administrator-created account)."""

    username: str = Field(min_length=1, max_length=50)
    email: EmailField
    role: RoleField
    password: str = Field(min_length=6, max_length=255)
    permission: Permission = Permission.VISITOR
    status: UserStatus = UserStatus.ACTIVE
    phone: Optional[PhoneField] = None


class UserUpdate(BaseModel):
    """Request body for PUT /api/users/{id}.

    Permission is not accepted here; it changes only through
    PUT /users/{id}/permission or promote/demote.
    """

    model_config = ConfigDict(extra="forbid")

    username: Optional[str] = Field(default=None, min_length=1, max_length=50)
    email: Optional[EmailField] = None
    role: Optional[RoleField] = None
    status: Optional[UserStatus] = None
    phone: Optional[PhoneField] = None


class PermissionUpdate(BaseModel):
    permission: Permission


class PasswordReset(BaseModel):
    password: str = Field(min_length=6, max_length=255)


class UserStatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    by_status: dict[str, int]
    by_permission: dict[str, int]


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login."""

    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=255)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class RegisterRequest(BaseModel):
    """Request body for POST /api/auth/register.

    accessKey is optional; a blank value counts as absent.
    """

    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(min_length=1, max_length=50)
    email: EmailField
    role: RoleField
    password: str = Field(min_length=6, max_length=255)
    access_key: Optional[Annotated[str, StringConstraints(strip_whitespace=True, max_length=100)]] = Field(
        default=None, alias="accessKey"
    )
    phone: Optional[PhoneField] = None


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse


class ClaimsResponse(BaseModel):
    """The authenticated caller's verified token claims."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    permission: Permission
    role: Role
    issued_at: str
    expires_at: str

    @classmethod
    def from_claims(cls, claims: Claims) -> "ClaimsResponse":
        return cls(**claims.as_dict())


class ValidateTokenRequest(BaseModel):
    token: str = Field(min_length=1)


class ValidateTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    user: Optional[ClaimsResponse] = None
    reason: Optional[str] = None


class FirstUserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_first_user: bool
    message: str


class CheckKeyRequest(BaseModel):
    key: str = Field(min_length=1, max_length=100)


class CheckKeyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    permission: Optional[Permission] = None
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Access keys
# ---------------------------------------------------------------------------


class AccessKeyCreate(BaseModel):
    """Request body for POST /api/chaves. key is generated when omitted."""

    model_config = ConfigDict(str_strip_whitespace=True)

    key: Optional[str] = Field(default=None, max_length=100)
    type: KeyType
    permission: Permission
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = Field(default=None, max_length=500)


class AccessKeyUpdate(BaseModel):
    """Request body for PUT /api/chaves/{id}. Type and permission are immutable."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    status: Optional[KeyStatus] = None
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = Field(default=None, max_length=500)


class AccessKeyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    key: str
    type: KeyType
    permission: Permission
    status: KeyStatus
    expires_at: Optional[str] = None
    use_count: int
    max_uses: Optional[int] = None
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_key(cls, key: AccessKey) -> "AccessKeyResponse":
        return cls(**key.public_view())


class AccessKeyStatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    by_permission: dict[str, int]


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class LogCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    action: str = Field(min_length=1, max_length=100)
    detail: Optional[str] = Field(default=None, max_length=5000)


class LogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: Optional[int] = None
    action: str
    detail: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "LogResponse":
        return cls(**entry.public_view())
