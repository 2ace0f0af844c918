"""
api/routes/users.py -- User management REST endpoints.

Routes:
  GET    /api/users                       -- list with filters (any authenticated caller)
  GET    /api/users/stats/summary         -- counts by status / permission (any authenticated caller)
  GET    /api/users/{id}                  -- one user (any authenticated caller)
  POST   /api/users                       -- create (Administrator, Developer)
  PUT    /api/users/{id}                  -- update profile / status (Administrator, Developer)
  DELETE /api/users/{id}                  -- soft delete: status -> Inactive (Administrator, Developer)
  PUT    /api/users/{id}/reactivate       -- status -> Active (Administrator, Developer)
  PUT    /api/users/{id}/reset-password   -- set a new password (Administrator, Developer)
  POST   /api/users/{id}/promote          -- one ladder rung up (Administrator, Developer)
  POST   /api/users/{id}/demote           -- one ladder rung down (Administrator, Developer)
  PUT    /api/users/{id}/permission       -- explicit permission (Developer)

Guards:
  [M4] An administrator cannot deactivate or block their own account.
  [M4] The last active Developer cannot be deactivated, blocked, or moved off Developer.
  [G1] Assigning a permission, or managing an account that holds it, requires
       the caller's permission to be in GRANTORS for that permission. Only a
       Developer can touch Developer accounts.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    MessageResponse,
    PasswordReset,
    PermissionUpdate,
    UserCreate,
    UserResponse,
    UserStatsResponse,
    UserUpdate,
)
from auth.dependencies import get_current_claims, require_permissions
from auth.models import Claims, User
from auth.permissions import ADMINS, DEVELOPERS, Permission, UserStatus, ensure_can_grant, parse_role
from auth.store import UserStore
from core.errors import DuplicateEmail, DuplicateUsername, NotFound, ValidationError

router = APIRouter()

_admins = require_permissions(*ADMINS)
_developers = require_permissions(*DEVELOPERS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_target(store: UserStore, user_id: int) -> User:
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return user


def _guard_status_change(store: UserStore, target: User, new_status: UserStatus, claims: Claims) -> None:
    """[M4] Refuse changes that would lock out the caller or the last Developer."""
    if new_status is UserStatus.ACTIVE:
        return
    if target.id == claims.user_id:
        raise ValidationError("You cannot deactivate your own account.")
    if target.permission is Permission.DEVELOPER and target.is_active:
        if store.count_active(Permission.DEVELOPER) <= 1:
            raise ValidationError("Cannot deactivate the last active Developer account.")


def _guard_leaving_developer(store: UserStore, target: User, new_permission: Permission) -> None:
    if target.permission is Permission.DEVELOPER and new_permission is not Permission.DEVELOPER:
        if target.is_active and store.count_active(Permission.DEVELOPER) <= 1:
            raise ValidationError("Cannot remove the last active Developer.")


def _duplicate_error(store: UserStore, username: str | None, email: str | None, exclude_id: int | None = None):
    if username:
        existing = store.get_by_username(username)
        if existing is not None and existing.id != exclude_id:
            return DuplicateUsername()
    if email:
        existing = store.get_by_email(email)
        if existing is not None and existing.id != exclude_id:
            return DuplicateEmail()
    return None


def _audit(request: Request, action: str, claims: Claims, detail: str) -> None:
    request.app.state.audit_log.record_from_request(request, action, user_id=claims.user_id, detail=detail)


def _set_permission(request: Request, target: User, new_permission: Permission, claims: Claims) -> UserResponse:
    store: UserStore = request.app.state.user_store
    ensure_can_grant(claims.permission, target.permission)  # [G1]
    ensure_can_grant(claims.permission, new_permission)  # [G1]
    _guard_leaving_developer(store, target, new_permission)
    store.update_user(target.id, permission=new_permission)
    _audit(
        request,
        "user_permission_changed",
        claims,
        f"user_id={target.id} {target.permission.value} -> {new_permission.value}",
    )
    return UserResponse.from_user(_get_target(store, target.id))


# ---------------------------------------------------------------------------
# Read endpoints (any authenticated caller)
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    search: str | None = Query(default=None, max_length=100),
    permission: Permission | None = None,
    status: UserStatus | None = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    claims: Claims = Depends(get_current_claims),
) -> list[UserResponse]:
    store: UserStore = request.app.state.user_store
    users = store.list_users(search=search, permission=permission, status=status, limit=limit, offset=offset)
    return [UserResponse.from_user(u) for u in users]


@router.get("/users/stats/summary", response_model=UserStatsResponse)
def user_stats(request: Request, claims: Claims = Depends(get_current_claims)) -> UserStatsResponse:
    store: UserStore = request.app.state.user_store
    return UserStatsResponse(**store.stats())


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, claims: Claims = Depends(get_current_claims)) -> UserResponse:
    store: UserStore = request.app.state.user_store
    return UserResponse.from_user(_get_target(store, user_id))


# ---------------------------------------------------------------------------
# Administration (Administrator, Developer)
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreate, claims: Claims = Depends(_admins)) -> UserResponse:
    """Create an account directly, bypassing the registration policies."""
    store: UserStore = request.app.state.user_store
    ensure_can_grant(claims.permission, body.permission)  # [G1]
    role = parse_role(body.role)
    duplicate = _duplicate_error(store, body.username, body.email)
    if duplicate is not None:
        raise duplicate

    new_user = User(
        username=body.username,
        email=body.email,
        role=role,
        permission=body.permission,
        password_hash=request.app.state.auth_service.hasher.hash(body.password),
        status=body.status,
        phone=body.phone,
    )
    try:
        user_id = store.create_user(new_user)
    except IntegrityError as exc:
        raise (_duplicate_error(store, body.username, body.email) or DuplicateUsername()) from exc

    _audit(request, "user_created", claims, f"user_id={user_id} permission={body.permission.value}")
    return UserResponse.from_user(_get_target(store, user_id))


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    claims: Claims = Depends(_admins),
) -> UserResponse:
    store: UserStore = request.app.state.user_store
    target = _get_target(store, user_id)
    ensure_can_grant(claims.permission, target.permission)  # [G1]

    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise ValidationError("No fields to update.")
    if "role" in updates:
        updates["role"] = parse_role(updates["role"])
    if "status" in updates:
        _guard_status_change(store, target, updates["status"], claims)

    duplicate = _duplicate_error(store, updates.get("username"), updates.get("email"), exclude_id=user_id)
    if duplicate is not None:
        raise duplicate
    try:
        store.update_user(user_id, **updates)
    except IntegrityError as exc:
        raise (
            _duplicate_error(store, updates.get("username"), updates.get("email"), exclude_id=user_id)
            or DuplicateUsername()
        ) from exc

    _audit(request, "user_updated", claims, f"user_id={user_id} fields={','.join(sorted(updates))}")
    return UserResponse.from_user(_get_target(store, user_id))


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(request: Request, user_id: int, claims: Claims = Depends(_admins)) -> MessageResponse:
    """Soft delete: the account is set Inactive. Nothing is removed."""
    store: UserStore = request.app.state.user_store
    target = _get_target(store, user_id)
    ensure_can_grant(claims.permission, target.permission)  # [G1]
    _guard_status_change(store, target, UserStatus.INACTIVE, claims)
    store.set_status(user_id, UserStatus.INACTIVE)
    _audit(request, "user_deactivated", claims, f"user_id={user_id}")
    return MessageResponse(message="User deactivated.")


@router.put("/users/{user_id}/reactivate", response_model=UserResponse)
def reactivate_user(request: Request, user_id: int, claims: Claims = Depends(_admins)) -> UserResponse:
    store: UserStore = request.app.state.user_store
    target = _get_target(store, user_id)
    ensure_can_grant(claims.permission, target.permission)  # [G1]
    store.set_status(user_id, UserStatus.ACTIVE)
    _audit(request, "user_reactivated", claims, f"user_id={user_id}")
    return UserResponse.from_user(_get_target(store, user_id))


@router.put("/users/{user_id}/reset-password", response_model=MessageResponse)
def reset_password(
    request: Request,
    user_id: int,
    body: PasswordReset,
    claims: Claims = Depends(_admins),
) -> MessageResponse:
    store: UserStore = request.app.state.user_store
    target = _get_target(store, user_id)
    ensure_can_grant(claims.permission, target.permission)  # [G1]
    new_hash = request.app.state.auth_service.hasher.hash(body.password)
    store.update_user(user_id, password_hash=new_hash, reset_token=None, reset_token_expires=None)
    _audit(request, "user_password_reset", claims, f"user_id={user_id}")
    return MessageResponse(message="Password reset.")


@router.post("/users/{user_id}/promote", response_model=UserResponse)
def promote_user(request: Request, user_id: int, claims: Claims = Depends(_admins)) -> UserResponse:
    store: UserStore = request.app.state.user_store
    target = _get_target(store, user_id)
    return _set_permission(request, target, target.permission.promote(), claims)


@router.post("/users/{user_id}/demote", response_model=UserResponse)
def demote_user(request: Request, user_id: int, claims: Claims = Depends(_admins)) -> UserResponse:
    store: UserStore = request.app.state.user_store
    target = _get_target(store, user_id)
    return _set_permission(request, target, target.permission.demote(), claims)


# ---------------------------------------------------------------------------
# Developer only
# ---------------------------------------------------------------------------


@router.put("/users/{user_id}/permission", response_model=UserResponse)
def change_permission(
    request: Request,
    user_id: int,
    body: PermissionUpdate,
    claims: Claims = Depends(_developers),
) -> UserResponse:
    store: UserStore = request.app.state.user_store
    target = _get_target(store, user_id)
    return _set_permission(request, target, body.permission, claims)
