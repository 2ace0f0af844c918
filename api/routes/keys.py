"""
api/routes/keys.py -- Access key ("chave") administration endpoints.

Routes (all require Administrator or Developer):
  GET    /api/chaves              -- list keys, newest first (?status=&type=)
  GET    /api/chaves/statistics   -- counts by status / type / permission
  GET    /api/chaves/expiring     -- active expiring keys due within ?days=
  GET    /api/chaves/{id}         -- one key
  POST   /api/chaves              -- create; code generated when omitted
  PUT    /api/chaves/{id}         -- status / expiry / max_uses / description
  DELETE /api/chaves/{id}         -- permanent delete of a non-active key

[G1] Minting or managing a key that grants a permission requires the caller to
be in GRANTORS for that permission, so only a Developer handles Developer keys.
Every listing refreshes expired/used statuses before returning (see keys/store.py).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import AccessKeyCreate, AccessKeyResponse, AccessKeyStatsResponse, AccessKeyUpdate, MessageResponse
from auth.dependencies import require_permissions
from auth.models import Claims
from auth.permissions import ADMINS, ensure_can_grant
from core.errors import NotFound
from keys.models import AccessKey, KeyStatus, KeyType
from keys.store import AccessKeyStore

router = APIRouter()

_admins = require_permissions(*ADMINS)


def _get_key(store: AccessKeyStore, key_id: int) -> AccessKey:
    key = store.get(key_id)
    if key is None:
        raise NotFound("Access key not found.")
    return key


@router.get("/chaves", response_model=list[AccessKeyResponse])
def list_keys(
    request: Request,
    status: KeyStatus | None = None,
    type: KeyType | None = None,  # noqa: A002 -- matches the public query parameter name
    claims: Claims = Depends(_admins),
) -> list[AccessKeyResponse]:
    store: AccessKeyStore = request.app.state.key_store
    return [AccessKeyResponse.from_key(k) for k in store.list_keys(status=status, key_type=type)]


@router.get("/chaves/statistics", response_model=AccessKeyStatsResponse)
def key_statistics(request: Request, claims: Claims = Depends(_admins)) -> AccessKeyStatsResponse:
    store: AccessKeyStore = request.app.state.key_store
    return AccessKeyStatsResponse(**store.stats())


@router.get("/chaves/expiring", response_model=list[AccessKeyResponse])
def expiring_keys(
    request: Request,
    days: int = Query(default=7, ge=1, le=365),
    claims: Claims = Depends(_admins),
) -> list[AccessKeyResponse]:
    store: AccessKeyStore = request.app.state.key_store
    return [AccessKeyResponse.from_key(k) for k in store.expiring_soon(days)]


@router.get("/chaves/{key_id}", response_model=AccessKeyResponse)
def get_key(request: Request, key_id: int, claims: Claims = Depends(_admins)) -> AccessKeyResponse:
    store: AccessKeyStore = request.app.state.key_store
    return AccessKeyResponse.from_key(_get_key(store, key_id))


@router.post("/chaves", response_model=AccessKeyResponse, status_code=201)
def create_key(request: Request, body: AccessKeyCreate, claims: Claims = Depends(_admins)) -> AccessKeyResponse:
    store: AccessKeyStore = request.app.state.key_store
    ensure_can_grant(claims.permission, body.permission)  # [G1]
    key = store.create(
        key_type=body.type,
        permission=body.permission,
        code=body.key,
        expires_at=body.expires_at,
        max_uses=body.max_uses,
        description=body.description,
        created_by=claims.username,
    )
    request.app.state.audit_log.record_from_request(
        request,
        "key_created",
        user_id=claims.user_id,
        detail=f"key_id={key.id} type={key.key_type.value} permission={key.permission.value}",
    )
    return AccessKeyResponse.from_key(key)


@router.put("/chaves/{key_id}", response_model=AccessKeyResponse)
def update_key(
    request: Request,
    key_id: int,
    body: AccessKeyUpdate,
    claims: Claims = Depends(_admins),
) -> AccessKeyResponse:
    store: AccessKeyStore = request.app.state.key_store
    ensure_can_grant(claims.permission, _get_key(store, key_id).permission)  # [G1]
    key = store.update(
        key_id,
        status=body.status,
        expires_at=body.expires_at,
        max_uses=body.max_uses,
        description=body.description,
    )
    fields = ",".join(sorted(body.model_dump(exclude_none=True)))
    request.app.state.audit_log.record_from_request(
        request, "key_updated", user_id=claims.user_id, detail=f"key_id={key_id} fields={fields}"
    )
    return AccessKeyResponse.from_key(key)


@router.delete("/chaves/{key_id}", response_model=MessageResponse)
def delete_key(request: Request, key_id: int, claims: Claims = Depends(_admins)) -> MessageResponse:
    store: AccessKeyStore = request.app.state.key_store
    ensure_can_grant(claims.permission, _get_key(store, key_id).permission)  # [G1]
    store.delete(key_id)
    request.app.state.audit_log.record_from_request(
        request, "key_deleted", user_id=claims.user_id, detail=f"key_id={key_id}"
    )
    return MessageResponse(message="Access key deleted.")
