"""
api/routes/logs.py -- Audit log endpoints.

Routes (any authenticated caller):
  GET  /api/logs  -- most recent entries, newest first (AUDIT_RECENT_LIMIT, default 100)
  POST /api/logs  -- append a client-reported entry attributed to the caller

The log is append-only; there are no update or delete routes.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import LogCreate, LogResponse
from audit.store import AuditLog
from auth.dependencies import get_current_claims
from auth.models import Claims

router = APIRouter()


@router.get("/logs", response_model=list[LogResponse])
def list_logs(request: Request, claims: Claims = Depends(get_current_claims)) -> list[LogResponse]:
    audit: AuditLog = request.app.state.audit_log
    return [LogResponse.from_entry(e) for e in audit.recent()]


@router.post("/logs", response_model=LogResponse, status_code=201)
def create_log(request: Request, body: LogCreate, claims: Claims = Depends(get_current_claims)) -> LogResponse:
    audit: AuditLog = request.app.state.audit_log
    entry = audit.record_from_request(request, body.action, user_id=claims.user_id, detail=body.detail)
    return LogResponse.from_entry(entry)
