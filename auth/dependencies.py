"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Only one credential is accepted: an `Authorization: Bearer <token>` header.
A missing header, another scheme, or an empty token is unauthenticated.

get_current_claims() verifies the token through the AuthService on
app.state, attaches the Claims to request.state.claims and returns them.

require_permissions(*allowed) builds a dependency that admits a caller only
if their permission is one of `allowed`. This is exact set membership: there
is no inheritance, so a Developer is not implicitly an Administrator. List
every permission the endpoint should admit.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. It does not import from api/.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Request

from auth.models import Claims
from auth.permissions import Permission
from core.errors import Forbidden, Unauthenticated

logger = logging.getLogger("conductor.auth")


def bearer_token(request: Request) -> str | None:
    """Return the raw bearer token from the Authorization header, or None."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def get_current_claims(request: Request) -> Claims:
    """Require a valid bearer token. Raises Unauthenticated (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: Claims = Depends(get_current_claims)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise Unauthenticated()
    result = request.app.state.auth_service.validate_token(token)
    if not result.valid:
        raise Unauthenticated(result.reason)
    request.state.claims = result.claims
    return result.claims


def require_permissions(*allowed: Permission):
    """Dependency factory: admit callers whose permission is exactly one of `allowed`.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        def route(claims: Claims = Depends(require_permissions(Permission.ADMINISTRATOR, Permission.DEVELOPER))): ...
    """
    allowed_set = frozenset(allowed)

    def dependency(request: Request, claims: Claims = Depends(get_current_claims)) -> Claims:
        if claims.permission not in allowed_set:
            logger.warning(
                "Forbidden: user_id=%s permission=%s on %s %s",
                claims.user_id,
                claims.permission.value,
                request.method,
                request.url.path,
            )
            raise Forbidden()
        return claims

    return dependency
