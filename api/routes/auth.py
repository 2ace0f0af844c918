"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/auth/login        -- password login; returns a bearer token
  POST /api/auth/register     -- create an account (first-user / access-key / public)
  GET  /api/auth/first-user   -- whether the next registration bootstraps a Developer
  POST /api/auth/check-key    -- validate an access key without consuming it
  POST /api/auth/validate     -- validate a token passed in the body
  GET  /api/auth/profile      -- current caller's claims (requires auth)
  POST /api/auth/refresh      -- new token from the caller's current record (requires auth)
  POST /api/auth/logout       -- stateless; the client discards its token (requires auth)

Security:
  [H2] login and check-key are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] AuthService.login() equalizes timing -- never inline the lookup + verify here.
  [M5] Cache-Control: no-store on every login and refresh response.

login and register are plain `def` handlers: password hashing is CPU-bound and
Starlette runs sync handlers in its worker thread pool, off the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.errors import error_response
from api.limiter import CREDENTIAL_LIMIT, limiter
from api.models import (
    CheckKeyRequest,
    CheckKeyResponse,
    ClaimsResponse,
    FirstUserResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    UserResponse,
    ValidateTokenRequest,
    ValidateTokenResponse,
)
from auth.dependencies import get_current_claims
from auth.models import Claims, LoginResult
from auth.service import AuthService
from core.errors import PortalError

router = APIRouter()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _token_response(result: LoginResult) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=result.expires_in,
            user=UserResponse.from_user(result.user),
        ).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(CREDENTIAL_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a bearer token.

    Unknown username and wrong password produce the same "bad_credentials"
    error so the response does not reveal which usernames exist.
    """
    service: AuthService = request.app.state.auth_service
    try:
        result = service.login(body.username, body.password, ip_address=_client_ip(request))
    except PortalError as exc:
        resp = error_response(exc)
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    return _token_response(result)


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an account. See AuthService.register() for the policy order."""
    service: AuthService = request.app.state.auth_service
    result = service.register(
        username=body.username,
        email=body.email,
        role=body.role,
        password=body.password,
        access_key=body.access_key,
        phone=body.phone,
        ip_address=_client_ip(request),
    )
    return RegisterResponse(message=result.message, user=UserResponse.from_user(result.user))


@router.get("/auth/first-user", response_model=FirstUserResponse)
def first_user(request: Request) -> FirstUserResponse:
    service: AuthService = request.app.state.auth_service
    is_first = service.is_first_user()
    message = (
        "No accounts exist yet. The next registration becomes a Developer."
        if is_first
        else "Accounts already exist."
    )
    return FirstUserResponse(is_first_user=is_first, message=message)


@limiter.limit(CREDENTIAL_LIMIT)  # [H2]
@router.post("/auth/check-key", response_model=CheckKeyResponse)
def check_key(request: Request, body: CheckKeyRequest) -> CheckKeyResponse:
    """Report whether an access key is currently usable. Does not consume it."""
    service: AuthService = request.app.state.auth_service
    valid, permission, reason = service.check_access_key(body.key)
    return CheckKeyResponse(valid=valid, permission=permission, reason=reason)


@router.post("/auth/validate", response_model=ValidateTokenResponse)
def validate(request: Request, body: ValidateTokenRequest) -> ValidateTokenResponse:
    service: AuthService = request.app.state.auth_service
    result = service.validate_token(body.token)
    if not result.valid:
        return ValidateTokenResponse(valid=False, reason=result.reason)
    return ValidateTokenResponse(valid=True, user=ClaimsResponse.from_claims(result.claims))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/profile", response_model=ClaimsResponse)
def profile(claims: Claims = Depends(get_current_claims)) -> ClaimsResponse:
    """Return the verified claims of the current caller."""
    return ClaimsResponse.from_claims(claims)


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, claims: Claims = Depends(get_current_claims)) -> JSONResponse:
    """Issue a new token reflecting the caller's current permission and role."""
    service: AuthService = request.app.state.auth_service
    return _token_response(service.refresh(claims))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, claims: Claims = Depends(get_current_claims)) -> MessageResponse:
    """Tokens are stateless; logging out means the client discards its token."""
    request.app.state.audit_log.safe_record("logout", user_id=claims.user_id, ip_address=_client_ip(request))
    return MessageResponse(message="Logged out.")
