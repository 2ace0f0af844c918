"""
auth/tokens.py -- Bearer token issue and verification.

JWT: python-jose with HS256. Tokens carry {sub, username, permission, role,
iat, exp} and are signed with SECRET_KEY. Nothing is stored server-side.

verify() fails closed: any decode error, bad signature, missing claim, unknown
permission/role value or expiry yields None. Expiry is checked against the
injected clock rather than by python-jose so tests can move time without
sleeping; python-jose's own exp check is disabled.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import Claims, User
from auth.permissions import Permission, Role

logger = logging.getLogger("conductor.auth")

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "username", "permission", "role", "iat", "exp")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Issue and verify signed bearer tokens.

    Args:
        secret:            HMAC key (SECRET_KEY, at least 32 chars).
        lifetime_seconds:  Validity window for new tokens (default 24h).
        clock:             Callable returning an aware UTC datetime.
    """

    def __init__(
        self,
        secret: str,
        lifetime_seconds: int = 86400,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret = secret
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock

    def issue(self, user: User) -> str:
        """Return a signed token for user, valid for lifetime_seconds from now."""
        now = self._clock()
        payload = {
            "sub": str(user.id),
            "username": user.username,
            "permission": user.permission.value,
            "role": user.role.value,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.lifetime_seconds)).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify(self, token: str) -> Claims | None:
        """Return the token's Claims, or None if the token is not acceptable."""
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_iat": False},
            )
        except JWTError:
            return None
        if any(name not in payload for name in _REQUIRED_CLAIMS):
            return None
        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
            claims = Claims(
                user_id=int(payload["sub"]),
                username=str(payload["username"]),
                permission=Permission(payload["permission"]),
                role=Role(payload["role"]),
                issued_at=issued_at,
                expires_at=expires_at,
            )
        except (TypeError, ValueError):
            logger.warning("Signed token carried malformed claims")
            return None
        if self._clock() >= claims.expires_at:
            return None
        return claims
