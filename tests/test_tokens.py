"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - Issued tokens carry id, username, permission and role
  - Expiry: valid just before the 24h lifetime, rejected at 24h + 1s
  - Fail closed: tampered, foreign-key, garbage and empty tokens yield None
"""

from __future__ import annotations

from jose import jwt

from auth.models import User
from auth.permissions import Permission, Role
from auth.tokens import TokenIssuer

SECRET = "token-test-secret-with-at-least-32-characters"


def _user() -> User:
    return User(
        id=7,
        username="ana",
        email="ana@example.com",
        role=Role.COORDINATOR,
        permission=Permission.OPERATOR,
        password_hash="x",
    )


def test_round_trip_claims(clock) -> None:
    issuer = TokenIssuer(SECRET, lifetime_seconds=86400, clock=clock)
    claims = issuer.verify(issuer.issue(_user()))
    assert claims is not None
    assert claims.user_id == 7
    assert claims.username == "ana"
    assert claims.permission is Permission.OPERATOR
    assert claims.role is Role.COORDINATOR
    assert (claims.expires_at - claims.issued_at).total_seconds() == 86400


def test_token_valid_just_before_expiry(clock) -> None:
    issuer = TokenIssuer(SECRET, lifetime_seconds=86400, clock=clock)
    token = issuer.issue(_user())
    clock.advance(seconds=86399)
    assert issuer.verify(token) is not None


def test_token_rejected_after_24h_plus_one_second(clock) -> None:
    issuer = TokenIssuer(SECRET, lifetime_seconds=86400, clock=clock)
    token = issuer.issue(_user())
    clock.advance(hours=24, seconds=1)
    assert issuer.verify(token) is None, "Token must be rejected after its lifetime"


def test_tampered_payload_rejected(clock) -> None:
    issuer = TokenIssuer(SECRET, clock=clock)
    header, payload, signature = issuer.issue(_user()).split(".")
    forged = jwt.encode(
        {"sub": "7", "username": "ana", "permission": "Developer", "role": "Director", "iat": 0, "exp": 2**31},
        "some-other-secret-that-is-also-32-chars-long!",
        algorithm="HS256",
    )
    _, forged_payload, _ = forged.split(".")
    assert issuer.verify(f"{header}.{forged_payload}.{signature}") is None


def test_token_signed_with_other_secret_rejected(clock) -> None:
    other = TokenIssuer("another-secret-value-with-at-least-32-chars", clock=clock)
    issuer = TokenIssuer(SECRET, clock=clock)
    assert issuer.verify(other.issue(_user())) is None


def test_garbage_and_empty_rejected() -> None:
    issuer = TokenIssuer(SECRET)
    assert issuer.verify("") is None
    assert issuer.verify("not.a.jwt") is None
    assert issuer.verify("abc") is None


def test_unknown_permission_claim_rejected(clock) -> None:
    issuer = TokenIssuer(SECRET, clock=clock)
    now = int(clock().timestamp())
    token = jwt.encode(
        {"sub": "1", "username": "x", "permission": "Root", "role": "Analyst", "iat": now, "exp": now + 60},
        SECRET,
        algorithm="HS256",
    )
    assert issuer.verify(token) is None


def test_missing_claim_rejected(clock) -> None:
    issuer = TokenIssuer(SECRET, clock=clock)
    now = int(clock().timestamp())
    token = jwt.encode({"sub": "1", "iat": now, "exp": now + 60}, SECRET, algorithm="HS256")
    assert issuer.verify(token) is None
