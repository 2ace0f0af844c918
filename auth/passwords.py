"""
auth/passwords.py -- Password hashing with argon2id and legacy bcrypt migration.

argon2id (argon2-cffi) is the single system-of-record algorithm. bcrypt is kept
only as a verifier for hashes written by older deployments: a "$2" hash that
verifies is reported as needing a rehash, and AuthService.login() replaces it
with an argon2id hash. Nothing ever writes a new bcrypt hash.

Timing equalization [C1]: dummy_verify() runs a full argon2 verification
against a throwaway hash so a login for an unknown username costs the same as
a login with a wrong password.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

import bcrypt
from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

logger = logging.getLogger("conductor.auth")

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def is_legacy_hash(hashed: str) -> bool:
    return hashed.startswith(_BCRYPT_PREFIXES)


class PasswordHasher:
    """Hash and verify passwords.

    Usage:
        hasher = PasswordHasher()
        stored = hasher.hash("s3cret")
        hasher.verify("s3cret", stored)   # True
        hasher.needs_rehash(stored)       # False until parameters change
    """

    def __init__(self, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4) -> None:
        self._argon2 = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._argon2.hash("conductor_timing_dummy")

    def hash(self, plain: str) -> str:
        return self._argon2.hash(plain)

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if plain matches hashed. Any malformed hash is a mismatch."""
        if not hashed:
            return False
        if is_legacy_hash(hashed):
            try:
                return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
            except ValueError:
                logger.warning("Malformed legacy bcrypt hash encountered")
                return False
        try:
            return self._argon2.verify(hashed, plain)
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHashError):
            logger.warning("Password hash failed to parse")
            return False

    def needs_rehash(self, hashed: str) -> bool:
        """True for legacy bcrypt hashes and argon2 hashes with outdated parameters."""
        if is_legacy_hash(hashed):
            return True
        try:
            return self._argon2.check_needs_rehash(hashed)
        except InvalidHashError:
            return True

    def dummy_verify(self, plain: str) -> None:
        self.verify(plain, self._dummy_hash)
