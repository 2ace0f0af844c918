"""
auth/service.py -- Login, registration and token validation.

AuthService is constructed once in the API lifespan with its collaborators
passed in explicitly (stores, hasher, token issuer). Nothing here reads
global state, so tests build one directly against throwaway databases.

Registration policies, in precedence order:
  1. first_user -- the store is empty: the account becomes Developer and any
     access key in the request is ignored and left unconsumed.
  2. access_key -- a key was supplied: it must be consumable, its permission
     is granted, and its use is taken in the same transaction as the insert.
     A bad key rejects the registration; it never degrades to Visitor.
  3. public     -- no key: Visitor.

Security:
  [C1] login() runs a password verification on every path, including unknown
       usernames, so response time does not reveal which usernames exist.
       Unknown user and wrong password raise the same InvalidCredentials.
  Inactive and blocked accounts never receive a token.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from audit.store import AuditLog
from auth.models import Claims, LoginResult, RegistrationResult, TokenValidation, User
from auth.passwords import PasswordHasher, is_legacy_hash
from auth.permissions import Permission, UserStatus, parse_role
from auth.store import UserStore
from auth.tokens import TokenIssuer
from core.errors import (
    AccountInactive,
    DuplicateEmail,
    DuplicateUsername,
    InvalidCredentials,
    KeyRejected,
    ValidationError,
)
from keys.store import AccessKeyStore

logger = logging.getLogger("conductor.auth")


class AuthService:
    def __init__(
        self,
        users: UserStore,
        keys: AccessKeyStore,
        audit: AuditLog,
        tokens: TokenIssuer,
        hasher: PasswordHasher,
        recheck_account_status: bool = True,
    ) -> None:
        self.users = users
        self.keys = keys
        self.audit = audit
        self.tokens = tokens
        self.hasher = hasher
        self.recheck_account_status = recheck_account_status

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, ip_address: str | None = None) -> LoginResult:
        """Verify credentials and issue a token.

        Raises ValidationError for empty input, InvalidCredentials for an
        unknown user or wrong password, AccountInactive for a non-Active account.
        """
        if not username or not password:
            raise ValidationError("Username and password are required.")

        user = self.users.get_by_username(username)
        if user is None:
            # Equalize timing -- do NOT return before hashing [C1]
            self.hasher.dummy_verify(password)
            logger.info("Login failed: unknown username")
            self.audit.safe_record("login_failed", detail=f"unknown username {username!r}", ip_address=ip_address)
            raise InvalidCredentials()

        if not user.is_active:
            # Same hashing cost as every other path [C1]
            self.hasher.dummy_verify(password)
            logger.info("Login refused for user_id=%s: status %s", user.id, user.status.value)
            self.audit.safe_record(
                "login_refused", user_id=user.id, detail=f"status {user.status.value}", ip_address=ip_address
            )
            raise AccountInactive(f"Account is {user.status.value.lower()}.")

        if not self.hasher.verify(password, user.password_hash):
            logger.info("Login failed for user_id=%s: bad password", user.id)
            self.audit.safe_record("login_failed", user_id=user.id, detail="bad password", ip_address=ip_address)
            raise InvalidCredentials()

        if self.hasher.needs_rehash(user.password_hash):
            self._rehash(user, password)

        try:
            self.users.update_last_login(user.id)
        except SQLAlchemyError:
            logger.warning("Could not record last_login for user_id=%s", user.id, exc_info=True)

        self.audit.safe_record("login", user_id=user.id, ip_address=ip_address)
        return LoginResult(
            token=self.tokens.issue(user),
            expires_in=self.tokens.lifetime_seconds,
            user=self.users.get_by_id(user.id) or user,
        )

    def _rehash(self, user: User, password: str) -> None:
        legacy = is_legacy_hash(user.password_hash)
        try:
            self.users.update_user(user.id, password_hash=self.hasher.hash(password))
        except SQLAlchemyError:
            logger.warning("Password rehash failed for user_id=%s", user.id, exc_info=True)
            return
        if legacy:
            logger.info("Migrated legacy bcrypt hash to argon2id for user_id=%s", user.id)
        else:
            logger.info("Rehashed password with current argon2 parameters for user_id=%s", user.id)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def is_first_user(self) -> bool:
        return not self.users.has_users()

    def register(
        self,
        username: str,
        email: str,
        role: str,
        password: str,
        access_key: str | None = None,
        phone: str | None = None,
        ip_address: str | None = None,
    ) -> RegistrationResult:
        """Create an account under one of the three registration policies."""
        if not username or not email or not password:
            raise ValidationError("Username, email and password are required.")
        parsed_role = parse_role(role)
        code = access_key.strip() if access_key else ""

        # Friendly pre-checks; the UNIQUE constraints below are authoritative.
        if self.users.get_by_username(username) is not None:
            raise DuplicateUsername()
        if self.users.get_by_email(email) is not None:
            raise DuplicateEmail()

        first_user = self.is_first_user()
        key = None
        if not first_user and code:
            key, reason = self.keys.check(code)
            if reason is not None:
                logger.info("Registration rejected: access key %s", reason)
                self.audit.safe_record("register_rejected", detail=f"access key {reason}", ip_address=ip_address)
                raise KeyRejected(reason)

        password_hash = self.hasher.hash(password)
        try:
            with self.users.engine.begin() as conn:
                user_id = None
                if first_user:
                    # Atomic: at most one registration ever takes this path.
                    user_id = self.users.create_first_user(
                        self._new_user(username, email, parsed_role, Permission.DEVELOPER, password_hash, phone),
                        conn,
                    )
                    if user_id is None and code:
                        raise _RetryAsKeyed()
                if user_id is not None:
                    policy, permission = "first_user", Permission.DEVELOPER
                else:
                    if key is not None:
                        if not self.keys.consume(key.id, conn):
                            raise _KeyLost()
                        policy, permission = "access_key", key.permission
                    else:
                        policy, permission = "public", Permission.VISITOR
                    user_id = self.users.create_user(
                        self._new_user(username, email, parsed_role, permission, password_hash, phone), conn
                    )
        except _RetryAsKeyed:
            # Lost the bootstrap race while holding a key: run again as a keyed registration.
            return self.register(username, email, role, password, access_key, phone, ip_address)
        except _KeyLost:
            reason = self._late_rejection_reason(code)
            logger.info("Registration rejected: access key %s at consumption", reason)
            raise KeyRejected(reason) from None
        except IntegrityError as exc:
            raise self._duplicate_error(username, email) from exc

        user = self.users.get_by_id(user_id)
        logger.info("Registered user_id=%s via %s with %s", user_id, policy, permission.value)
        detail = f"policy={policy} permission={permission.value}"
        if key is not None:
            detail += f" key_id={key.id}"
        self.audit.safe_record("register", user_id=user_id, detail=detail, ip_address=ip_address)
        return RegistrationResult(user=user, policy=policy)

    @staticmethod
    def _new_user(username, email, role, permission, password_hash, phone) -> User:
        return User(
            username=username,
            email=email,
            role=role,
            permission=permission,
            password_hash=password_hash,
            status=UserStatus.ACTIVE,
            phone=phone,
        )

    def _late_rejection_reason(self, code: str) -> str:
        # The key was consumable at pre-check but not at UPDATE time.
        _, reason = self.keys.check(code)
        return reason or "exhausted"

    def _duplicate_error(self, username: str, email: str):
        if self.users.get_by_username(username) is not None:
            return DuplicateUsername()
        if self.users.get_by_email(email) is not None:
            return DuplicateEmail()
        return DuplicateUsername()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def validate_token(self, token: str) -> TokenValidation:
        """Verify a bearer token. Fails closed with a generic reason."""
        claims = self.tokens.verify(token)
        if claims is None:
            return TokenValidation(valid=False, reason="Invalid or expired token.")
        if self.recheck_account_status:
            user = self.users.get_by_id(claims.user_id)
            if user is None or not user.is_active:
                return TokenValidation(valid=False, reason="Invalid or expired token.")
        return TokenValidation(valid=True, claims=claims)

    def refresh(self, claims: Claims) -> LoginResult:
        """Issue a fresh token from the caller's current stored record."""
        user = self.users.get_by_id(claims.user_id)
        if user is None:
            raise InvalidCredentials("Account no longer exists.")
        if not user.is_active:
            raise AccountInactive()
        return LoginResult(token=self.tokens.issue(user), expires_in=self.tokens.lifetime_seconds, user=user)

    # ------------------------------------------------------------------
    # Access keys (read-only view for the registration form)
    # ------------------------------------------------------------------

    def check_access_key(self, code: str) -> tuple[bool, Permission | None, str | None]:
        """Return (valid, permission, reason) without consuming the key."""
        if not code or not code.strip():
            return False, None, "not_found"
        key, reason = self.keys.check(code.strip())
        if reason is not None:
            return False, None, reason
        return True, key.permission, None


class _RetryAsKeyed(Exception):
    pass


class _KeyLost(Exception):
    pass
