"""
core/errors.py -- Domain exception hierarchy.

Every failure the service layer can report is a PortalError subclass carrying
an HTTP status and a stable machine code. api/main.py registers one exception
handler for PortalError that renders the standard error envelope, so services
and stores never import FastAPI and route handlers rarely need try/except.

Layer rule: core/ is the kernel. No imports from api/, auth/, keys/, or audit/.
"""

from __future__ import annotations


class PortalError(Exception):
    """Base class for all expected, client-facing failures."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(PortalError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request."


class KeyRejected(ValidationError):
    """An access key could not be used for registration.

    reason is one of "not_found", "inactive", "expired", "exhausted".
    """

    code = "key_rejected"

    _MESSAGES = {
        "not_found": "Access key not found.",
        "inactive": "Access key is inactive.",
        "expired": "Access key has expired.",
        "exhausted": "Access key has already been used.",
    }

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(self._MESSAGES.get(reason, "Access key rejected."), detail=reason)


class InvalidCredentials(PortalError):
    status_code = 401
    code = "bad_credentials"
    default_message = "Invalid username or password."


class AccountInactive(PortalError):
    status_code = 401
    code = "account_inactive"
    default_message = "Account is inactive or blocked."


class Unauthenticated(PortalError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class Forbidden(PortalError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action."


class NotFound(PortalError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class Conflict(PortalError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."


class DuplicateUsername(Conflict):
    code = "duplicate_username"
    default_message = "Username is already taken."


class DuplicateEmail(Conflict):
    code = "duplicate_email"
    default_message = "Email is already registered."
