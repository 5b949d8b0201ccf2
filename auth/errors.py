"""
auth/errors.py -- Exception taxonomy for the authentication/authorization core.

Every failure the core can produce is a subclass of AuthError carrying a
stable machine-readable ``code`` and the HTTP status the API layer maps it to.
The core raises these; api/main.py installs one exception handler that turns
any AuthError into the shared ErrorResponse envelope. Route handlers never
build auth error responses by hand.

InvalidCredentials is raised for both "email not found" and "wrong password"
so responses never reveal whether an account exists. The audit log still
records the underlying reason for operators.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all core failures. Terminal for the current request."""

    code: str = "auth_error"
    status_code: int = 400
    message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    status_code = 400
    message = "User with this email already exists."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 423
    message = "Account temporarily locked due to too many failed attempts."


class AccountDeactivated(AuthError):
    code = "account_deactivated"
    status_code = 401
    message = "Account is deactivated."


class MissingToken(AuthError):
    code = "missing_token"
    status_code = 400
    message = "Refresh token is required."


class InvalidToken(AuthError):
    code = "invalid_token"
    status_code = 401
    message = "Invalid or expired token."


class MalformedHeader(AuthError):
    code = "malformed_header"
    status_code = 401
    message = "Authorization header must start with Bearer."


class Unauthenticated(AuthError):
    code = "unauthenticated"
    status_code = 401
    message = "Authentication required."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    message = "Insufficient permissions."


class StoreUnavailable(AuthError):
    """The credential or audit store could not be reached.

    The API layer reports this with a generic message only; the original
    driver error is chained (``raise ... from exc``) for the server log.
    """

    code = "store_unavailable"
    status_code = 503
    message = "Service temporarily unavailable."


class DuplicateKey(Exception):
    """Raised by the store when an insert collides on a unique key (email).

    Deliberately not an AuthError: it is a persistence signal that the
    Authenticator translates into DuplicateEmail.
    """
