"""
Gatekeeper - Authentication Error Taxonomy

Every failure the core can return to the HTTP layer. Each error carries a
stable machine code, an HTTP status and whether the caller may retry.
The core never retries on its own.
"""

from datetime import datetime
from typing import Optional


class AuthError(Exception):
    """Base class for all errors surfaced by the auth core."""
    code = "auth_error"
    status_code = 400
    retryable = False
    default_message = "Authentication error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentialsError(AuthError):
    """Unknown user or wrong password. Same message for both."""
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid credentials"


class AccountLockedError(AuthError):
    """Raised when account is locked due to failed attempts."""
    code = "account_locked"
    status_code = 423
    default_message = "Account is temporarily locked"

    def __init__(self, message: Optional[str] = None, locked_until: Optional[datetime] = None):
        super().__init__(message)
        self.locked_until = locked_until


class InvalidTokenError(AuthError):
    """Raised when JWT validation fails."""
    code = "invalid_token"
    status_code = 401
    default_message = "Invalid token"


class ExpiredTokenError(InvalidTokenError):
    code = "expired_token"
    default_message = "Token has expired"


class ReusedTokenError(InvalidTokenError):
    """
    A refresh token was presented after it had been rotated or revoked.

    By the time this is raised the whole session chain is revoked.
    """
    code = "reused_token"
    default_message = "Refresh token reuse detected"


class SessionNotFoundError(InvalidTokenError):
    default_message = "Session not found"


class SessionRevokedError(ReusedTokenError):
    pass


class SessionExpiredError(ExpiredTokenError):
    default_message = "Session has expired"


class TenantNotFoundError(AuthError):
    code = "tenant_not_found"
    status_code = 404
    default_message = "Tenant not found"


class RateLimitExceeded(AuthError):
    """
    Request rejected by a rate limiter.

    Attributes:
        decision: The limiter decision, used to emit X-RateLimit-* headers
    """
    code = "rate_limited"
    status_code = 429
    default_message = "Rate limit exceeded"

    def __init__(self, decision, message: Optional[str] = None):
        super().__init__(message)
        self.decision = decision


class PersistenceError(AuthError):
    """Store unavailable. Never treated as success."""
    code = "persistence_unavailable"
    status_code = 503
    retryable = True
    default_message = "Storage temporarily unavailable"


class PermissionDeniedError(AuthError):
    code = "permission_denied"
    status_code = 403
    default_message = "Permission denied"


class TenantIntegrityError(AuthError):
    """A role from another tenant is (or would be) linked to a user."""
    code = "tenant_integrity"
    status_code = 500
    default_message = "Cross-tenant role association"


class ConflictError(AuthError):
    code = "conflict"
    status_code = 409
    default_message = "Resource already exists"


class NotFoundError(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found"
