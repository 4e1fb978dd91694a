"""
Gatekeeper - Security Dependencies

Bearer-token claims extraction and permission guards for route handlers.

Usage:
    @router.get("/protected")
    async def protected_route(claims: AccessClaims = Depends(get_current_claims)):
        ...

    @router.post("/users")
    @require_permission("users.create")
    async def create_user(body: CreateUserRequest, claims: AccessClaims = Depends(get_current_claims)):
        ...

Security:
- Bearer access tokens are validated statelessly (signature, expiry, type)
- Permission checks read the claim snapshot and are deny-by-default
- Failures raise AuthError subclasses, rendered by the app's error handler
"""

from functools import wraps
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session as DBSession

from gatekeeper.auth.errors import InvalidTokenError, PermissionDeniedError
from gatekeeper.auth.permissions import check_permission, has_any_permission
from gatekeeper.auth.service import AuthService
from gatekeeper.auth.tokens import AccessClaims


# HTTP Bearer scheme for JWT extraction
security = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    """The orchestrator built at startup."""
    return request.app.state.auth_service


def get_db(request: Request) -> DBSession:
    """Get database session from app state. Caller closes it."""
    return request.app.state.db_session_factory()


async def get_current_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    service: AuthService = Depends(get_auth_service),
) -> AccessClaims:
    """
    Validate the bearer access token and return its claims.

    Raises:
        InvalidTokenError: Missing, malformed or wrong-type token
        ExpiredTokenError: Token past its exp
    """
    if not credentials:
        raise InvalidTokenError("Missing authentication token")
    return service.validate(credentials.credentials)


def require_permission(permission: str):
    """
    Decorator to enforce a permission code on a route.

    The route must take ``claims: AccessClaims = Depends(get_current_claims)``.

    Raises:
        PermissionDeniedError: Claims do not grant the code
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            claims: Optional[AccessClaims] = kwargs.get("claims")

            if claims is None:
                raise InvalidTokenError("Authentication required")

            if not check_permission(claims, permission):
                raise PermissionDeniedError(f"Permission denied: {permission}")

            return await func(*args, **kwargs)
        return wrapper
    return decorator


def require_any_permission(*permissions: str):
    """
    Decorator requiring at least one of the specified permission codes.

    Usage:
        @require_any_permission("reports.sales", "reports.inventory")
        async def reports(claims: AccessClaims = Depends(get_current_claims)):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            claims: Optional[AccessClaims] = kwargs.get("claims")

            if claims is None:
                raise InvalidTokenError("Authentication required")

            if not has_any_permission(claims, *permissions):
                raise PermissionDeniedError(f"Requires one of: {list(permissions)}")

            return await func(*args, **kwargs)
        return wrapper
    return decorator
