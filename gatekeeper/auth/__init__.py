"""
Gatekeeper - Authentication Package

Multi-tenant authentication with:
- bcrypt password hashing and account lockout
- Stateless JWT access tokens carrying a permission snapshot
- Single-use rotating refresh tokens with reuse detection
- Tenant-scoped RBAC with deny-by-default
"""

from gatekeeper.auth.errors import AuthError
from gatekeeper.auth.models import Permission, Role, Session, Tenant, User
from gatekeeper.auth.service import AuthResult, AuthService
from gatekeeper.auth.tokens import AccessClaims, TokenIssuer
from gatekeeper.auth.permissions import check_permission
from gatekeeper.auth.dependencies import get_current_claims, require_permission

__all__ = [
    "AuthError",
    "Tenant",
    "User",
    "Role",
    "Permission",
    "Session",
    "AuthService",
    "AuthResult",
    "AccessClaims",
    "TokenIssuer",
    "check_permission",
    "get_current_claims",
    "require_permission",
]
