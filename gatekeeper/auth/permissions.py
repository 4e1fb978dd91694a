"""
Gatekeeper - Permission Resolution

Computes a user's effective role and permission codes by walking
user -> user_roles -> roles -> role_permissions -> permissions, and decides
whether a set of claims grants a required permission.

Security:
- Deny-by-default: only explicit grants are allowed
- A role from another tenant linked to the user is a data-integrity
  failure and raises; it is never silently filtered out
- Results are sets, so resolution is order-independent
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session as DBSession, select

from gatekeeper.auth.errors import PersistenceError, TenantIntegrityError
from gatekeeper.auth.models import Permission, Role, RolePermission, UserRole


WILDCARD = "*"


@dataclass(frozen=True)
class ResolvedAccess:
    """Effective authorization snapshot for one user in one tenant."""
    roles: FrozenSet[str] = frozenset()
    permissions: FrozenSet[str] = frozenset()


@dataclass
class PermissionResolver:
    """
    Read-only resolver with a per-instance cache.

    Create one per request or per orchestrator operation; never share an
    instance across requests or stale grants would leak between them.
    """
    db: DBSession
    _cache: Dict[Tuple[UUID, UUID], ResolvedAccess] = field(default_factory=dict)

    def resolve(self, user_id: UUID, tenant_id: UUID) -> ResolvedAccess:
        key = (user_id, tenant_id)
        if key not in self._cache:
            self._cache[key] = resolve_access(self.db, user_id, tenant_id)
        return self._cache[key]


def resolve_access(db: DBSession, user_id: UUID, tenant_id: UUID) -> ResolvedAccess:
    """
    Resolve role codes and permission codes for a user within a tenant.

    Raises:
        TenantIntegrityError: A linked role belongs to a different tenant
        PersistenceError: The store could not be read
    """
    try:
        roles = db.exec(
            select(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id)
        ).all()

        foreign = [role for role in roles if role.tenant_id != tenant_id]
        if foreign:
            raise TenantIntegrityError(
                f"User {user_id} is linked to {len(foreign)} role(s) outside tenant {tenant_id}"
            )

        role_ids = [role.id for role in roles]
        codes = []
        if role_ids:
            codes = db.exec(
                select(Permission.code)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .where(RolePermission.role_id.in_(role_ids))
            ).all()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Could not resolve permissions: {e.__class__.__name__}") from e

    return ResolvedAccess(
        roles=frozenset(role.code for role in roles),
        permissions=frozenset(codes),
    )


def resolve_permissions(db: DBSession, user_id: UUID, tenant_id: UUID) -> FrozenSet[str]:
    """Permission codes only."""
    return resolve_access(db, user_id, tenant_id).permissions


def grants(granted: str, required: str) -> bool:
    """
    Whether one granted code covers a required code.

    A grant ending in ``*`` matches every code with that prefix:
    ``users.*`` covers ``users.create``; a bare ``*`` covers everything.
    """
    if granted.endswith(WILDCARD):
        return required.startswith(granted[:-1])
    return granted == required


def has_permission(permissions: Iterable[str], required: str) -> bool:
    return any(grants(granted, required) for granted in permissions)


def check_permission(claims, required_code: str) -> bool:
    """
    Decide a permission from the snapshot embedded in access-token claims.

    Pure: no store lookup. Live changes to role grants are not visible
    until the token is refreshed.
    """
    return has_permission(claims.permissions, required_code)


def has_any_permission(claims, *required_codes: str) -> bool:
    return any(check_permission(claims, code) for code in required_codes)


def has_all_permissions(claims, *required_codes: str) -> bool:
    return all(check_permission(claims, code) for code in required_codes)


def has_any_role(claims, *role_codes: str) -> bool:
    return not set(claims.roles).isdisjoint(role_codes)
