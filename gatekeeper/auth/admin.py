"""
Gatekeeper - Administrative Operations

Tenant, user and role management. These are the only code paths that create
or update tenants and users or change role assignments; login never does.

User lookups take the caller's tenant id. A user of another tenant is
reported as not found.

Every operation that links a user to a role checks that both belong to the
same tenant. Cross-tenant assignment raises TenantIntegrityError.
"""

from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session as DBSession, func, select

from gatekeeper.auth.errors import ConflictError, NotFoundError, PersistenceError, TenantIntegrityError
from gatekeeper.auth.models import Permission, Role, RolePermission, Tenant, User, UserRole, utcnow
from gatekeeper.auth.password import hash_password


DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _commit(db: DBSession, conflict_message: str) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(conflict_message) from e
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Write failed: {e.__class__.__name__}") from e


def _page(page: int, page_size: int):
    """(limit, offset) for a zero-based page, size clamped to 1..MAX_PAGE_SIZE."""
    limit = max(1, min(page_size, MAX_PAGE_SIZE))
    return limit, max(0, page) * limit


def create_tenant(db: DBSession, code: str, name: Optional[str] = None) -> Tenant:
    """Create a tenant. Codes are unique."""
    if db.exec(select(Tenant).where(Tenant.code == code)).first():
        raise ConflictError("Tenant with this code already exists")

    tenant = Tenant(code=code, name=name or code, is_active=True, created_at=utcnow())
    db.add(tenant)
    _commit(db, "Tenant with this code already exists")
    db.refresh(tenant)
    return tenant


def get_tenant_by_code(db: DBSession, code: str) -> Tenant:
    tenant = db.exec(select(Tenant).where(Tenant.code == code)).first()
    if tenant is None:
        raise NotFoundError("Tenant not found")
    return tenant


def get_tenant(db: DBSession, tenant_id: UUID) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    return tenant


def list_tenants(db: DBSession, page: int = 0, page_size: int = DEFAULT_PAGE_SIZE) -> List[Tenant]:
    """Tenants ordered by code, one page at a time. Pages start at 0."""
    limit, offset = _page(page, page_size)
    return list(db.exec(select(Tenant).order_by(Tenant.code).offset(offset).limit(limit)).all())


def update_tenant(
    db: DBSession,
    tenant_id: UUID,
    name: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> Tenant:
    """
    Rename or (de)activate a tenant. The code is immutable.

    Logins to an inactive tenant fail with TenantNotFoundError; tokens
    already issued stay valid until they expire or are refreshed.
    """
    tenant = get_tenant(db, tenant_id)
    if name is not None:
        tenant.name = name
    if is_active is not None:
        tenant.is_active = is_active
    db.add(tenant)
    _commit(db, "Could not update tenant")
    db.refresh(tenant)
    return tenant


def create_user(
    db: DBSession,
    tenant_id: UUID,
    email: str,
    password: str,
    role_codes: Iterable[str] = (),
    is_verified: bool = False,
) -> User:
    """
    Create a user in a tenant and assign roles by code.

    Raises:
        NotFoundError: Unknown tenant or role code
        ConflictError: Email already registered in this tenant
    """
    email = email.strip().lower()
    if db.get(Tenant, tenant_id) is None:
        raise NotFoundError("Tenant not found")
    existing = db.exec(select(User).where(User.tenant_id == tenant_id, User.email == email)).first()
    if existing:
        raise ConflictError("Email already registered")
    roles = [get_role(db, tenant_id, code) for code in role_codes]

    now = utcnow()
    user = User(
        tenant_id=tenant_id,
        email=email,
        password_hash=hash_password(password),
        is_active=True,
        is_verified=is_verified,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    _commit(db, "Email already registered")
    db.refresh(user)

    for role in roles:
        assign_role(db, user.id, role.id)
    return user


def create_role(
    db: DBSession,
    tenant_id: UUID,
    code: str,
    name: Optional[str] = None,
    permission_codes: Iterable[str] = (),
    is_system: bool = False,
) -> Role:
    """Create a tenant-scoped role and grant it catalog permissions."""
    if db.exec(select(Role).where(Role.tenant_id == tenant_id, Role.code == code)).first():
        raise ConflictError("Role with this code already exists")

    role = Role(tenant_id=tenant_id, code=code, name=name or code, is_system=is_system)
    db.add(role)
    _commit(db, "Role with this code already exists")
    db.refresh(role)

    for permission_code in permission_codes:
        grant_permission(db, role.id, permission_code)
    return role


def get_role(db: DBSession, tenant_id: UUID, code: str) -> Role:
    role = db.exec(select(Role).where(Role.tenant_id == tenant_id, Role.code == code)).first()
    if role is None:
        raise NotFoundError(f"Role not found: {code}")
    return role


def ensure_permission(db: DBSession, code: str, description: str = "") -> Permission:
    """Fetch a catalog entry, creating it if missing."""
    permission = db.exec(select(Permission).where(Permission.code == code)).first()
    if permission is None:
        permission = Permission(code=code, description=description)
        db.add(permission)
        _commit(db, f"Permission already exists: {code}")
        db.refresh(permission)
    return permission


def grant_permission(db: DBSession, role_id: UUID, permission_code: str) -> None:
    """Grant a catalog permission to a role. Granting twice is a no-op."""
    permission = db.exec(select(Permission).where(Permission.code == permission_code)).first()
    if permission is None:
        raise NotFoundError(f"Unknown permission: {permission_code}")
    if db.get(RolePermission, (role_id, permission.id)) is None:
        db.add(RolePermission(role_id=role_id, permission_id=permission.id))
        _commit(db, "Permission already granted")


def revoke_permission(db: DBSession, role_id: UUID, permission_code: str) -> bool:
    permission = db.exec(select(Permission).where(Permission.code == permission_code)).first()
    if permission is None:
        return False
    link = db.get(RolePermission, (role_id, permission.id))
    if link is None:
        return False
    db.delete(link)
    _commit(db, "Could not revoke permission")
    return True


def assign_role(db: DBSession, user_id: UUID, role_id: UUID) -> None:
    """
    Link a user to a role of the same tenant.

    Raises:
        NotFoundError: Unknown user or role
        TenantIntegrityError: Role belongs to a different tenant
    """
    user = db.get(User, user_id)
    role = db.get(Role, role_id)
    if user is None or role is None:
        raise NotFoundError("User or role not found")
    if user.tenant_id != role.tenant_id:
        raise TenantIntegrityError("Role belongs to a different tenant than the user")
    if db.get(UserRole, (user_id, role_id)) is None:
        db.add(UserRole(user_id=user_id, role_id=role_id))
        _commit(db, "Role already assigned")


def unassign_role(db: DBSession, user_id: UUID, role_id: UUID) -> bool:
    link = db.get(UserRole, (user_id, role_id))
    if link is None:
        return False
    db.delete(link)
    _commit(db, "Could not unassign role")
    return True


def get_user(db: DBSession, tenant_id: UUID, user_id: UUID) -> User:
    user = db.get(User, user_id)
    if user is None or user.tenant_id != tenant_id:
        raise NotFoundError("User not found")
    return user


def list_users(db: DBSession, tenant_id: UUID, page: int = 0, page_size: int = DEFAULT_PAGE_SIZE) -> List[User]:
    """Users of one tenant ordered by email. Pages start at 0."""
    limit, offset = _page(page, page_size)
    statement = select(User).where(User.tenant_id == tenant_id).order_by(User.email).offset(offset).limit(limit)
    return list(db.exec(statement).all())


def count_users(db: DBSession, tenant_id: UUID) -> int:
    return db.exec(select(func.count()).select_from(User).where(User.tenant_id == tenant_id)).one()


def role_codes(db: DBSession, user_id: UUID) -> List[str]:
    """Codes of the roles assigned to a user, sorted."""
    statement = select(Role.code).join(UserRole, UserRole.role_id == Role.id).where(UserRole.user_id == user_id)
    return sorted(db.exec(statement).all())


def update_user(
    db: DBSession,
    tenant_id: UUID,
    user_id: UUID,
    email: Optional[str] = None,
    is_active: Optional[bool] = None,
    is_verified: Optional[bool] = None,
    roles: Optional[Iterable[str]] = None,
) -> User:
    """
    Administrative update of a user in the caller's tenant.

    ``roles`` replaces the whole assignment when given. Every code is
    resolved before anything is written, so an unknown code changes nothing.
    Deactivation does not touch sessions; callers revoke them.

    Raises:
        NotFoundError: Unknown user, or unknown role code
        ConflictError: Email already registered in this tenant
    """
    user = get_user(db, tenant_id, user_id)
    new_roles = None if roles is None else [get_role(db, tenant_id, code) for code in roles]

    if email is not None:
        email = email.strip().lower()
        existing = db.exec(select(User).where(User.tenant_id == tenant_id, User.email == email)).first()
        if existing is not None and existing.id != user.id:
            raise ConflictError("Email already registered")
        user.email = email
    if is_active is not None:
        user.is_active = is_active
    if is_verified is not None:
        user.is_verified = is_verified
    user.updated_at = utcnow()
    db.add(user)
    _commit(db, "Email already registered")

    if new_roles is not None:
        wanted = {role.id for role in new_roles}
        for link in db.exec(select(UserRole).where(UserRole.user_id == user.id)).all():
            if link.role_id not in wanted:
                db.delete(link)
        _commit(db, "Could not update roles")
        for role in new_roles:
            assign_role(db, user.id, role.id)

    db.refresh(user)
    return user
