"""
Gatekeeper - Identity and Authorization Database Models

SQLModel-based models for tenants, users, RBAC and refresh-token sessions.
Uses PostgreSQL for production, SQLite for local development.

Security:
- Passwords stored as bcrypt hashes only
- Sessions store a SHA-256 fingerprint of the refresh token, never the token
- Every user, role and session belongs to exactly one tenant
- All timestamps are naive UTC
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, String, Boolean, DateTime, Integer, UniqueConstraint


def utcnow() -> datetime:
    """Current UTC time without tzinfo (SQLite drops it on round-trip)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Tenant(SQLModel, table=True):
    """
    Isolated organizational namespace.

    Created by an administrative operation only; login never creates one.
    """
    __tablename__ = "tenants"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    code: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False),
        description="Unique tenant code used at login"
    )
    name: str = Field(sa_column=Column(String(255), nullable=False))
    is_active: bool = Field(sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False, default=utcnow)
    )


class UserRole(SQLModel, table=True):
    """Many-to-many link between users and roles."""
    __tablename__ = "user_roles"

    user_id: UUID = Field(foreign_key="users.id", primary_key=True)
    role_id: UUID = Field(foreign_key="roles.id", primary_key=True)


class RolePermission(SQLModel, table=True):
    """Many-to-many link between roles and the shared permission catalog."""
    __tablename__ = "role_permissions"

    role_id: UUID = Field(foreign_key="roles.id", primary_key=True)
    permission_id: UUID = Field(foreign_key="permissions.id", primary_key=True)


class Permission(SQLModel, table=True):
    """
    Catalog entry such as ``users.create``.

    Not tenant-scoped: the catalog is shared, only grants are per tenant.
    """
    __tablename__ = "permissions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    code: str = Field(
        sa_column=Column(String(128), unique=True, index=True, nullable=False),
        description="Globally unique resource.action code"
    )
    description: str = Field(default="", sa_column=Column(String(255), nullable=False, default=""))

    roles: list["Role"] = Relationship(back_populates="permissions", link_model=RolePermission)


class Role(SQLModel, table=True):
    """
    Tenant-scoped role.

    Attributes:
        code: Unique within the tenant
        is_system: True for roles installed from the catalog, False for custom
    """
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_roles_tenant_code"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    tenant_id: UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    code: str = Field(sa_column=Column(String(64), nullable=False))
    name: str = Field(default="", sa_column=Column(String(255), nullable=False, default=""))
    is_system: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False)
    )

    permissions: list[Permission] = Relationship(back_populates="roles", link_model=RolePermission)
    users: list["User"] = Relationship(back_populates="roles", link_model=UserRole)


class User(SQLModel, table=True):
    """
    User account scoped to one tenant.

    Attributes:
        email: Login identifier, unique within the tenant
        password_hash: bcrypt hash (never store plaintext)
        failed_login_attempts: Consecutive failures, capped at the lockout threshold
        locked_until: Login refused while this lies in the future
    """
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    tenant_id: UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    email: str = Field(sa_column=Column(String(255), index=True, nullable=False))
    password_hash: str = Field(sa_column=Column(String(255), nullable=False))
    is_active: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, default=True)
    )
    is_verified: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False)
    )
    failed_login_attempts: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, default=0)
    )
    locked_until: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True)
    )
    last_login_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    )

    roles: list[Role] = Relationship(back_populates="users", link_model=UserRole)
    sessions: list["Session"] = Relationship(back_populates="user")


class Session(SQLModel, table=True):
    """
    Refresh-token record.

    One login starts a chain; every refresh revokes the redeemed record and
    points ``replaced_by`` at its successor. All records of a chain share
    ``chain_id`` so reuse of any member can revoke the whole chain.

    Attributes:
        session_id: Embedded as ``sid`` in the refresh token
        token_hash: SHA-256 hex of the refresh token
        is_revoked: Set on rotation, logout, or reuse detection
        replaced_by: Successor session_id after rotation
    """
    __tablename__ = "sessions"

    session_id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", nullable=False, index=True)
    tenant_id: UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    chain_id: UUID = Field(nullable=False, index=True)
    token_hash: str = Field(sa_column=Column(String(64), nullable=False))
    issued_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow)
    )
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    last_seen: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow)
    )
    is_revoked: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False)
    )
    revoked_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True)
    )
    replaced_by: Optional[UUID] = Field(default=None)
    ip_address: Optional[str] = Field(
        default=None,
        sa_column=Column(String(45), nullable=True)
    )
    user_agent: Optional[str] = Field(
        default=None,
        sa_column=Column(String(512), nullable=True)
    )

    user: Optional[User] = Relationship(back_populates="sessions")
