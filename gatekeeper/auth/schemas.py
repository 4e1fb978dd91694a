"""
Gatekeeper - Authentication Request/Response Schemas

Wire contracts for the /auth endpoints. ORM rows never leave the service;
handlers build these models from orchestrator results.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID
import re

from pydantic import BaseModel, Field, validator


EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")


def _normalize_email(v: str) -> str:
    v = v.strip()
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Invalid email format")
    return v.lower()


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""
    tenant_code: str = Field(..., min_length=1, max_length=64, description="Tenant code")
    email: str = Field(..., description="User email address")
    password: str = Field(..., min_length=1, max_length=1024, description="User password")

    @validator("email")
    def email_format(cls, v):
        return _normalize_email(v)


class UserProfileResponse(BaseModel):
    """Public user profile. Never contains the password hash."""
    id: UUID
    tenant_id: UUID
    email: str
    roles: List[str]
    permissions: List[str]
    is_active: bool
    is_verified: bool
    last_login_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    """Response body for login and refresh."""
    access_token: str = Field(..., description="JWT access token")
    refresh_token: str = Field(..., description="Single-use refresh token")
    token_type: str = Field(default="bearer", description="Token type")
    expires_in: int = Field(..., description="Seconds until the access token expires")
    session_id: UUID
    user: UserProfileResponse


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""
    refresh_token: str = Field(..., min_length=1, description="Refresh token")


class ValidateRequest(BaseModel):
    access_token: str = Field(..., min_length=1)
    live: bool = Field(default=False, description="Re-check the account and permissions in the store")
    required_permissions: List[str] = Field(
        default_factory=list,
        description="Fail with 403 unless the token grants every one of these codes"
    )


class ClaimsResponse(BaseModel):
    """Decoded access token claims."""
    sub: UUID
    tid: UUID
    email: str
    roles: List[str]
    permissions: List[str]
    sid: UUID
    jti: str
    iat: datetime
    exp: datetime


class LogoutRequest(BaseModel):
    """Request body for POST /auth/logout."""
    refresh_token: str = Field(..., min_length=1)
    all_sessions: bool = Field(
        default=False,
        description="Revoke all sessions (logout everywhere)"
    )


class LogoutResponse(BaseModel):
    message: str = Field(default="Session revoked")
    sessions_revoked: int = Field(default=1)


class ChangePasswordRequest(BaseModel):
    """Request body for PUT /auth/change-password."""
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=1024)

    @validator("new_password")
    def password_strength(cls, v):
        """Enforce password strength requirements."""
        if not re.search(r"[A-Za-z]", v):
            raise ValueError("Password must contain at least one letter")
        if not re.search(r"\d", v):
            raise ValueError("Password must contain at least one digit")
        return v


class ChangePasswordResponse(BaseModel):
    message: str = "Password changed"
    sessions_revoked: int


class SessionInfo(BaseModel):
    """Session information for user display."""
    session_id: UUID
    issued_at: datetime
    last_seen: datetime
    expires_at: datetime
    ip_address: Optional[str]
    user_agent: Optional[str]
    is_current: bool = False

    class Config:
        from_attributes = True


class ActiveSessionsResponse(BaseModel):
    """Response body for GET /auth/sessions."""
    sessions: List[SessionInfo]
    total: int


class CreateUserRequest(BaseModel):
    """Request body for POST /auth/users. The user joins the caller's tenant."""
    email: str
    password: str = Field(..., min_length=8, max_length=1024)
    roles: List[str] = Field(default_factory=lambda: ["user"])

    @validator("email")
    def email_format(cls, v):
        return _normalize_email(v)

    @validator("password")
    def password_strength(cls, v):
        if not re.search(r"[A-Za-z]", v):
            raise ValueError("Password must contain at least one letter")
        if not re.search(r"\d", v):
            raise ValueError("Password must contain at least one digit")
        return v


class CreateUserResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    email: str
    roles: List[str]
    created_at: datetime


class UserResponse(BaseModel):
    """Administrative view of a user."""
    id: UUID
    tenant_id: UUID
    email: str
    roles: List[str]
    is_active: bool
    is_verified: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class UserListResponse(BaseModel):
    """Response body for GET /auth/users."""
    users: List[UserResponse]
    page: int
    page_size: int
    total: int


class UpdateUserRequest(BaseModel):
    """Request body for PUT /auth/users/{user_id}. Omitted fields are left alone."""
    email: Optional[str] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None
    roles: Optional[List[str]] = Field(default=None, description="Replaces the current role set")

    @validator("email")
    def email_format(cls, v):
        if v is None:
            return v
        return _normalize_email(v)


class CreateTenantRequest(BaseModel):
    code: str = Field(..., min_length=3, max_length=20)
    name: str = Field(..., min_length=1, max_length=100)

    @validator("code")
    def code_format(cls, v):
        v = v.strip().lower()
        if not re.match(r"^[a-z0-9][a-z0-9_-]*$", v):
            raise ValueError("Tenant code may contain only letters, digits, - and _")
        return v


class UpdateTenantRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    is_active: Optional[bool] = None


class TenantResponse(BaseModel):
    id: UUID
    code: str
    name: str
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class TenantListResponse(BaseModel):
    tenants: List[TenantResponse]
    page: int
    page_size: int


class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str
    error_code: Optional[str] = None
    request_id: Optional[str] = None
