"""
Gatekeeper - Authentication Routes

API endpoints for authentication:
- POST /auth/login            - Authenticate and open a session
- POST /auth/refresh          - Rotate a refresh token for a new pair
- POST /auth/validate         - Decode an access token
- POST /auth/logout           - Revoke a session (or all of them)
- PUT  /auth/change-password  - Replace the password, revoke all sessions
- GET  /auth/me               - Current user profile
- GET  /auth/sessions         - List active sessions
- POST /auth/users            - Create a user in the caller's tenant
- GET  /auth/users            - List users of the caller's tenant
- GET  /auth/users/{id}       - One user of the caller's tenant
- PUT  /auth/users/{id}       - Administrative update
- DELETE /auth/users/{id}     - Deactivate and sign out everywhere
- POST /auth/tenants          - Create a tenant with its system roles
- GET  /auth/tenants          - List tenants
- GET  /auth/tenants/{id}     - One tenant
- PUT  /auth/tenants/{id}     - Rename or (de)activate a tenant

Tenant management is a platform operation and requires system.settings,
which no seeded role grants.

Handlers stay thin: errors raised by the orchestrator propagate to the
application's AuthError handler.
"""

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status

from gatekeeper.auth import admin
from gatekeeper.auth import sessions as session_store
from gatekeeper.auth.dependencies import get_auth_service, get_current_claims, get_db, require_permission
from gatekeeper.auth.errors import ConflictError, PermissionDeniedError
from gatekeeper.auth.permissions import has_all_permissions
from gatekeeper.auth.schemas import (
    ActiveSessionsResponse,
    ChangePasswordRequest,
    ChangePasswordResponse,
    ClaimsResponse,
    CreateTenantRequest,
    CreateUserRequest,
    CreateUserResponse,
    ErrorResponse,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    SessionInfo,
    TenantListResponse,
    TenantResponse,
    TokenResponse,
    UpdateTenantRequest,
    UpdateUserRequest,
    UserListResponse,
    UserProfileResponse,
    UserResponse,
    ValidateRequest,
)
from gatekeeper.auth.seed import seed_tenant_roles
from gatekeeper.auth.service import AuthResult, AuthService
from gatekeeper.auth.tokens import AccessClaims
from gatekeeper.gateway.middleware import client_ip


router = APIRouter(prefix="/auth", tags=["authentication"])


def _token_response(result: AuthResult) -> TokenResponse:
    return TokenResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        session_id=result.session_id,
        user=UserProfileResponse(**asdict(result.user)),
    )


@router.post(
    "/login",
    response_model=TokenResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 423: {"model": ErrorResponse}},
    summary="Authenticate user and create session",
)
async def login(
    request: Request,
    credentials: LoginRequest,
    service: AuthService = Depends(get_auth_service),
):
    """
    Authenticate with tenant code, email and password.

    Returns:
        Access and refresh tokens plus the public user profile

    Raises:
        401: Invalid credentials
        404: Unknown tenant
        423: Account locked
    """
    result = await service.login(
        credentials.tenant_code,
        credentials.email,
        credentials.password,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _token_response(result)


@router.post(
    "/refresh",
    response_model=TokenResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Rotate refresh token",
)
async def refresh(body: RefreshRequest, service: AuthService = Depends(get_auth_service)):
    """
    Exchange a refresh token for a new pair. The presented token is spent;
    presenting it again revokes every session descending from the same login.
    """
    result = await service.refresh(body.refresh_token)
    return _token_response(result)


@router.post(
    "/validate",
    response_model=ClaimsResponse,
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def validate(body: ValidateRequest, service: AuthService = Depends(get_auth_service)):
    """
    Decode an access token for a downstream service.

    With required_permissions set, a token lacking any of them gets 403.
    """
    if body.live:
        claims = await service.validate_live(body.access_token)
    else:
        claims = service.validate(body.access_token)
    if body.required_permissions and not has_all_permissions(claims, *body.required_permissions):
        raise PermissionDeniedError("Insufficient permissions")
    return ClaimsResponse(**claims.model_dump())


@router.post("/logout", response_model=LogoutResponse, responses={401: {"model": ErrorResponse}})
async def logout(body: LogoutRequest, service: AuthService = Depends(get_auth_service)):
    """
    Revoke the session behind a refresh token. Logging out twice succeeds.

    Set all_sessions=true to logout everywhere.
    """
    count = await service.logout(body.refresh_token, everywhere=body.all_sessions)
    if body.all_sessions:
        return LogoutResponse(message="All sessions revoked", sessions_revoked=count)
    return LogoutResponse(message="Session revoked", sessions_revoked=count)


@router.put("/change-password", response_model=ChangePasswordResponse, responses={401: {"model": ErrorResponse}})
async def change_password(
    body: ChangePasswordRequest,
    claims: AccessClaims = Depends(get_current_claims),
    service: AuthService = Depends(get_auth_service),
):
    count = await service.change_password(claims.sub, body.current_password, body.new_password)
    return ChangePasswordResponse(sessions_revoked=count)


@router.get("/me", response_model=UserProfileResponse, summary="Get current user information")
async def get_me(
    claims: AccessClaims = Depends(get_current_claims),
    service: AuthService = Depends(get_auth_service),
):
    """Profile with roles and permissions resolved from the store."""
    profile = await service.get_profile(claims.sub)
    return UserProfileResponse(**asdict(profile))


@router.get("/sessions", response_model=ActiveSessionsResponse, summary="List active sessions")
async def get_sessions(
    claims: AccessClaims = Depends(get_current_claims),
    service: AuthService = Depends(get_auth_service),
):
    active = await service.list_sessions(claims.sub)
    sessions = [
        SessionInfo(
            session_id=s.session_id,
            issued_at=s.issued_at,
            last_seen=s.last_seen,
            expires_at=s.expires_at,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            is_current=s.session_id == claims.sid,
        )
        for s in active
    ]
    return ActiveSessionsResponse(sessions=sessions, total=len(sessions))


@router.post(
    "/users",
    response_model=CreateUserResponse,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Create a user in the caller's tenant",
)
@require_permission("users.create")
async def create_user(
    request: Request,
    body: CreateUserRequest,
    claims: AccessClaims = Depends(get_current_claims),
):
    db = get_db(request)
    try:
        user = admin.create_user(db, claims.tid, body.email, body.password, role_codes=body.roles)
        return CreateUserResponse(
            id=user.id,
            tenant_id=user.tenant_id,
            email=user.email,
            roles=sorted(body.roles),
            created_at=user.created_at,
        )
    finally:
        db.close()


def _user_response(db, user) -> UserResponse:
    return UserResponse(
        id=user.id,
        tenant_id=user.tenant_id,
        email=user.email,
        roles=admin.role_codes(db, user.id),
        is_active=user.is_active,
        is_verified=user.is_verified,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


@router.get("/users", response_model=UserListResponse, responses={403: {"model": ErrorResponse}})
@require_permission("users.read")
async def list_users(
    request: Request,
    page: int = Query(0, ge=0),
    page_size: int = Query(admin.DEFAULT_PAGE_SIZE, ge=1, le=admin.MAX_PAGE_SIZE),
    claims: AccessClaims = Depends(get_current_claims),
):
    db = get_db(request)
    try:
        users = admin.list_users(db, claims.tid, page, page_size)
        return UserListResponse(
            users=[_user_response(db, u) for u in users],
            page=page,
            page_size=page_size,
            total=admin.count_users(db, claims.tid),
        )
    finally:
        db.close()


@router.get("/users/{user_id}", response_model=UserResponse, responses={404: {"model": ErrorResponse}})
@require_permission("users.read")
async def get_user(
    request: Request,
    user_id: UUID,
    claims: AccessClaims = Depends(get_current_claims),
):
    db = get_db(request)
    try:
        return _user_response(db, admin.get_user(db, claims.tid, user_id))
    finally:
        db.close()


@router.put(
    "/users/{user_id}",
    response_model=UserResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@require_permission("users.update")
async def update_user(
    request: Request,
    user_id: UUID,
    body: UpdateUserRequest,
    claims: AccessClaims = Depends(get_current_claims),
):
    """
    Update email, flags or the role set of a user in the caller's tenant.

    Deactivating a user revokes all of their sessions. Role changes reach
    existing sessions at their next refresh.
    """
    if body.is_active is False and user_id == claims.sub:
        raise ConflictError("Cannot deactivate your own account")

    db = get_db(request)
    try:
        user = admin.update_user(
            db,
            claims.tid,
            user_id,
            email=body.email,
            is_active=body.is_active,
            is_verified=body.is_verified,
            roles=body.roles,
        )
        if body.is_active is False:
            await session_store.revoke_all_user_sessions(db, user.id)
        return _user_response(db, user)
    finally:
        db.close()


@router.delete(
    "/users/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@require_permission("users.delete")
async def delete_user(
    request: Request,
    user_id: UUID,
    claims: AccessClaims = Depends(get_current_claims),
):
    """Soft delete: the row stays for audit, the account is deactivated and signed out."""
    if user_id == claims.sub:
        raise ConflictError("Cannot delete your own account")

    db = get_db(request)
    try:
        user = admin.update_user(db, claims.tid, user_id, is_active=False)
        await session_store.revoke_all_user_sessions(db, user.id)
    finally:
        db.close()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/tenants",
    response_model=TenantResponse,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@require_permission("system.settings")
async def create_tenant(
    request: Request,
    body: CreateTenantRequest,
    claims: AccessClaims = Depends(get_current_claims),
):
    db = get_db(request)
    try:
        tenant = admin.create_tenant(db, body.code, body.name)
        seed_tenant_roles(db, tenant.id)
        return TenantResponse.model_validate(tenant)
    finally:
        db.close()


@router.get("/tenants", response_model=TenantListResponse, responses={403: {"model": ErrorResponse}})
@require_permission("system.settings")
async def list_tenants(
    request: Request,
    page: int = Query(0, ge=0),
    page_size: int = Query(admin.DEFAULT_PAGE_SIZE, ge=1, le=admin.MAX_PAGE_SIZE),
    claims: AccessClaims = Depends(get_current_claims),
):
    db = get_db(request)
    try:
        tenants = admin.list_tenants(db, page, page_size)
        return TenantListResponse(
            tenants=[TenantResponse.model_validate(t) for t in tenants],
            page=page,
            page_size=page_size,
        )
    finally:
        db.close()


@router.get("/tenants/{tenant_id}", response_model=TenantResponse, responses={404: {"model": ErrorResponse}})
@require_permission("system.settings")
async def get_tenant(
    request: Request,
    tenant_id: UUID,
    claims: AccessClaims = Depends(get_current_claims),
):
    db = get_db(request)
    try:
        return TenantResponse.model_validate(admin.get_tenant(db, tenant_id))
    finally:
        db.close()


@router.put("/tenants/{tenant_id}", response_model=TenantResponse, responses={404: {"model": ErrorResponse}})
@require_permission("system.settings")
async def update_tenant(
    request: Request,
    tenant_id: UUID,
    body: UpdateTenantRequest,
    claims: AccessClaims = Depends(get_current_claims),
):
    db = get_db(request)
    try:
        tenant = admin.update_tenant(db, tenant_id, name=body.name, is_active=body.is_active)
        return TenantResponse.model_validate(tenant)
    finally:
        db.close()
