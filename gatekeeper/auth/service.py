"""
Gatekeeper - Authentication Orchestrator

Composes the lockout tracker, credential verifier, permission resolver,
token issuer and session store into the operations exposed to the HTTP
layer: login, refresh, validate, logout and change-password.

Login runs strictly in this order:
    1. tenant lookup            (TenantNotFoundError)
    2. lockout check            (AccountLockedError, independent of password)
    3. credential check         (InvalidCredentialsError, failure recorded)
    4. success recorded, permissions resolved
    5. token pair issued, session created

Refresh: verify token -> rotate session -> re-resolve permissions -> new pair.

Security:
- Unknown email and wrong password fail identically, with equal bcrypt cost
- Access tokens carry a permission snapshot; validate() never touches the
  store, validate_live() does
- Security-relevant events are logged under ``gatekeeper.auth``; the
  password, its hash and raw refresh tokens never are
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID, uuid4
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session as DBSession, select

from gatekeeper.auth import sessions as session_store
from gatekeeper.auth.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    InvalidTokenError,
    PersistenceError,
    ReusedTokenError,
    TenantNotFoundError,
)
from gatekeeper.auth.lockout import LockoutPolicy, is_locked, record_failure, record_success
from gatekeeper.auth.models import Tenant, User, utcnow
from gatekeeper.auth.password import burn_verification, hash_password, needs_rehash, verify_password
from gatekeeper.auth.permissions import PermissionResolver, ResolvedAccess, check_permission
from gatekeeper.auth.tokens import AccessClaims, TokenIssuer, TokenPair


logger = logging.getLogger("gatekeeper.auth")


@dataclass
class UserProfile:
    """Public view of a user. Never includes the password hash."""
    id: UUID
    tenant_id: UUID
    email: str
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    is_active: bool = True
    is_verified: bool = False
    last_login_at: Optional[datetime] = None


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: UUID
    user: UserProfile
    token_type: str = "bearer"


def _profile(user: User, access: ResolvedAccess) -> UserProfile:
    return UserProfile(
        id=user.id,
        tenant_id=user.tenant_id,
        email=user.email,
        roles=sorted(access.roles),
        permissions=sorted(access.permissions),
        is_active=user.is_active,
        is_verified=user.is_verified,
        last_login_at=user.last_login_at,
    )


class AuthService:
    """
    Usage:
        service = AuthService.from_settings(get_session_factory(engine), settings)
        result = await service.login("demo", "admin@demo.com", "admin123")
        claims = service.validate(result.access_token)
        check_permission(claims, "users.create")
    """

    def __init__(
        self,
        session_factory: Callable[[], DBSession],
        issuer: TokenIssuer,
        lockout_policy: Optional[LockoutPolicy] = None,
    ):
        self.session_factory = session_factory
        self.issuer = issuer
        self.lockout_policy = lockout_policy or LockoutPolicy()

    @classmethod
    def from_settings(cls, session_factory: Callable[[], DBSession], settings) -> "AuthService":
        return cls(
            session_factory,
            TokenIssuer.from_settings(settings),
            LockoutPolicy.from_settings(settings),
        )

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------

    async def login(
        self,
        tenant_code: str,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """
        Authenticate with tenant code, email and password.

        Raises:
            TenantNotFoundError: Unknown or inactive tenant
            AccountLockedError: Lock in force, regardless of password
            InvalidCredentialsError: Unknown user, wrong password, inactive user
            PersistenceError: Store unavailable
        """
        email = email.strip().lower()
        db = self.session_factory()
        try:
            tenant = self._find_tenant(db, tenant_code)
            user = self._first(db, select(User).where(User.tenant_id == tenant.id, User.email == email))

            if user is None:
                burn_verification(password)
                logger.warning("auth.login.failure tenant=%s reason=unknown_user", tenant.code)
                raise InvalidCredentialsError()

            if is_locked(user):
                logger.warning("auth.login.locked user_id=%s locked_until=%s", user.id, user.locked_until)
                raise AccountLockedError(locked_until=user.locked_until)

            if not verify_password(password, user.password_hash):
                await self._record_failure(db, user)
                logger.warning("auth.login.failure user_id=%s reason=invalid_password", user.id)
                raise InvalidCredentialsError()

            if not user.is_active:
                logger.warning("auth.login.failure user_id=%s reason=inactive", user.id)
                raise InvalidCredentialsError()

            await record_success(db, user.id)
            if needs_rehash(user.password_hash):
                self._store_password(db, user, password)

            access = PermissionResolver(db).resolve(user.id, tenant.id)
            session_id = uuid4()
            pair = self.issuer.issue(user.id, tenant.id, user.email, access, session_id, session_id)
            await session_store.create_session(
                db,
                user_id=user.id,
                tenant_id=tenant.id,
                refresh_token=pair.refresh_token,
                expires_at=pair.refresh_expires_at,
                session_id=session_id,
                chain_id=session_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            db.refresh(user)

            logger.info("auth.login.success user_id=%s session_id=%s jti=%s", user.id, session_id, pair.access_jti)
            return self._result(user, access, pair, session_id)
        finally:
            db.close()

    async def _record_failure(self, db: DBSession, user: User) -> None:
        try:
            state = await record_failure(db, user.id, self.lockout_policy)
        except PersistenceError:
            if self.lockout_policy.fail_closed:
                logger.error("auth.lockout.write_failed user_id=%s policy=fail_closed", user.id)
                raise AccountLockedError()
            raise
        if state.locked:
            logger.warning("auth.lockout user_id=%s locked_until=%s", user.id, state.locked_until)

    # ------------------------------------------------------------------
    # refresh
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> AuthResult:
        """
        Redeem a refresh token for a new pair with freshly resolved permissions.

        Raises:
            InvalidTokenError: Bad signature, wrong type, unknown session,
                user gone or inactive
            ExpiredTokenError: Token or session expired
            ReusedTokenError: Token already redeemed; its chain is revoked
            PersistenceError: Store unavailable
        """
        claims = self.issuer.verify_refresh(refresh_token)
        db = self.session_factory()
        try:
            user = self._get(db, User, claims.sub)
            if user is None or user.tenant_id != claims.tid:
                raise InvalidTokenError("Unknown subject")
            tenant = self._get(db, Tenant, claims.tid)
            if tenant is None or not tenant.is_active or not user.is_active:
                raise InvalidTokenError("Account unavailable")

            successor_id = uuid4()
            access = pair = None

            def mint():
                nonlocal access, pair
                access = PermissionResolver(db).resolve(user.id, tenant.id)
                pair = self.issuer.issue(user.id, tenant.id, user.email, access, successor_id, claims.chain)
                return pair.refresh_token, pair.refresh_expires_at

            try:
                await session_store.redeem_session(
                    db,
                    presented_token=refresh_token,
                    session_id=claims.sid,
                    successor_id=successor_id,
                    mint=mint,
                )
            except ReusedTokenError:
                logger.warning("auth.refresh.reuse user_id=%s chain_id=%s", user.id, claims.chain)
                raise

            logger.info("auth.refresh user_id=%s session_id=%s", user.id, successor_id)
            return self._result(user, access, pair, successor_id)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # validate
    # ------------------------------------------------------------------

    def validate(self, access_token: str) -> AccessClaims:
        """
        Stateless validation: signature and expiry only.

        Raises:
            InvalidTokenError, ExpiredTokenError
        """
        return self.issuer.verify_access(access_token)

    async def validate_live(self, access_token: str) -> AccessClaims:
        """
        Validate, then confirm against the store.

        The user must still exist, be active and unlocked; roles and
        permissions in the returned claims are re-resolved now rather than
        taken from the token snapshot.
        """
        claims = self.validate(access_token)
        db = self.session_factory()
        try:
            user = self._get(db, User, claims.sub)
            if user is None or user.tenant_id != claims.tid or not user.is_active or is_locked(user):
                raise InvalidTokenError("Account unavailable")
            access = PermissionResolver(db).resolve(user.id, user.tenant_id)
        finally:
            db.close()

        return claims.model_copy(update={
            "roles": sorted(access.roles),
            "permissions": sorted(access.permissions),
        })

    def check_permission(self, claims: AccessClaims, required_code: str) -> bool:
        return check_permission(claims, required_code)

    # ------------------------------------------------------------------
    # logout
    # ------------------------------------------------------------------

    async def logout(self, refresh_token: str, everywhere: bool = False) -> int:
        """
        Revoke the session behind a refresh token, or all of the user's sessions.

        Idempotent: logging out an already-revoked session succeeds.

        Returns:
            Number of sessions affected

        Raises:
            InvalidTokenError: Token is not one of ours
        """
        claims = self.issuer.verify_refresh(refresh_token)
        db = self.session_factory()
        try:
            session = await session_store.get_session(db, claims.sid)
            if session is None or session.token_hash != session_store.fingerprint(refresh_token):
                raise InvalidTokenError("Unknown session")

            if everywhere:
                count = await session_store.revoke_all_user_sessions(db, session.user_id)
                logger.info("auth.logout.all user_id=%s sessions=%d", session.user_id, count)
                return count

            await session_store.revoke_session(db, session.session_id)
            logger.info("auth.logout user_id=%s session_id=%s", session.user_id, session.session_id)
            return 1
        finally:
            db.close()

    # ------------------------------------------------------------------
    # change password
    # ------------------------------------------------------------------

    async def change_password(self, user_id: UUID, current_password: str, new_password: str) -> int:
        """
        Replace the password hash and sign the user out everywhere.

        Wrong current passwords count towards the same lockout as login.

        Returns:
            Number of sessions revoked

        Raises:
            InvalidCredentialsError: Unknown user or wrong current password
            AccountLockedError: Lock in force, regardless of password
        """
        db = self.session_factory()
        try:
            user = self._get(db, User, user_id)
            if user is None:
                burn_verification(current_password)
                raise InvalidCredentialsError()
            if is_locked(user):
                logger.warning("auth.password.locked user_id=%s locked_until=%s", user.id, user.locked_until)
                raise AccountLockedError(locked_until=user.locked_until)
            if not verify_password(current_password, user.password_hash):
                await self._record_failure(db, user)
                logger.warning("auth.password.failure user_id=%s reason=invalid_password", user.id)
                raise InvalidCredentialsError()

            self._store_password(db, user, new_password)
            count = await session_store.revoke_all_user_sessions(db, user.id)
            logger.info("auth.password.changed user_id=%s sessions_revoked=%d", user.id, count)
            return count
        finally:
            db.close()

    # ------------------------------------------------------------------
    # profile
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: UUID) -> UserProfile:
        db = self.session_factory()
        try:
            user = self._get(db, User, user_id)
            if user is None:
                raise InvalidTokenError("Unknown subject")
            access = PermissionResolver(db).resolve(user.id, user.tenant_id)
            return _profile(user, access)
        finally:
            db.close()

    async def list_sessions(self, user_id: UUID):
        db = self.session_factory()
        try:
            return await session_store.get_active_sessions(db, user_id)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _result(self, user: User, access: ResolvedAccess, pair: TokenPair, session_id: UUID) -> AuthResult:
        return AuthResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            session_id=session_id,
            user=_profile(user, access),
        )

    def _find_tenant(self, db: DBSession, tenant_code: str) -> Tenant:
        tenant = self._first(db, select(Tenant).where(Tenant.code == tenant_code))
        if tenant is None or not tenant.is_active:
            raise TenantNotFoundError()
        return tenant

    def _store_password(self, db: DBSession, user: User, password: str) -> None:
        try:
            user.password_hash = hash_password(password)
            user.updated_at = utcnow()
            db.add(user)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Could not store password: {e.__class__.__name__}") from e

    @staticmethod
    def _first(db: DBSession, statement):
        try:
            return db.exec(statement).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Store read failed: {e.__class__.__name__}") from e

    @staticmethod
    def _get(db: DBSession, model, ident):
        try:
            return db.get(model, ident)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Store read failed: {e.__class__.__name__}") from e
