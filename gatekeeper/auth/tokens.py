"""
Gatekeeper - JWT Token Management

Mints and validates two kinds of signed tokens:

- Access token: short-lived, carries user id (sub), tenant id (tid), email,
  role codes, permission codes and the session id. Verified statelessly.
- Refresh token: long-lived, carries only sub, tid, sid (session) and
  chain (session chain). Permissions are re-resolved on every refresh.

Security:
- Every token has a random jti for audit correlation
- ``typ`` separates access from refresh tokens; one is never accepted as
  the other
- ``iss`` is checked on decode
- Signing is behind the TokenSigner protocol so the algorithm or key can be
  rotated without touching the orchestrator
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence
from uuid import UUID
import secrets

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError
from pydantic import BaseModel, Field

from gatekeeper.auth.errors import ExpiredTokenError, InvalidTokenError
from gatekeeper.auth.permissions import ResolvedAccess


ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenSigner(Protocol):
    """Capability to sign a claim set and to verify a compact token."""

    def sign(self, claims: Dict[str, Any]) -> str: ...

    def verify(self, token: str) -> Dict[str, Any]: ...


class JoseSigner:
    """
    HMAC/RSA/EC signer backed by python-jose.

    Args:
        secret: Active signing key
        algorithm: JWS algorithm, e.g. HS256
        issuer: Value written to and required in ``iss``
        previous_secrets: Retired keys still accepted when verifying
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        issuer: str = "gatekeeper",
        previous_secrets: Sequence[str] = (),
    ):
        if not secret:
            raise ValueError("A signing secret is required")
        self.algorithm = algorithm
        self.issuer = issuer
        self._secret = secret
        self._verification_keys = [secret, *previous_secrets]

    def sign(self, claims: Dict[str, Any]) -> str:
        return jwt.encode({**claims, "iss": self.issuer}, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Dict[str, Any]:
        """
        Raises:
            ExpiredTokenError: Signature valid but exp has passed
            InvalidTokenError: Anything else
        """
        last_error: Optional[Exception] = None
        for key in self._verification_keys:
            try:
                return jwt.decode(token, key, algorithms=[self.algorithm], issuer=self.issuer)
            except ExpiredSignatureError as e:
                raise ExpiredTokenError() from e
            except JWTError as e:
                last_error = e
        raise InvalidTokenError(f"Token validation failed: {last_error}")


class AccessClaims(BaseModel):
    """
    Decoded access token.

    Attributes:
        sub: User ID
        tid: Tenant ID
        sid: Session the token was issued with
        roles: Role codes at issuance
        permissions: Permission codes at issuance (snapshot)
        jti: Unique token ID for audit
    """
    sub: UUID
    tid: UUID
    email: str
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    sid: UUID
    jti: str
    iat: datetime
    exp: datetime
    iss: str
    typ: str


class RefreshClaims(BaseModel):
    """Decoded refresh token. Deliberately carries no permissions."""
    sub: UUID
    tid: UUID
    sid: UUID
    chain: UUID
    jti: str
    iat: datetime
    exp: datetime
    iss: str
    typ: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    access_jti: str
    refresh_jti: str
    expires_in: int


class TokenIssuer:
    """
    Stateless token core.

    Usage:
        issuer = TokenIssuer(JoseSigner(settings.SECRET_KEY))
        pair = issuer.issue(user, access, session_id, chain_id)
        claims = issuer.verify_access(pair.access_token)
    """

    def __init__(
        self,
        signer: TokenSigner,
        access_ttl: timedelta = timedelta(minutes=60),
        refresh_ttl: timedelta = timedelta(days=7),
    ):
        self.signer = signer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings) -> "TokenIssuer":
        signer = JoseSigner(
            settings.SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
            issuer=settings.JWT_ISSUER,
            previous_secrets=settings.PREVIOUS_SECRET_KEYS,
        )
        return cls(
            signer,
            access_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        )

    def issue(
        self,
        user_id: UUID,
        tenant_id: UUID,
        email: str,
        access: ResolvedAccess,
        session_id: UUID,
        chain_id: UUID,
    ) -> TokenPair:
        """
        Mint an access/refresh pair.

        Role and permission codes are written sorted so equal grants always
        produce equal claim lists.
        """
        now = datetime.now(timezone.utc)
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        access_jti = secrets.token_hex(16)
        refresh_jti = secrets.token_hex(16)

        access_token = self.signer.sign({
            "sub": str(user_id),
            "tid": str(tenant_id),
            "email": email,
            "roles": sorted(access.roles),
            "permissions": sorted(access.permissions),
            "sid": str(session_id),
            "jti": access_jti,
            "iat": now,
            "exp": access_exp,
            "typ": ACCESS_TOKEN_TYPE,
        })
        refresh_token = self.signer.sign({
            "sub": str(user_id),
            "tid": str(tenant_id),
            "sid": str(session_id),
            "chain": str(chain_id),
            "jti": refresh_jti,
            "iat": now,
            "exp": refresh_exp,
            "typ": REFRESH_TOKEN_TYPE,
        })

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            access_jti=access_jti,
            refresh_jti=refresh_jti,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def verify_access(self, token: str) -> AccessClaims:
        """
        Signature and expiry check only; no store lookup.

        Raises:
            ExpiredTokenError, InvalidTokenError
        """
        return self._decode(token, ACCESS_TOKEN_TYPE, AccessClaims)

    def verify_refresh(self, token: str) -> RefreshClaims:
        """
        Signature and expiry check only. Reuse is detected by the session
        store when the token is redeemed.

        Raises:
            ExpiredTokenError, InvalidTokenError
        """
        return self._decode(token, REFRESH_TOKEN_TYPE, RefreshClaims)

    def _decode(self, token: str, expected_type: str, model):
        if not token:
            raise InvalidTokenError("Missing token")
        payload = self.signer.verify(token)
        if payload.get("typ") != expected_type:
            raise InvalidTokenError(f"Expected a {expected_type} token")
        try:
            return model(**payload)
        except ValueError as e:
            raise InvalidTokenError("Malformed token claims") from e
