"""
Gatekeeper - Session Management

Durable record of issued refresh tokens.

Security:
- Only a SHA-256 fingerprint of the refresh token is stored
- Redemption is single-use: the redeemed record is revoked and linked to its
  successor in the same transaction, guarded by a conditional UPDATE on
  ``is_revoked = false`` so only one concurrent redeemer can win
- Presenting a revoked or rotated token revokes its whole chain
- Logout and forced sign-out revoke immediately; revoking twice is a no-op
"""

from datetime import datetime
from typing import Callable, Optional, Tuple
from uuid import UUID, uuid4
import hashlib

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session as DBSession, select

from gatekeeper.auth.errors import (
    PersistenceError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionRevokedError,
)
from gatekeeper.auth.models import Session, utcnow


def fingerprint(refresh_token: str) -> str:
    """SHA-256 hex digest of a refresh token."""
    return hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo else value


async def create_session(
    db: DBSession,
    user_id: UUID,
    tenant_id: UUID,
    refresh_token: str,
    expires_at: datetime,
    session_id: Optional[UUID] = None,
    chain_id: Optional[UUID] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Session:
    """
    Record a freshly issued refresh token.

    The session id is normally chosen before the token is minted, because
    the token embeds it. A login starts a new chain rooted at its own id.

    Raises:
        PersistenceError: The record could not be written
    """
    session_id = session_id or uuid4()
    now = utcnow()
    session = Session(
        session_id=session_id,
        user_id=user_id,
        tenant_id=tenant_id,
        chain_id=chain_id or session_id,
        token_hash=fingerprint(refresh_token),
        issued_at=now,
        expires_at=_naive(expires_at),
        last_seen=now,
        is_revoked=False,
        ip_address=ip_address,
        user_agent=user_agent[:512] if user_agent else None,
    )

    try:
        db.add(session)
        db.commit()
        db.refresh(session)
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not create session: {e.__class__.__name__}") from e

    return session


async def get_session(db: DBSession, session_id: UUID) -> Optional[Session]:
    try:
        statement = select(Session).where(Session.session_id == session_id).execution_options(populate_existing=True)
        return db.exec(statement).first()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Could not load session: {e.__class__.__name__}") from e


async def redeem_session(
    db: DBSession,
    presented_token: str,
    session_id: UUID,
    successor_id: UUID,
    mint: Callable[[], Tuple[str, datetime]],
    now: Optional[datetime] = None,
) -> Session:
    """
    Rotate a refresh token: revoke the presented record and create its successor.

    The presented record is claimed with a conditional UPDATE first; only the
    winning redeemer calls ``mint`` to produce the successor refresh token.
    Claim and successor insert commit together or not at all.

    Args:
        presented_token: Refresh token sent by the client
        session_id: ``sid`` claim of the presented token
        successor_id: Session id embedded in the new refresh token
        mint: Returns (successor refresh token, its expiry)

    Returns:
        The successor Session

    Raises:
        SessionNotFoundError: No record, or the fingerprint does not match
        SessionRevokedError: Already rotated or revoked; chain is now revoked
        SessionExpiredError: Record expired
        PersistenceError: Store failure
    """
    now = now or utcnow()
    current = await get_session(db, session_id)

    if current is None or current.token_hash != fingerprint(presented_token):
        raise SessionNotFoundError()

    if current.is_revoked:
        await revoke_chain(db, current.chain_id)
        raise SessionRevokedError()

    if current.expires_at <= now:
        await revoke_session(db, current.session_id)
        raise SessionExpiredError()

    try:
        claimed = db.exec(
            update(Session)
            .where(
                Session.session_id == current.session_id,
                Session.is_revoked == False,  # noqa: E712
            )
            .values(is_revoked=True, revoked_at=now, replaced_by=successor_id, last_seen=now)
        )
        if claimed.rowcount != 1:
            # Another redeemer won between our read and this write
            db.rollback()
        else:
            try:
                successor_token, successor_expires_at = mint()
            except Exception:
                db.rollback()
                raise

            successor = Session(
                session_id=successor_id,
                user_id=current.user_id,
                tenant_id=current.tenant_id,
                chain_id=current.chain_id,
                token_hash=fingerprint(successor_token),
                issued_at=now,
                expires_at=_naive(successor_expires_at),
                last_seen=now,
                is_revoked=False,
                ip_address=current.ip_address,
                user_agent=current.user_agent,
            )
            db.add(successor)
            db.commit()
            db.refresh(successor)
            return successor
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not rotate session: {e.__class__.__name__}") from e

    await revoke_chain(db, current.chain_id)
    raise SessionRevokedError()


async def revoke_session(db: DBSession, session_id: UUID) -> bool:
    """
    Revoke one session (logout).

    Returns:
        True if the session exists (whether or not it was already revoked),
        False if not found
    """
    try:
        exists = db.exec(select(Session.session_id).where(Session.session_id == session_id)).first()
        if exists is None:
            return False
        db.exec(
            update(Session)
            .where(Session.session_id == session_id, Session.is_revoked == False)  # noqa: E712
            .values(is_revoked=True, revoked_at=utcnow())
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not revoke session: {e.__class__.__name__}") from e

    return True


async def revoke_chain(db: DBSession, chain_id: UUID) -> int:
    """
    Revoke every record descending from one login.

    Used as the reuse-detection response: a replayed refresh token means
    the chain may be in an attacker's hands.

    Returns:
        Number of sessions newly revoked
    """
    return await _revoke_where(db, Session.chain_id == chain_id)


async def revoke_all_user_sessions(db: DBSession, user_id: UUID) -> int:
    """
    Revoke all sessions for a user (force logout everywhere).

    Use cases:
        - Password change
        - Account compromise
        - Admin forced logout
    """
    return await _revoke_where(db, Session.user_id == user_id)


async def _revoke_where(db: DBSession, condition) -> int:
    try:
        result = db.exec(
            update(Session)
            .where(condition, Session.is_revoked == False)  # noqa: E712
            .values(is_revoked=True, revoked_at=utcnow())
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not revoke sessions: {e.__class__.__name__}") from e

    return result.rowcount


async def get_active_sessions(db: DBSession, user_id: UUID) -> list[Session]:
    """
    Get all unrevoked, unexpired sessions for a user.

    Use cases:
        - Show user their active sessions
        - Admin audit
    """
    statement = select(Session).where(
        Session.user_id == user_id,
        Session.is_revoked == False,  # noqa: E712
        Session.expires_at > utcnow(),
    )
    try:
        return list(db.exec(statement).all())
    except SQLAlchemyError as e:
        raise PersistenceError(f"Could not list sessions: {e.__class__.__name__}") from e


async def cleanup_expired_sessions(db: DBSession) -> int:
    """
    Mark all expired sessions as revoked.

    Optional housekeeping; expiry is already enforced lazily on redeem.

    Returns:
        Number of sessions cleaned up
    """
    return await _revoke_where(db, Session.expires_at < utcnow())
