"""
Gatekeeper - Account Lockout Tracking

Per-user counter of consecutive failed logins with a time-boxed lock.

State lives on the user row (failed_login_attempts, locked_until) and is
changed with single UPDATE statements so concurrent failures for the same
account are never lost. Expiry is computed from timestamps; there is no
background job.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session as DBSession, select

from gatekeeper.auth.errors import PersistenceError
from gatekeeper.auth.models import User, utcnow


@dataclass(frozen=True)
class LockoutPolicy:
    """
    Attributes:
        threshold: Consecutive failures that trigger a lock
        duration: How long the lock lasts
        fail_closed: A failed write on record_failure locks the account
            instead of surfacing a retryable PersistenceError
    """
    threshold: int = 5
    duration: timedelta = timedelta(minutes=15)
    fail_closed: bool = True

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            threshold=settings.LOCKOUT_THRESHOLD,
            duration=timedelta(minutes=settings.LOCKOUT_DURATION_MINUTES),
            fail_closed=settings.LOCKOUT_FAIL_CLOSED,
        )


@dataclass(frozen=True)
class LockoutState:
    failed_count: int
    locked_until: Optional[datetime]

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


def is_locked(user: User, now: Optional[datetime] = None) -> bool:
    """True while now < locked_until."""
    if user.locked_until is None:
        return False
    return (now or utcnow()) < user.locked_until


async def record_failure(
    db: DBSession,
    user_id: UUID,
    policy: LockoutPolicy,
    now: Optional[datetime] = None,
) -> LockoutState:
    """
    Count one failed login and lock the account once the threshold is reached.
    
    The counter is pinned at the threshold when the lock is applied, so it
    never grows without bound.
    
    Raises:
        PersistenceError: The counter could not be written
    """
    now = now or utcnow()
    try:
        db.exec(
            update(User)
            .where(User.id == user_id)
            .values(failed_login_attempts=User.failed_login_attempts + 1)
        )
        failed = db.exec(
            select(User.failed_login_attempts).where(User.id == user_id)
        ).one()
        
        locked_until = None
        if failed >= policy.threshold:
            locked_until = now + policy.duration
            failed = policy.threshold
            db.exec(
                update(User)
                .where(User.id == user_id)
                .values(failed_login_attempts=failed, locked_until=locked_until)
            )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not record failed login: {e.__class__.__name__}") from e
    
    return LockoutState(failed_count=failed, locked_until=locked_until)


async def record_success(db: DBSession, user_id: UUID, now: Optional[datetime] = None) -> None:
    """Reset the failure counter, clear any lock and stamp last_login_at."""
    try:
        db.exec(
            update(User)
            .where(User.id == user_id)
            .values(failed_login_attempts=0, locked_until=None, last_login_at=now or utcnow())
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not reset login counter: {e.__class__.__name__}") from e
