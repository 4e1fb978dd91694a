"""
Gatekeeper - Password Hashing Utilities

Credential verification using bcrypt.
Work factor is configurable (BCRYPT_WORK_FACTOR) and defaults to 12.

Security:
- Plaintext passwords are never logged or returned
- Each hash carries its own salt
- bcrypt.checkpw compares in constant time
- Hashes below the configured work factor are upgraded on login
"""

from typing import Optional

import bcrypt

from gatekeeper.config import settings


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    """
    Produce a salted bcrypt hash for storage on the User row.

    Args:
        password: Plaintext password
        rounds: Work factor override (defaults to BCRYPT_WORK_FACTOR)
    """
    salt = bcrypt.gensalt(rounds=rounds or settings.BCRYPT_WORK_FACTOR)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Compare a candidate password with a stored hash.

    Pure: no I/O, no logging. A malformed hash is a mismatch, not an error.
    """
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def needs_rehash(hashed_password: str, target_work_factor: Optional[int] = None) -> bool:
    """True when the stored hash is weaker than the target cost or unparseable."""
    target = target_work_factor or settings.BCRYPT_WORK_FACTOR
    try:
        # $2b$<cost>$<salt+digest>
        cost = hashed_password.split("$")[2]
        return int(cost) < target
    except (ValueError, IndexError):
        return True


_dummy_hash: Optional[str] = None


def burn_verification(password: str) -> None:
    """
    Run one bcrypt verification against a throwaway hash.

    Called when the account does not exist so the response takes as long as
    a wrong-password attempt and does not reveal whether the email is known.
    """
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hash_password("gatekeeper-timing-equalizer")
    verify_password(password, _dummy_hash)
