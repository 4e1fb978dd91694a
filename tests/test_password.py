"""
Gatekeeper - Credential Verifier Tests

Run with: pytest tests/test_password.py -v
"""

import bcrypt

from gatekeeper.auth.password import burn_verification, hash_password, needs_rehash, verify_password


class TestPasswordHashing:
    """Unit tests for bcrypt password utilities."""

    def test_hash_password_creates_bcrypt_hash(self):
        hashed = hash_password("SecurePassword123")

        assert hashed.startswith("$2b$")
        assert len(hashed) == 60

    def test_verify_password_correct(self):
        hashed = hash_password("SecurePassword123")

        assert verify_password("SecurePassword123", hashed) is True

    def test_verify_password_incorrect(self):
        hashed = hash_password("SecurePassword123")

        assert verify_password("WrongPassword", hashed) is False

    def test_verify_password_empty_string(self):
        hashed = hash_password("SecurePassword123")

        assert verify_password("", hashed) is False

    def test_malformed_hash_is_a_mismatch(self):
        """A corrupt stored hash fails verification instead of raising."""
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_different_passwords_different_hashes(self):
        """Same password generates different hashes (salted)."""
        hash1 = hash_password("SecurePassword123")
        hash2 = hash_password("SecurePassword123")

        assert hash1 != hash2
        assert verify_password("SecurePassword123", hash1) is True
        assert verify_password("SecurePassword123", hash2) is True

    def test_explicit_rounds(self):
        hashed = hash_password("password", rounds=5)

        assert hashed.startswith("$2b$05$")


class TestRehash:

    def test_needs_rehash_old_work_factor(self):
        old_hash = bcrypt.hashpw(b"password", bcrypt.gensalt(rounds=4)).decode()

        assert needs_rehash(old_hash, target_work_factor=6) is True

    def test_needs_rehash_current_factor(self):
        """Hashes at the configured factor are left alone."""
        assert needs_rehash(hash_password("password")) is False

    def test_unparseable_hash_needs_rehash(self):
        assert needs_rehash("garbage") is True


def test_burn_verification_returns_nothing():
    """The timing equaliser never reports a match."""
    assert burn_verification("whatever") is None
