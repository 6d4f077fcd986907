"""Unit tests for password security"""

import pytest
from gatehouse.errors import InvalidInputError
from gatehouse.security.password import (
    burn_verification,
    hash_password,
    validate_password,
    verify_password,
)


@pytest.mark.unit
def test_hash_password():
    """Hashes are salted bcrypt strings"""
    first = hash_password("test_password_123")
    second = hash_password("test_password_123")

    assert first.startswith("$2")
    assert first != second


@pytest.mark.unit
def test_verify_password_correct():
    password_hash = hash_password("test_password_123")
    assert verify_password("test_password_123", password_hash) is True


@pytest.mark.unit
def test_verify_password_incorrect():
    password_hash = hash_password("test_password_123")
    assert verify_password("wrong_password", password_hash) is False


@pytest.mark.unit
@pytest.mark.parametrize("password, password_hash", [
    ("", "$2b$04$abcdefghijklmnopqrstuv"),
    ("secret", ""),
    ("secret", "not-a-bcrypt-hash"),
])
def test_verify_password_never_raises(password, password_hash):
    assert verify_password(password, password_hash) is False


@pytest.mark.unit
def test_burn_verification_returns_nothing():
    assert burn_verification("anything") is None
    assert burn_verification("") is None


@pytest.mark.unit
def test_validate_password_rejects_short_and_blank():
    with pytest.raises(InvalidInputError, match="at least 8 characters"):
        validate_password("short")
    with pytest.raises(InvalidInputError, match="blank"):
        validate_password("          ")
    validate_password("long-enough-password")
