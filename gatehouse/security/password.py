"""Password hashing and verification"""

import bcrypt
from gatehouse.config import settings
from gatehouse.errors import InvalidInputError

# bcrypt only looks at the first 72 bytes of input
_BCRYPT_MAX_BYTES = 72

# Hash of a throwaway secret, verified against when the account does not exist
# so unknown-user and wrong-password paths cost the same.
_DUMMY_HASH = bcrypt.hashpw(b"gatehouse-timing-equalizer", bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)).decode("utf-8")


def _encode(secret: str) -> bytes:
    return secret.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    """Hash a password with bcrypt"""
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a hash; never raises"""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash
        return False


def burn_verification(password: str) -> None:
    """Spend the same time as a real verification without a stored hash"""
    verify_password(password or "x", _DUMMY_HASH)


def validate_password(password: str) -> None:
    """Enforce the minimum password policy"""
    if not password or len(password) < settings.PASSWORD_MIN_LENGTH:
        raise InvalidInputError(
            f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters long"
        )
    if not password.strip():
        raise InvalidInputError("Password cannot be blank")
