"""JWT issuing and verification.

Four token types share one shape (`sub`, `type`, `jti`, `iat`, `exp`). Refresh
tokens are signed with their own secret so an access-key leak cannot mint
long-lived sessions.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import time
import uuid

from jose import ExpiredSignatureError, JWTError, jwt

from gatehouse.config import settings
from gatehouse.errors import InvalidTokenError, TokenExpiredError
from gatehouse.security.token_denylist import TokenDenyList

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"
TWO_FA_TOKEN = "2fa"
PASSWORD_RESET_TOKEN = "password-reset"


def _secret_for(token_type: str) -> str:
    if token_type == REFRESH_TOKEN:
        return settings.JWT_REFRESH_SECRET_KEY
    return settings.JWT_SECRET_KEY


def _encode(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
    now = datetime.utcnow()
    to_encode = data.copy()
    to_encode.update({
        "type": token_type,
        "jti": str(uuid.uuid4()),
        "iat": now,
        "exp": now + expires_delta,
    })
    return jwt.encode(to_encode, _secret_for(token_type), algorithm=settings.JWT_ALGORITHM)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create a short-lived access token"""
    return _encode(data, ACCESS_TOKEN, expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))


def create_refresh_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create a refresh token"""
    return _encode(data, REFRESH_TOKEN, expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS))


def create_step_up_token(user_id: str, organization_id: str) -> str:
    """Token proving the password step passed; only good for completing 2FA"""
    return _encode(
        {"sub": user_id, "organization_id": organization_id},
        TWO_FA_TOKEN,
        timedelta(minutes=settings.TWO_FA_TOKEN_EXPIRE_MINUTES),
    )


def create_password_reset_token(user_id: str, organization_id: str) -> str:
    return _encode(
        {"sub": user_id, "organization_id": organization_id},
        PASSWORD_RESET_TOKEN,
        timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES),
    )


def decode_token(token: str, token_type: str = ACCESS_TOKEN) -> Optional[Dict[str, Any]]:
    """Decode a token, returning None when it does not verify"""
    try:
        return jwt.decode(token, _secret_for(token_type), algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def verify_token(
    token: str,
    expected_type: str,
    denylist: Optional[TokenDenyList] = None,
) -> Dict[str, Any]:
    """Verify signature, expiry, type and revocation; return the claims"""
    if not token:
        raise InvalidTokenError()
    try:
        payload = jwt.decode(token, _secret_for(expected_type), algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise TokenExpiredError()
    except JWTError:
        raise InvalidTokenError()

    if payload.get("type") != expected_type or not payload.get("sub"):
        raise InvalidTokenError()
    if denylist is not None and payload.get("jti") and denylist.is_revoked(payload["jti"]):
        raise InvalidTokenError("Token has been revoked")
    return payload


def remaining_lifetime(payload: Dict[str, Any]) -> int:
    """Seconds until the token expires (0 if already expired)"""
    exp = payload.get("exp")
    if exp is None:
        return 0
    return max(0, int(exp - time.time()))
