"""Unit tests for JWT security"""

import pytest
from datetime import timedelta
from gatehouse.errors import InvalidTokenError, TokenExpiredError
from gatehouse.security.jwt import (
    ACCESS_TOKEN,
    PASSWORD_RESET_TOKEN,
    REFRESH_TOKEN,
    TWO_FA_TOKEN,
    create_access_token,
    create_password_reset_token,
    create_refresh_token,
    create_step_up_token,
    decode_token,
    remaining_lifetime,
    verify_token,
)
from gatehouse.security.token_denylist import InMemoryTokenDenyList


@pytest.mark.unit
def test_access_token_claims():
    token = create_access_token({"sub": "user123", "email": "test@example.com", "organization_id": "org1"})
    decoded = decode_token(token)

    assert decoded["sub"] == "user123"
    assert decoded["email"] == "test@example.com"
    assert decoded["organization_id"] == "org1"
    assert decoded["type"] == ACCESS_TOKEN
    assert decoded["jti"]
    assert decoded["exp"] > decoded["iat"]


@pytest.mark.unit
def test_tokens_get_unique_ids():
    first = decode_token(create_access_token({"sub": "user123"}))
    second = decode_token(create_access_token({"sub": "user123"}))
    assert first["jti"] != second["jti"]


@pytest.mark.unit
def test_decode_token_invalid():
    assert decode_token("invalid.token.here") is None


@pytest.mark.unit
def test_refresh_token_uses_its_own_secret():
    token = create_refresh_token({"sub": "user123"})

    assert decode_token(token, ACCESS_TOKEN) is None
    assert decode_token(token, REFRESH_TOKEN)["type"] == REFRESH_TOKEN


@pytest.mark.unit
def test_verify_token_rejects_wrong_type():
    step_up = create_step_up_token("user123", "org123")

    assert verify_token(step_up, TWO_FA_TOKEN)["sub"] == "user123"
    with pytest.raises(InvalidTokenError):
        verify_token(step_up, ACCESS_TOKEN)
    with pytest.raises(InvalidTokenError):
        verify_token(create_password_reset_token("user123", "org123"), ACCESS_TOKEN)


@pytest.mark.unit
def test_verify_token_expired():
    token = create_access_token({"sub": "user123"}, expires_delta=timedelta(seconds=-5))
    with pytest.raises(TokenExpiredError):
        verify_token(token, ACCESS_TOKEN)


@pytest.mark.unit
def test_verify_token_requires_subject():
    token = create_access_token({"email": "nobody@example.com"})
    with pytest.raises(InvalidTokenError):
        verify_token(token, ACCESS_TOKEN)


@pytest.mark.unit
def test_verify_token_honours_denylist():
    denylist = InMemoryTokenDenyList()
    token = create_access_token({"sub": "user123"})
    payload = verify_token(token, ACCESS_TOKEN, denylist)

    denylist.revoke(payload["jti"], remaining_lifetime(payload))

    with pytest.raises(InvalidTokenError, match="revoked"):
        verify_token(token, ACCESS_TOKEN, denylist)


@pytest.mark.unit
def test_remaining_lifetime():
    payload = decode_token(create_access_token({"sub": "u"}, expires_delta=timedelta(minutes=10)))
    assert 590 <= remaining_lifetime(payload) <= 600
    assert remaining_lifetime({}) == 0
    assert remaining_lifetime({"exp": 1}) == 0


@pytest.mark.unit
def test_reset_token_type():
    payload = verify_token(create_password_reset_token("user123", "org123"), PASSWORD_RESET_TOKEN)
    assert payload["type"] == PASSWORD_RESET_TOKEN


@pytest.mark.unit
def test_every_token_kind_carries_organization():
    claims = {"sub": "user123", "organization_id": "org123"}
    tokens = {
        ACCESS_TOKEN: create_access_token(claims),
        REFRESH_TOKEN: create_refresh_token(claims),
        TWO_FA_TOKEN: create_step_up_token("user123", "org123"),
        PASSWORD_RESET_TOKEN: create_password_reset_token("user123", "org123"),
    }

    for token_type, token in tokens.items():
        assert verify_token(token, token_type)["organization_id"] == "org123"
