"""Unit tests for AuthService flows"""

from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pyotp
import pytest

from gatehouse.errors import (
    AccountLockedError,
    ConflictError,
    InvalidInputError,
    InvalidTokenError,
    NotFoundError,
    UnauthorizedError,
)
from gatehouse.security.encryption import decrypt_data
from gatehouse.security.jwt import ACCESS_TOKEN, TWO_FA_TOKEN, create_step_up_token, verify_token
from gatehouse.services.organization_service import OrganizationService
from gatehouse.services.two_fa_service import TwoFAService
from gatehouse.services.user_service import UserService

PASSWORD = "correct-horse-battery"


def _register(auth_service, organization, email="jane@example.com", **kwargs):
    return auth_service.register(email=email, password=PASSWORD, organization_id=organization.id, **kwargs)


def _enable_two_fa(db, user_id):
    enrollment = TwoFAService.generate_secret(db, user_id)
    totp = pyotp.TOTP(enrollment["secret"])
    backup_codes = TwoFAService.enable(db, user_id, totp.now())
    return totp, backup_codes


def _reset_token_from(notifier, email):
    message = notifier.last_to(email, "password_reset")
    return parse_qs(urlparse(message["variables"]["reset_url"]).query)["token"][0]


# Registration

@pytest.mark.unit
def test_register_grants_default_role_and_welcomes(auth_service, organization, notifier):
    result = _register(auth_service, organization)

    user_id = result["user"]["id"]
    slugs = [a.role.slug for a in auth_service.roles.get_user_roles(user_id)]
    assert slugs == ["viewer"]
    assert result["warnings"] == []
    assert result["access_token"] and result["refresh_token"]
    assert result["requires_two_factor"] is False
    assert notifier.templates_sent_to("jane@example.com") == ["welcome"]


@pytest.mark.unit
def test_register_by_slug_and_by_tenant(auth_service, organization):
    by_slug = auth_service.register(email="a@example.com", password=PASSWORD, organization_slug="acme-inc")
    by_tenant = auth_service.register(email="b@example.com", password=PASSWORD, tenant=organization)

    assert by_slug["user"]["organization_id"] == organization.id
    assert by_tenant["user"]["organization_id"] == organization.id


@pytest.mark.unit
def test_register_needs_a_live_organization(db, auth_service, organization):
    with pytest.raises(InvalidInputError):
        auth_service.register(email="jane@example.com", password=PASSWORD)
    with pytest.raises(NotFoundError):
        auth_service.register(email="jane@example.com", password=PASSWORD, organization_id="missing")

    OrganizationService.delete_organization(db, organization.id)
    with pytest.raises(NotFoundError):
        _register(auth_service, organization)


@pytest.mark.unit
def test_register_duplicate_email(auth_service, organization):
    _register(auth_service, organization)
    with pytest.raises(ConflictError):
        _register(auth_service, organization, email="JANE@example.com")


@pytest.mark.unit
def test_register_with_organization_makes_creator_admin(auth_service, notifier):
    result = auth_service.register_with_organization(
        email="founder@globex.com",
        password=PASSWORD,
        organization_name="Globex",
    )

    assert result["organization"]["slug"] == "globex"
    assert result["organization"]["domain"] == "globex"
    user_id = result["user"]["id"]
    assert [a.role.slug for a in auth_service.roles.get_user_roles(user_id)] == ["admin"]
    assert "roles.assign" in auth_service.roles.effective_permissions(user_id)
    assert notifier.templates_sent_to("founder@globex.com") == ["organization_created"]


@pytest.mark.unit
def test_register_with_organization_leaves_nothing_behind_on_failure(db, auth_service, organization):
    with pytest.raises(InvalidInputError):
        auth_service.register_with_organization(
            email="founder@globex.com",
            password="short",
            organization_name="Globex",
        )
    with pytest.raises(ConflictError):
        auth_service.register_with_organization(
            email="founder@globex.com",
            password=PASSWORD,
            organization_name="Globex",
            organization_slug="acme-inc",
        )

    _, total = OrganizationService.list_organizations(db)
    assert total == 1


# Login

@pytest.mark.unit
def test_login_by_email_and_username(auth_service, organization):
    _register(auth_service, organization, username="jane")

    by_email = auth_service.login("Jane@Example.com", PASSWORD, organization_id=organization.id)
    by_username = auth_service.login("jane", PASSWORD, organization_slug="acme-inc", ip_address="10.0.0.1")

    payload = verify_token(by_email["access_token"], ACCESS_TOKEN)
    assert payload["organization_id"] == organization.id
    assert by_username["user"]["email"] == "jane@example.com"


@pytest.mark.unit
def test_login_failures_are_indistinguishable(auth_service, organization):
    _register(auth_service, organization)

    with pytest.raises(UnauthorizedError) as wrong_password:
        auth_service.login("jane@example.com", "wrong-password", organization_id=organization.id)
    with pytest.raises(UnauthorizedError) as unknown_user:
        auth_service.login("nobody@example.com", PASSWORD, organization_id=organization.id)

    assert wrong_password.value.message == unknown_user.value.message == "Invalid credentials"


@pytest.mark.unit
def test_login_requires_organization(auth_service, organization):
    _register(auth_service, organization)

    with pytest.raises(UnauthorizedError, match="required"):
        auth_service.login("jane@example.com", PASSWORD)
    with pytest.raises(UnauthorizedError, match="Invalid organization"):
        auth_service.login("jane@example.com", PASSWORD, organization_slug="globex")


@pytest.mark.unit
def test_user_cannot_sign_into_another_organization(db, auth_service, organization):
    _register(auth_service, organization)
    OrganizationService.create_organization(db, name="Globex")

    with pytest.raises(UnauthorizedError, match="Invalid credentials"):
        auth_service.login("jane@example.com", PASSWORD, organization_slug="globex")


@pytest.mark.unit
def test_lockout_after_repeated_failures(db, auth_service, organization):
    _register(auth_service, organization)

    for _ in range(5):
        with pytest.raises(UnauthorizedError):
            auth_service.login("jane@example.com", "wrong-password", organization_id=organization.id)

    # Even the right password is refused while locked
    with pytest.raises(AccountLockedError):
        auth_service.login("jane@example.com", PASSWORD, organization_id=organization.id)

    user = UserService.get_user_by_email(db, organization.id, "jane@example.com")
    user.locked_until = datetime.utcnow() - timedelta(seconds=1)
    db.commit()

    result = auth_service.login("jane@example.com", PASSWORD, organization_id=organization.id)
    assert result["access_token"]
    db.refresh(user)
    assert user.failed_login_attempts == 0


@pytest.mark.unit
def test_inactive_user_cannot_login(db, auth_service, organization):
    result = _register(auth_service, organization)
    UserService.update_user(db, result["user"]["id"], status="suspended")

    with pytest.raises(UnauthorizedError, match="not active"):
        auth_service.login("jane@example.com", PASSWORD, organization_id=organization.id)


# Two-factor

@pytest.mark.unit
def test_two_factor_step_up(db, auth_service, organization, denylist):
    user_id = _register(auth_service, organization)["user"]["id"]
    totp, _ = _enable_two_fa(db, user_id)

    pending = auth_service.login("jane@example.com", PASSWORD, organization_id=organization.id)
    assert pending["requires_two_factor"] is True
    assert pending["access_token"] is None

    with pytest.raises(UnauthorizedError, match="Invalid 2FA code"):
        auth_service.verify_two_factor_login(pending["two_factor_token"], "000000")

    session = auth_service.verify_two_factor_login(pending["two_factor_token"], totp.now())
    assert session["access_token"]

    # The step-up token is spent
    with pytest.raises(InvalidTokenError):
        auth_service.verify_two_factor_login(pending["two_factor_token"], totp.now())


@pytest.mark.unit
def test_step_up_token_is_bound_to_organization(db, auth_service, organization):
    user_id = _register(auth_service, organization)["user"]["id"]
    totp, _ = _enable_two_fa(db, user_id)

    pending = auth_service.login("jane@example.com", PASSWORD, organization_id=organization.id)
    assert verify_token(pending["two_factor_token"], TWO_FA_TOKEN)["organization_id"] == organization.id

    foreign = create_step_up_token(user_id, "another-organization")
    with pytest.raises(InvalidTokenError):
        auth_service.verify_two_factor_login(foreign, totp.now())


@pytest.mark.unit
def test_two_factor_code_inline(db, auth_service, organization):
    user_id = _register(auth_service, organization)["user"]["id"]
    totp, _ = _enable_two_fa(db, user_id)

    with pytest.raises(UnauthorizedError):
        auth_service.login("jane@example.com", PASSWORD, organization_id=organization.id, two_fa_code="123")
    result = auth_service.login("jane@example.com", PASSWORD, organization_id=organization.id, two_fa_code=totp.now())
    assert result["access_token"]


@pytest.mark.unit
def test_backup_code_works_once(db, auth_service, organization):
    user_id = _register(auth_service, organization)["user"]["id"]
    _, backup_codes = _enable_two_fa(db, user_id)

    first = auth_service.login(
        "jane@example.com", PASSWORD, organization_id=organization.id, two_fa_code=backup_codes[0]
    )
    assert first["access_token"]

    with pytest.raises(UnauthorizedError):
        auth_service.login("jane@example.com", PASSWORD, organization_id=organization.id, two_fa_code=backup_codes[0])


@pytest.mark.unit
def test_stored_two_fa_secret_is_encrypted(db, auth_service, organization):
    user_id = _register(auth_service, organization)["user"]["id"]
    enrollment = TwoFAService.generate_secret(db, user_id)

    user = UserService.get_user(db, user_id)
    assert user.two_fa_secret != enrollment["secret"]
    assert decrypt_data(user.two_fa_secret) == enrollment["secret"]


# Sessions

@pytest.mark.unit
def test_get_current_user(auth_service, organization):
    result = _register(auth_service, organization)

    assert auth_service.get_current_user(result["access_token"]).id == result["user"]["id"]
    with pytest.raises(InvalidTokenError):
        auth_service.get_current_user(result["refresh_token"])


@pytest.mark.unit
def test_deactivated_organization_invalidates_access_tokens(db, auth_service, organization):
    result = _register(auth_service, organization)
    organization.is_active = False
    db.commit()

    with pytest.raises(InvalidTokenError):
        auth_service.get_current_user(result["access_token"])


@pytest.mark.unit
def test_refresh_rotates_tokens(auth_service, organization):
    result = _register(auth_service, organization)

    rotated = auth_service.refresh_token(result["refresh_token"])
    assert rotated["access_token"] != result["access_token"]

    with pytest.raises(UnauthorizedError):
        auth_service.refresh_token(result["refresh_token"])
    assert auth_service.refresh_token(rotated["refresh_token"])["access_token"]


@pytest.mark.unit
def test_refresh_rejects_access_token(auth_service, organization):
    result = _register(auth_service, organization)
    with pytest.raises(UnauthorizedError):
        auth_service.refresh_token(result["access_token"])


@pytest.mark.unit
def test_refresh_fails_once_organization_is_deleted(db, auth_service, organization):
    result = _register(auth_service, organization)
    OrganizationService.delete_organization(db, organization.id)

    with pytest.raises(InvalidTokenError):
        auth_service.refresh_token(result["refresh_token"])
    with pytest.raises(InvalidTokenError):
        auth_service.get_current_user(result["access_token"])


@pytest.mark.unit
def test_logout_revokes_both_tokens(auth_service, organization):
    result = _register(auth_service, organization)

    assert auth_service.logout(result["access_token"], result["refresh_token"])["success"] is True

    with pytest.raises(InvalidTokenError):
        auth_service.get_current_user(result["access_token"])
    with pytest.raises(InvalidTokenError):
        auth_service.refresh_token(result["refresh_token"])


# Password reset

@pytest.mark.unit
def test_reset_request_does_not_reveal_accounts(auth_service, organization, notifier):
    _register(auth_service, organization)

    known = auth_service.request_password_reset("jane@example.com", organization_id=organization.id)
    unknown = auth_service.request_password_reset("nobody@example.com", organization_id=organization.id)
    no_org = auth_service.request_password_reset("jane@example.com", organization_slug="missing")

    assert known == unknown == no_org
    assert notifier.templates_sent_to("nobody@example.com") == []
    assert notifier.last_to("jane@example.com", "password_reset") is not None


@pytest.mark.unit
def test_reset_token_is_single_use(auth_service, organization, notifier):
    _register(auth_service, organization)
    auth_service.request_password_reset("jane@example.com", organization_id=organization.id)
    token = _reset_token_from(notifier, "jane@example.com")

    auth_service.reset_password(token, "a-brand-new-password")

    with pytest.raises(InvalidInputError, match="Invalid or expired reset token"):
        auth_service.reset_password(token, "yet-another-password")
    with pytest.raises(UnauthorizedError):
        auth_service.login("jane@example.com", PASSWORD, organization_id=organization.id)
    assert auth_service.login("jane@example.com", "a-brand-new-password", organization_id=organization.id)


@pytest.mark.unit
def test_only_latest_reset_token_counts(auth_service, organization, notifier):
    _register(auth_service, organization)
    auth_service.request_password_reset("jane@example.com", organization_id=organization.id)
    first = _reset_token_from(notifier, "jane@example.com")
    auth_service.request_password_reset("jane@example.com", organization_id=organization.id)

    with pytest.raises(InvalidInputError):
        auth_service.reset_password(first, "a-brand-new-password")


@pytest.mark.unit
def test_reset_rejects_garbage_and_weak_passwords(auth_service, organization, notifier):
    _register(auth_service, organization)
    auth_service.request_password_reset("jane@example.com", organization_id=organization.id)
    token = _reset_token_from(notifier, "jane@example.com")

    with pytest.raises(InvalidInputError):
        auth_service.reset_password("not-a-token", "a-brand-new-password")
    with pytest.raises(InvalidInputError):
        auth_service.reset_password(token, "short")

    # A rejected password leaves the token usable
    assert auth_service.reset_password(token, "a-brand-new-password")["success"] is True


@pytest.mark.unit
def test_reset_clears_lockout(db, auth_service, organization, notifier):
    _register(auth_service, organization)
    for _ in range(5):
        with pytest.raises(UnauthorizedError):
            auth_service.login("jane@example.com", "wrong-password", organization_id=organization.id)

    auth_service.request_password_reset("jane@example.com", organization_id=organization.id)
    auth_service.reset_password(_reset_token_from(notifier, "jane@example.com"), "a-brand-new-password")

    assert auth_service.login("jane@example.com", "a-brand-new-password", organization_id=organization.id)
