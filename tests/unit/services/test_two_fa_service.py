"""Unit tests for TwoFAService enrollment and verification"""

import pyotp
import pytest

from gatehouse.database.models import User
from gatehouse.errors import ConflictError, InvalidInputError, UnauthorizedError
from gatehouse.services import two_fa_service
from gatehouse.services.notification_service import NotificationService
from gatehouse.services.two_fa_service import TwoFAService
from gatehouse.services.user_service import UserService

PASSWORD = "correct-horse-battery"


@pytest.fixture
def user(db, organization):
    return UserService.create_user(db, organization.id, email="jane@example.com", password=PASSWORD)


def _enroll(db, user):
    enrollment = TwoFAService.generate_secret(db, user.id)
    totp = pyotp.TOTP(enrollment["secret"])
    return totp, TwoFAService.enable(db, user.id, totp.now())


@pytest.mark.unit
def test_generate_secret_returns_qr_and_uri(db, user):
    enrollment = TwoFAService.generate_secret(db, user.id)

    assert enrollment["qr_code"].startswith("data:image/png;base64,")
    assert enrollment["uri"].startswith("otpauth://totp/")
    # Pending until confirmed
    assert TwoFAService.get_status(db, user.id) == {"enabled": False, "backup_codes_remaining": 0}


@pytest.mark.unit
def test_enable_requires_a_pending_secret_and_valid_code(db, user):
    with pytest.raises(InvalidInputError):
        TwoFAService.enable(db, user.id, "123456")

    TwoFAService.generate_secret(db, user.id)
    with pytest.raises(UnauthorizedError):
        TwoFAService.enable(db, user.id, "not-a-code")


@pytest.mark.unit
def test_enable_issues_backup_codes_once(db, user, notifier):
    totp = pyotp.TOTP(TwoFAService.generate_secret(db, user.id)["secret"])

    backup_codes = TwoFAService.enable(db, user.id, totp.now(), notifier=notifier)

    assert len(backup_codes) == 8
    assert all(code not in user.two_fa_backup_codes for code in backup_codes)
    assert TwoFAService.get_status(db, user.id) == {"enabled": True, "backup_codes_remaining": 8}
    assert notifier.templates_sent_to("jane@example.com") == ["two_fa_enabled"]

    with pytest.raises(ConflictError):
        TwoFAService.generate_secret(db, user.id)


@pytest.mark.unit
def test_verify_code_accepts_totp_then_backup_once(db, user):
    totp, backup_codes = _enroll(db, user)

    assert TwoFAService.verify_code(db, user, totp.now()) is True
    assert TwoFAService.verify_code(db, user, backup_codes[0].lower()) is True
    assert TwoFAService.verify_code(db, user, backup_codes[0]) is False
    assert TwoFAService.get_status(db, user.id)["backup_codes_remaining"] == len(backup_codes) - 1


@pytest.mark.unit
def test_disable_needs_password(db, user, notifier):
    totp, backup_codes = _enroll(db, user)

    with pytest.raises(UnauthorizedError):
        TwoFAService.disable(db, user.id, "wrong-password")

    assert TwoFAService.disable(db, user.id, PASSWORD, notifier=notifier) is True
    assert user.two_fa_secret is None
    assert TwoFAService.verify_code(db, user, totp.now()) is False
    assert TwoFAService.verify_code(db, user, backup_codes[1]) is False
    assert notifier.templates_sent_to("jane@example.com") == ["two_fa_disabled"]

    with pytest.raises(InvalidInputError):
        TwoFAService.disable(db, user.id, PASSWORD)


@pytest.mark.unit
def test_regenerate_backup_codes_replaces_old_ones(db, user):
    _, old_codes = _enroll(db, user)

    new_codes = TwoFAService.regenerate_backup_codes(db, user.id, PASSWORD)

    assert TwoFAService.verify_backup_code(db, user, old_codes[0]) is False
    assert TwoFAService.verify_backup_code(db, user, new_codes[0]) is True
    with pytest.raises(UnauthorizedError):
        TwoFAService.regenerate_backup_codes(db, user.id, "wrong-password")


@pytest.mark.unit
def test_backup_code_is_spent_for_every_session(db, other_db, user):
    _, backup_codes = _enroll(db, user)
    same_user_elsewhere = other_db.get(User, user.id)

    assert TwoFAService.verify_backup_code(db, user, backup_codes[0]) is True
    assert TwoFAService.verify_backup_code(other_db, same_user_elsewhere, backup_codes[0]) is False


@pytest.mark.unit
def test_racing_requests_cannot_share_a_backup_code(db, other_db, user, monkeypatch):
    _, backup_codes = _enroll(db, user)
    same_user_elsewhere = other_db.get(User, user.id)
    check_password = two_fa_service.verify_password
    winners = []

    def check_while_the_other_request_claims(candidate, code_hash):
        # The other request gets in between our check and our write
        if not winners:
            winners.append(None)
            winners[0] = TwoFAService.verify_backup_code(db, user, backup_codes[0])
        return check_password(candidate, code_hash)

    monkeypatch.setattr(two_fa_service, "verify_password", check_while_the_other_request_claims)

    assert TwoFAService.verify_backup_code(other_db, same_user_elsewhere, backup_codes[0]) is False
    assert winners == [True]
    assert TwoFAService.get_status(db, user.id)["backup_codes_remaining"] == len(backup_codes) - 1


@pytest.mark.unit
def test_racing_requests_with_different_codes_both_succeed(db, other_db, user, monkeypatch):
    _, backup_codes = _enroll(db, user)
    same_user_elsewhere = other_db.get(User, user.id)
    check_password = two_fa_service.verify_password
    winners = []

    def check_while_the_other_request_claims(candidate, code_hash):
        if not winners:
            winners.append(None)
            winners[0] = TwoFAService.verify_backup_code(db, user, backup_codes[1])
        return check_password(candidate, code_hash)

    monkeypatch.setattr(two_fa_service, "verify_password", check_while_the_other_request_claims)

    assert TwoFAService.verify_backup_code(other_db, same_user_elsewhere, backup_codes[0]) is True
    assert winners == [True]
    assert TwoFAService.get_status(db, user.id)["backup_codes_remaining"] == len(backup_codes) - 2


class ExplodingNotifier(NotificationService):
    def __init__(self):
        super().__init__(base_url="http://mail.invalid", api_key="test-key")

    def send_template(self, recipient, template_name, variables, organization=None):
        raise RuntimeError("mail transport is down")


@pytest.mark.unit
def test_enable_and_disable_survive_notification_failures(db, user):
    totp = pyotp.TOTP(TwoFAService.generate_secret(db, user.id)["secret"])

    backup_codes = TwoFAService.enable(db, user.id, totp.now(), notifier=ExplodingNotifier())

    assert len(backup_codes) == 8
    assert TwoFAService.get_status(db, user.id) == {"enabled": True, "backup_codes_remaining": 8}

    assert TwoFAService.disable(db, user.id, PASSWORD, notifier=ExplodingNotifier()) is True
    assert TwoFAService.get_status(db, user.id)["enabled"] is False
