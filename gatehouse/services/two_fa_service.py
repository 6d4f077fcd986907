"""Two-Factor Authentication service"""

from typing import Any, Callable, Dict, List, Optional
from sqlalchemy.orm import Session
import structlog

from gatehouse.config import settings
from gatehouse.database.models import User
from gatehouse.errors import ConflictError, InvalidInputError, NotFoundError, UnauthorizedError
from gatehouse.security.encryption import encrypt_data, decrypt_data
from gatehouse.security.password import hash_password, verify_password
from gatehouse.security.two_fa import (
    generate_2fa_secret,
    get_2fa_uri,
    generate_qr_code,
    verify_2fa_code,
    generate_backup_codes,
    normalize_backup_code,
)
from gatehouse.services.notification_service import NotificationService

logger = structlog.get_logger()


class TwoFAService:
    """2FA service"""

    @staticmethod
    def _get_user(db: Session, user_id: str) -> User:
        user = db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()
        if not user:
            raise NotFoundError("User not found")
        return user

    @staticmethod
    def _issue_backup_codes(user: User) -> List[str]:
        """New plaintext codes for the caller; only hashes are kept"""
        codes = generate_backup_codes(settings.BACKUP_CODE_COUNT)
        user.two_fa_backup_codes = [hash_password(normalize_backup_code(c)) for c in codes]
        return codes

    @staticmethod
    def _notify(send: Callable[..., Any], *args: Any) -> None:
        """The setting change stands even when the email cannot be sent"""
        try:
            send(*args)
        except Exception as e:
            logger.error("notification_failed", operation=getattr(send, "__name__", "send"), error=str(e))

    @staticmethod
    def generate_secret(db: Session, user_id: str) -> Dict[str, Any]:
        """Start enrollment: store a pending secret and return it with its QR code"""
        user = TwoFAService._get_user(db, user_id)
        if user.two_fa_enabled:
            raise ConflictError("Two-factor authentication is already enabled")

        secret = generate_2fa_secret()
        uri = get_2fa_uri(secret, user.email, settings.TWO_FA_ISSUER)
        user.two_fa_secret = encrypt_data(secret)
        db.commit()

        return {
            "secret": secret,
            "qr_code": generate_qr_code(uri),
            "uri": uri,
        }

    @staticmethod
    def enable(
        db: Session,
        user_id: str,
        code: str,
        notifier: Optional[NotificationService] = None,
    ) -> List[str]:
        """Confirm the pending secret with a code; returns backup codes once"""
        user = TwoFAService._get_user(db, user_id)
        if user.two_fa_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        if not user.two_fa_secret:
            raise InvalidInputError("Generate a two-factor secret first")

        if not verify_2fa_code(decrypt_data(user.two_fa_secret), code, settings.TOTP_VALID_WINDOW):
            raise UnauthorizedError("Invalid verification code")

        user.two_fa_enabled = True
        backup_codes = TwoFAService._issue_backup_codes(user)
        db.commit()
        logger.info("two_fa_enabled", user_id=user.id)

        if notifier:
            TwoFAService._notify(notifier.send_two_fa_enabled_email, user.email, user.full_name, user.organization)
        return backup_codes

    @staticmethod
    def verify_totp(db: Session, user: User, code: str) -> bool:
        if not user.two_fa_enabled or not user.two_fa_secret:
            return False
        return verify_2fa_code(decrypt_data(user.two_fa_secret), code, settings.TOTP_VALID_WINDOW)

    @staticmethod
    def verify_backup_code(db: Session, user: User, code: str) -> bool:
        """Accept a backup code once.

        The hash list is swapped with a conditional UPDATE that only matches
        the list the code was checked against, so two requests racing on the
        same code cannot both succeed. A lost race re-reads and checks again.
        """
        if not code or not user.two_fa_enabled:
            return False
        candidate = normalize_backup_code(code)

        while True:
            db.refresh(user)
            current = list(user.two_fa_backup_codes or [])
            match = next((i for i, h in enumerate(current) if verify_password(candidate, h)), None)
            if match is None or not user.two_fa_enabled:
                return False

            remaining = current[:match] + current[match + 1:]
            claimed = db.query(User).filter(
                User.id == user.id,
                User.two_fa_backup_codes == current,
            ).update({User.two_fa_backup_codes: remaining}, synchronize_session=False)
            db.commit()
            if claimed == 1:
                logger.info("backup_code_used", user_id=user.id, remaining=len(remaining))
                return True
            logger.info("backup_code_claim_retry", user_id=user.id)

    @staticmethod
    def verify_code(db: Session, user: User, code: str) -> bool:
        """TOTP first, then backup codes"""
        return TwoFAService.verify_totp(db, user, code) or TwoFAService.verify_backup_code(db, user, code)

    @staticmethod
    def disable(
        db: Session,
        user_id: str,
        password: str,
        notifier: Optional[NotificationService] = None,
    ) -> bool:
        user = TwoFAService._get_user(db, user_id)
        if not user.two_fa_enabled:
            raise InvalidInputError("Two-factor authentication is not enabled")
        if not verify_password(password, user.password_hash):
            raise UnauthorizedError("Invalid password")

        user.two_fa_enabled = False
        user.two_fa_secret = None
        user.two_fa_backup_codes = []
        db.commit()
        logger.info("two_fa_disabled", user_id=user.id)

        if notifier:
            TwoFAService._notify(notifier.send_two_fa_disabled_email, user.email, user.full_name, user.organization)
        return True

    @staticmethod
    def regenerate_backup_codes(db: Session, user_id: str, password: str) -> List[str]:
        user = TwoFAService._get_user(db, user_id)
        if not user.two_fa_enabled:
            raise InvalidInputError("Two-factor authentication is not enabled")
        if not verify_password(password, user.password_hash):
            raise UnauthorizedError("Invalid password")

        backup_codes = TwoFAService._issue_backup_codes(user)
        db.commit()
        logger.info("backup_codes_regenerated", user_id=user.id)
        return backup_codes

    @staticmethod
    def get_status(db: Session, user_id: str) -> Dict[str, Any]:
        user = TwoFAService._get_user(db, user_id)
        return {
            "enabled": bool(user.two_fa_enabled),
            "backup_codes_remaining": len(user.two_fa_backup_codes or []) if user.two_fa_enabled else 0,
        }
