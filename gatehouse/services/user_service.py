"""User service"""

from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from sqlalchemy import case
from sqlalchemy.orm import Session
import structlog

from gatehouse.config import settings
from gatehouse.database.database import commit_or_conflict, flush_or_conflict
from gatehouse.database.models import Organization, User
from gatehouse.errors import ConflictError, InvalidInputError, NotFoundError
from gatehouse.security.password import hash_password, validate_password, verify_password

logger = structlog.get_logger()

USER_UPDATABLE_FIELDS = ("email", "username", "first_name", "last_name", "status")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class UserService:
    """User management service"""

    @staticmethod
    def _check_unique(
        db: Session,
        organization_id: str,
        email: Optional[str] = None,
        username: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        # Tombstoned users still hold their email/username
        if email:
            query = db.query(User.id).filter(User.organization_id == organization_id, User.email == email)
            if exclude_id:
                query = query.filter(User.id != exclude_id)
            if query.first():
                raise ConflictError("User with this email already exists in this organization")
        if username:
            query = db.query(User.id).filter(User.organization_id == organization_id, User.username == username)
            if exclude_id:
                query = query.filter(User.id != exclude_id)
            if query.first():
                raise ConflictError("Username already taken in this organization")

    @staticmethod
    def create_user(
        db: Session,
        organization_id: str,
        email: str,
        password: str,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        status: str = "active",
        commit: bool = True,
    ) -> User:
        """Create a user inside an organization.

        With commit=False the user is only flushed, so the caller can finish
        a larger transaction.
        """
        email = normalize_email(email)
        if not email or "@" not in email:
            raise InvalidInputError("A valid email address is required")
        validate_password(password)

        organization = db.query(Organization).filter(
            Organization.id == organization_id,
            Organization.deleted_at.is_(None),
        ).first()
        if not organization:
            raise NotFoundError("Organization not found")

        UserService._check_unique(db, organization_id, email=email, username=username)

        user = User(
            organization_id=organization_id,
            email=email,
            username=username,
            first_name=first_name,
            last_name=last_name,
            password_hash=hash_password(password),
            status=status,
        )
        db.add(user)
        flush_or_conflict(db, "User with this email or username already exists in this organization")
        if commit:
            commit_or_conflict(db, "User with this email or username already exists in this organization")
            db.refresh(user)

        logger.info("user_created", user_id=user.id, organization_id=organization_id)
        return user

    @staticmethod
    def get_user(db: Session, user_id: str) -> Optional[User]:
        """Get a live user by ID"""
        return db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()

    @staticmethod
    def get_user_by_email(db: Session, organization_id: str, email: str) -> Optional[User]:
        """Get a live user by email within an organization"""
        return db.query(User).filter(
            User.organization_id == organization_id,
            User.email == normalize_email(email),
            User.deleted_at.is_(None),
        ).first()

    @staticmethod
    def get_user_by_username(db: Session, organization_id: str, username: str) -> Optional[User]:
        return db.query(User).filter(
            User.organization_id == organization_id,
            User.username == username,
            User.deleted_at.is_(None),
        ).first()

    @staticmethod
    def list_organization_users(
        db: Session,
        organization_id: str,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[User], int]:
        """List live users in an organization"""
        query = db.query(User).filter(
            User.organization_id == organization_id,
            User.deleted_at.is_(None),
        )
        total = query.count()
        return query.order_by(User.created_at.desc()).offset(skip).limit(limit).all(), total

    @staticmethod
    def update_user(db: Session, user_id: str, **changes: Any) -> User:
        """Update profile fields; organization never changes"""
        user = UserService.get_user(db, user_id)
        if not user:
            raise NotFoundError("User not found")

        unknown = set(changes) - set(USER_UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"Unknown user fields: {', '.join(sorted(unknown))}")

        if changes.get("email"):
            changes["email"] = normalize_email(changes["email"])
        UserService._check_unique(
            db,
            user.organization_id,
            email=changes.get("email"),
            username=changes.get("username"),
            exclude_id=user.id,
        )
        for key, value in changes.items():
            if value is not None:
                setattr(user, key, value)

        commit_or_conflict(db, "User with this email or username already exists in this organization")
        db.refresh(user)
        return user

    @staticmethod
    def delete_user(db: Session, user_id: str) -> User:
        user = UserService.get_user(db, user_id)
        if not user:
            raise NotFoundError("User not found")
        user.soft_delete()
        db.commit()
        logger.info("user_deleted", user_id=user_id)
        return user

    @staticmethod
    def restore_user(db: Session, user_id: str) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError("User not found")
        user.restore()
        db.commit()
        logger.info("user_restored", user_id=user_id)
        return user

    @staticmethod
    def update_password(db: Session, user: User, new_password: str) -> None:
        """Set a new password; any outstanding reset token stops working"""
        validate_password(new_password)
        user.password_hash = hash_password(new_password)
        user.password_reset_token_hash = None
        user.password_reset_expires_at = None
        db.commit()
        logger.info("password_updated", user_id=user.id)

    @staticmethod
    def verify_user_password(user: User, password: str) -> bool:
        return verify_password(password, user.password_hash)

    # Lockout bookkeeping

    @staticmethod
    def is_account_locked(user: User, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return user.locked_until is not None and user.locked_until > now

    @staticmethod
    def clear_expired_lock(db: Session, user: User, now: Optional[datetime] = None) -> None:
        """A lapsed lock starts a fresh failure count"""
        now = now or datetime.utcnow()
        if user.locked_until is not None and user.locked_until <= now:
            db.query(User).filter(User.id == user.id, User.locked_until <= now).update(
                {User.locked_until: None, User.failed_login_attempts: 0},
                synchronize_session=False,
            )
            db.commit()
            db.refresh(user)

    @staticmethod
    def record_failed_login(db: Session, user: User, now: Optional[datetime] = None) -> bool:
        """Count a failure; returns True once the count has reached the lockout threshold.

        The increment happens in the database so concurrent failures all count.
        """
        now = now or datetime.utcnow()
        reaches_limit = User.failed_login_attempts + 1 >= settings.MAX_FAILED_LOGIN_ATTEMPTS
        db.query(User).filter(User.id == user.id).update(
            {
                User.failed_login_attempts: User.failed_login_attempts + 1,
                User.locked_until: case(
                    (reaches_limit, now + timedelta(minutes=settings.LOCKOUT_MINUTES)),
                    else_=User.locked_until,
                ),
            },
            synchronize_session=False,
        )
        db.commit()
        db.refresh(user)

        locked = user.failed_login_attempts >= settings.MAX_FAILED_LOGIN_ATTEMPTS
        if locked:
            logger.warning("account_locked", user_id=user.id, attempts=user.failed_login_attempts)
        return locked

    @staticmethod
    def record_successful_login(db: Session, user: User, ip_address: Optional[str] = None) -> None:
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = datetime.utcnow()
        user.last_login_ip = ip_address
        db.commit()
