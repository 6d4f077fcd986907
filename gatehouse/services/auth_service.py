"""Authentication service"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import hmac

from sqlalchemy.orm import Session
import structlog

from gatehouse.config import settings
from gatehouse.database.database import commit_or_conflict
from gatehouse.database.models import Organization, Role, User, UserRole
from gatehouse.errors import (
    AccountLockedError,
    GatehouseError,
    InvalidInputError,
    InvalidTokenError,
    NotFoundError,
    UnauthorizedError,
)
from gatehouse.security.encryption import hash_token
from gatehouse.security.jwt import (
    ACCESS_TOKEN,
    PASSWORD_RESET_TOKEN,
    REFRESH_TOKEN,
    TWO_FA_TOKEN,
    create_access_token,
    create_password_reset_token,
    create_refresh_token,
    create_step_up_token,
    remaining_lifetime,
    verify_token,
)
from gatehouse.security.password import burn_verification, validate_password, verify_password
from gatehouse.security.token_denylist import TokenDenyList
from gatehouse.services.invitation_service import InvitationService
from gatehouse.services.notification_service import NotificationService
from gatehouse.services.organization_service import OrganizationService
from gatehouse.services.permission_cache import PermissionCache
from gatehouse.services.role_service import RoleService
from gatehouse.services.subdomain_service import SubdomainService
from gatehouse.services.two_fa_service import TwoFAService
from gatehouse.services.user_service import UserService, normalize_email
from gatehouse.templates import OWNER_ROLE_SLUG

logger = structlog.get_logger()

RESET_REQUEST_MESSAGE = "If the email exists, a password reset link has been sent"
INVALID_CREDENTIALS = "Invalid credentials"
INVALID_RESET_TOKEN = "Invalid or expired reset token"


class AuthService:
    """
    Authentication service.

    Composes credential checks, token issuing, two-factor verification and
    lockout into the register, login, refresh, reset and logout flows.
    """

    def __init__(
        self,
        db: Session,
        cache: Optional[PermissionCache] = None,
        denylist: Optional[TokenDenyList] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.db = db
        self.cache = cache
        self.denylist = denylist
        self.notifier = notifier
        self.roles = RoleService(db, cache)

    # Helpers

    def _notify(self, send: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Notifications never fail the calling flow"""
        try:
            send(*args, **kwargs)
        except Exception as e:
            logger.error("notification_failed", operation=getattr(send, "__name__", "send"), error=str(e))

    def _issue_session(self, user: User) -> Dict[str, Any]:
        token_data = {
            "sub": user.id,
            "email": user.email,
            "organization_id": user.organization_id,
        }
        return {
            "access_token": create_access_token(token_data),
            "refresh_token": create_refresh_token(token_data),
            "token_type": "bearer",
            "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            "requires_two_factor": False,
            "user": user.to_dict(),
        }

    def _resolve_organization(
        self,
        organization_id: Optional[str],
        organization_slug: Optional[str],
        tenant: Optional[Organization],
    ) -> Optional[Organization]:
        """Explicit id, then slug, then the tenant resolved from the host"""
        if organization_id:
            return self.db.query(Organization).filter(Organization.id == organization_id).first()
        if organization_slug:
            return self.db.query(Organization).filter(
                Organization.slug == organization_slug,
                Organization.deleted_at.is_(None),
            ).first()
        return tenant

    def _registration_organization(
        self,
        organization_id: Optional[str],
        organization_slug: Optional[str],
        tenant: Optional[Organization],
    ) -> Organization:
        if not (organization_id or organization_slug or tenant):
            raise InvalidInputError("Organization ID or slug is required")
        organization = self._resolve_organization(organization_id, organization_slug, tenant)
        if not organization or organization.is_deleted:
            raise NotFoundError("Organization not found")
        if not organization.is_active:
            raise NotFoundError("Organization is not active")
        return organization

    def _grant_default_role(self, user: User, warnings: List[str]) -> None:
        role = self.db.query(Role).filter(
            Role.organization_id == user.organization_id,
            Role.is_default.is_(True),
            Role.deleted_at.is_(None),
        ).order_by(Role.priority.desc()).first()
        if not role:
            return
        try:
            self.roles.assign_role(user.id, role.id, assigned_reason="Default role on registration")
        except GatehouseError as e:
            logger.warning("default_role_grant_failed", user_id=user.id, error=e.message)
            warnings.append(f"Default role could not be assigned: {e.message}")

    # Registration

    def register(
        self,
        email: str,
        password: str,
        organization_id: Optional[str] = None,
        organization_slug: Optional[str] = None,
        tenant: Optional[Organization] = None,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Register into an existing organization and start a session"""
        organization = self._registration_organization(organization_id, organization_slug, tenant)

        user = UserService.create_user(
            self.db,
            organization.id,
            email=email,
            password=password,
            username=username,
            first_name=first_name,
            last_name=last_name,
        )
        warnings: List[str] = []
        self._grant_default_role(user, warnings)

        if self.notifier:
            self._notify(self.notifier.send_welcome_email, user.email, user.full_name, organization)

        logger.info("user_registered", user_id=user.id, organization_id=organization.id)
        result = self._issue_session(user)
        result["email_domain_match"] = SubdomainService.email_domain_matches(
            user.email, (organization.settings or {}).get("email_domain") or organization.domain
        )
        result["warnings"] = warnings
        return result

    def register_with_organization(
        self,
        email: str,
        password: str,
        organization_name: str,
        organization_slug: Optional[str] = None,
        organization_domain: Optional[str] = None,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create an organization and its first administrator in one transaction"""
        validate_password(password)
        try:
            organization = OrganizationService.create_organization(
                self.db,
                name=organization_name,
                slug=organization_slug,
                domain=organization_domain,
                commit=False,
            )
            user = UserService.create_user(
                self.db,
                organization.id,
                email=email,
                password=password,
                username=username,
                first_name=first_name,
                last_name=last_name,
                commit=False,
            )
        except GatehouseError:
            self.db.rollback()
            raise

        admin_role = self.db.query(Role).filter(
            Role.organization_id == organization.id,
            Role.slug == OWNER_ROLE_SLUG,
        ).first()
        self.db.add(UserRole(
            user_id=user.id,
            role_id=admin_role.id,
            scope="global",
            is_active=True,
            assigned_reason="Organization creator",
        ))
        commit_or_conflict(self.db, "Organization slug or subdomain already in use")
        self.db.refresh(organization)
        self.db.refresh(user)
        self.roles.invalidate_user(user.id)

        if self.notifier:
            self._notify(self.notifier.send_organization_created_email, user.email, user.full_name, organization)

        logger.info("organization_registered", user_id=user.id, organization_id=organization.id)
        result = self._issue_session(user)
        result["organization"] = organization.to_dict()
        return result

    def register_with_invitation(
        self,
        token: str,
        email: str,
        password: str,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        invitations = InvitationService(self.db, self.cache, self.notifier)
        accepted = invitations.accept_invitation(
            token,
            email=email,
            password=password,
            username=username,
            first_name=first_name,
            last_name=last_name,
        )
        result = self._issue_session(accepted.user)
        result["organization"] = accepted.invitation.organization.to_dict()
        result["warnings"] = accepted.warnings
        return result

    # Login

    def _find_login_user(self, organization: Organization, email_or_username: str) -> Optional[User]:
        if "@" in email_or_username:
            return UserService.get_user_by_email(self.db, organization.id, email_or_username)
        return UserService.get_user_by_username(self.db, organization.id, email_or_username.strip())

    def _check_second_factor(self, user: User, code: str) -> None:
        if not TwoFAService.verify_code(self.db, user, code):
            UserService.record_failed_login(self.db, user)
            logger.info("login_failed", user_id=user.id, reason="invalid_2fa_code")
            raise UnauthorizedError("Invalid 2FA code")

    def _complete_login(self, user: User, ip_address: Optional[str]) -> Dict[str, Any]:
        UserService.record_successful_login(self.db, user, ip_address)
        if self.notifier:
            self._notify(self.notifier.send_new_login_email, user.email, user.full_name, ip_address, user.organization)
        logger.info("login_succeeded", user_id=user.id, organization_id=user.organization_id)
        return self._issue_session(user)

    def login(
        self,
        email_or_username: str,
        password: str,
        organization_id: Optional[str] = None,
        organization_slug: Optional[str] = None,
        tenant: Optional[Organization] = None,
        two_fa_code: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Authenticate a user.

        Order: locked? -> password -> two-factor -> session. When two-factor is
        enabled and no code was supplied, a step-up token is returned instead
        of a session.
        """
        organization = self._resolve_organization(organization_id, organization_slug, tenant)
        if organization is None:
            if organization_id or organization_slug:
                raise UnauthorizedError("Invalid organization")
            raise UnauthorizedError("Organization ID or slug is required")
        if organization.is_deleted or not organization.is_active:
            raise UnauthorizedError("Invalid organization")

        user = self._find_login_user(organization, email_or_username or "")
        if not user:
            burn_verification(password)
            raise UnauthorizedError(INVALID_CREDENTIALS)

        UserService.clear_expired_lock(self.db, user)
        if UserService.is_account_locked(user):
            raise AccountLockedError()

        if not verify_password(password, user.password_hash):
            UserService.record_failed_login(self.db, user)
            logger.info("login_failed", user_id=user.id, reason="invalid_password")
            raise UnauthorizedError(INVALID_CREDENTIALS)

        if user.status != "active":
            raise UnauthorizedError("User account is not active")

        if user.two_fa_enabled:
            if not two_fa_code:
                return {
                    "requires_two_factor": True,
                    "two_factor_token": create_step_up_token(user.id, user.organization_id),
                    "access_token": None,
                    "refresh_token": None,
                    "user": None,
                }
            self._check_second_factor(user, two_fa_code)

        return self._complete_login(user, ip_address)

    def verify_two_factor_login(
        self,
        two_factor_token: str,
        code: str,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Finish a login that stopped at the step-up token"""
        payload = verify_token(two_factor_token, TWO_FA_TOKEN, self.denylist)
        user = UserService.get_user(self.db, payload["sub"])
        if not user or not user.two_fa_enabled or payload.get("organization_id") != user.organization_id:
            raise InvalidTokenError()

        UserService.clear_expired_lock(self.db, user)
        if UserService.is_account_locked(user):
            raise AccountLockedError()

        self._check_second_factor(user, code)
        # One step-up token, one session
        if self.denylist is not None:
            self.denylist.revoke(payload["jti"], remaining_lifetime(payload))
        return self._complete_login(user, ip_address)

    # Sessions

    def get_current_user(self, token: str) -> User:
        """Resolve a bearer access token to a live user"""
        payload = verify_token(token, ACCESS_TOKEN, self.denylist)
        user = UserService.get_user(self.db, payload["sub"])
        if not user or user.organization is None:
            raise InvalidTokenError()
        if user.organization.is_deleted or not user.organization.is_active:
            raise InvalidTokenError("Organization is not active")
        return user

    def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        """Exchange a refresh token for a new pair; the old refresh token is revoked"""
        payload = verify_token(refresh_token, REFRESH_TOKEN, self.denylist)
        user = UserService.get_user(self.db, payload["sub"])
        if not user or user.status != "active":
            raise InvalidTokenError("Invalid refresh token")
        if user.organization is None or user.organization.is_deleted or not user.organization.is_active:
            raise InvalidTokenError("Invalid refresh token")

        if self.denylist is not None:
            self.denylist.revoke(payload["jti"], remaining_lifetime(payload))
        return self._issue_session(user)

    def logout(self, access_token: str, refresh_token: Optional[str] = None) -> Dict[str, Any]:
        """Revoke the presented tokens until they would have expired anyway"""
        payload = verify_token(access_token, ACCESS_TOKEN, self.denylist)
        if self.denylist is not None:
            self.denylist.revoke(payload["jti"], remaining_lifetime(payload))
            if refresh_token:
                try:
                    refresh_payload = verify_token(refresh_token, REFRESH_TOKEN, self.denylist)
                except UnauthorizedError:
                    refresh_payload = None
                if refresh_payload and refresh_payload["sub"] == payload["sub"]:
                    self.denylist.revoke(refresh_payload["jti"], remaining_lifetime(refresh_payload))

        logger.info("logout", user_id=payload["sub"])
        return {"success": True, "message": "Logged out successfully"}

    # Password reset

    def request_password_reset(
        self,
        email: str,
        organization_id: Optional[str] = None,
        organization_slug: Optional[str] = None,
        tenant: Optional[Organization] = None,
    ) -> Dict[str, Any]:
        """Issue a reset token by email. The response never reveals whether the account exists."""
        response = {"success": True, "message": RESET_REQUEST_MESSAGE}

        organization = self._resolve_organization(organization_id, organization_slug, tenant)
        if not organization or organization.is_deleted or not organization.is_active:
            return response
        user = UserService.get_user_by_email(self.db, organization.id, normalize_email(email))
        if not user:
            return response

        reset_token = create_password_reset_token(user.id, user.organization_id)
        user.password_reset_token_hash = hash_token(reset_token)
        user.password_reset_expires_at = datetime.utcnow() + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)
        self.db.commit()
        logger.info("password_reset_requested", user_id=user.id)

        if self.notifier:
            self._notify(self.notifier.send_password_reset_email, user.email, user.full_name, reset_token, organization)
        return response

    def reset_password(self, reset_token: str, new_password: str) -> Dict[str, Any]:
        """Redeem a reset token once"""
        try:
            payload = verify_token(reset_token, PASSWORD_RESET_TOKEN)
        except UnauthorizedError:
            raise InvalidInputError(INVALID_RESET_TOKEN)

        user = UserService.get_user(self.db, payload["sub"])
        if (
            not user
            or payload.get("organization_id") != user.organization_id
            or not user.password_reset_token_hash
            or not hmac.compare_digest(user.password_reset_token_hash, hash_token(reset_token))
            or not user.password_reset_expires_at
            or datetime.utcnow() > user.password_reset_expires_at
        ):
            raise InvalidInputError(INVALID_RESET_TOKEN)

        validate_password(new_password)
        user.failed_login_attempts = 0
        user.locked_until = None
        UserService.update_password(self.db, user, new_password)
        logger.info("password_reset_completed", user_id=user.id)
        return {"success": True, "message": "Password reset successfully"}
