"""Invitation service for onboarding users into an organization"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, case, or_
from sqlalchemy.orm import Session
import structlog

from gatehouse.config import settings
from gatehouse.database.database import commit_or_conflict
from gatehouse.database.models import (
    Invitation,
    Organization,
    Role,
    User,
    INVITATION_ACCEPTED,
    INVITATION_EXPIRED,
    INVITATION_PENDING,
    INVITATION_REVOKED,
    INVITATION_TYPE_EMAIL,
    INVITATION_TYPE_LINK,
    SUPER_ADMIN_ROLE_SLUG,
)
from gatehouse.errors import (
    ConflictError,
    ForbiddenError,
    GatehouseError,
    InvalidInputError,
    NotFoundError,
)
from gatehouse.security.encryption import generate_token, hash_token
from gatehouse.services.notification_service import NotificationService
from gatehouse.services.permission_cache import PermissionCache
from gatehouse.services.role_service import RoleService
from gatehouse.services.user_service import UserService, normalize_email

logger = structlog.get_logger()


@dataclass
class InvitationValidation:
    is_valid: bool
    error: Optional[str] = None
    invitation: Optional[Invitation] = None


@dataclass
class AcceptanceResult:
    """Outcome of an acceptance; `warnings` lists best-effort steps that failed"""

    user: User
    invitation: Invitation
    warnings: List[str] = field(default_factory=list)


class InvitationService:
    """Service for managing invitations"""

    def __init__(
        self,
        db: Session,
        cache: Optional[PermissionCache] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.db = db
        self.cache = cache
        self.notifier = notifier
        self.roles = RoleService(db, cache)

    # Creation

    def _get_organization(self, organization_id: str) -> Organization:
        organization = self.db.query(Organization).filter(
            Organization.id == organization_id,
            Organization.deleted_at.is_(None),
        ).first()
        if not organization:
            raise NotFoundError("Organization not found")
        return organization

    def _check_role(self, organization_id: str, role_id: Optional[str], invited_by: Optional[str]) -> Optional[Role]:
        if not role_id:
            return None
        role = self.db.query(Role).filter(Role.id == role_id, Role.deleted_at.is_(None)).first()
        if not role:
            raise NotFoundError("Role not found")
        if role.organization_id and role.organization_id != organization_id:
            raise InvalidInputError("Role belongs to a different organization")
        if not role.is_assignable:
            raise InvalidInputError("This role cannot be assigned")
        if role.slug == SUPER_ADMIN_ROLE_SLUG and role.is_system:
            if not invited_by or not self.roles.is_super_admin(invited_by):
                raise ForbiddenError()
        return role

    def _expiry(self, expires_in_days: Optional[int]) -> datetime:
        days = expires_in_days or settings.INVITATION_EXPIRY_DAYS
        if days <= 0:
            raise InvalidInputError("Invitation expiry must be positive")
        return datetime.utcnow() + timedelta(days=days)

    def create_email_invitation(
        self,
        organization_id: str,
        email: str,
        invited_by: Optional[str] = None,
        role_id: Optional[str] = None,
        expires_in_days: Optional[int] = None,
        message: Optional[str] = None,
    ) -> Tuple[Invitation, str]:
        """
        Invite one email address. Single-use.

        Returns:
            Tuple of (Invitation, raw_token); the raw token is never stored

        Raises:
            ConflictError: address is already a member or has a live invitation
        """
        organization = self._get_organization(organization_id)
        email = normalize_email(email)
        if not email or "@" not in email:
            raise InvalidInputError("A valid email address is required")
        role = self._check_role(organization_id, role_id, invited_by)

        if UserService.get_user_by_email(self.db, organization_id, email):
            raise ConflictError("User is already a member of this organization")

        existing = self.db.query(Invitation).filter(
            Invitation.organization_id == organization_id,
            Invitation.email == email,
            Invitation.status == INVITATION_PENDING,
            Invitation.expires_at > datetime.utcnow(),
        ).first()
        if existing:
            raise ConflictError("An invitation has already been sent to this email")

        raw_token = generate_token()
        invitation = Invitation(
            organization_id=organization_id,
            email=email,
            token_hash=hash_token(raw_token),
            role_id=role.id if role else None,
            invited_by=invited_by,
            type=INVITATION_TYPE_EMAIL,
            status=INVITATION_PENDING,
            max_uses=1,
            used_count=0,
            expires_at=self._expiry(expires_in_days),
            invitation_metadata={"message": message} if message else {},
        )
        self.db.add(invitation)
        commit_or_conflict(self.db, "Invitation token collision, retry")
        self.db.refresh(invitation)

        logger.info(
            "invitation_created",
            invitation_id=invitation.id,
            organization_id=organization_id,
            type=INVITATION_TYPE_EMAIL,
        )
        self._send_invitation(invitation, raw_token, organization, role)
        return invitation, raw_token

    def create_link_invitation(
        self,
        organization_id: str,
        invited_by: Optional[str] = None,
        role_id: Optional[str] = None,
        max_uses: Optional[int] = None,
        expires_in_days: Optional[int] = None,
    ) -> Tuple[Invitation, str]:
        """Shareable invitation; unlimited uses when max_uses is None"""
        self._get_organization(organization_id)
        if max_uses is not None and max_uses < 1:
            raise InvalidInputError("max_uses must be at least 1")
        role = self._check_role(organization_id, role_id, invited_by)

        raw_token = generate_token()
        invitation = Invitation(
            organization_id=organization_id,
            email=None,
            token_hash=hash_token(raw_token),
            role_id=role.id if role else None,
            invited_by=invited_by,
            type=INVITATION_TYPE_LINK,
            status=INVITATION_PENDING,
            max_uses=max_uses,
            used_count=0,
            expires_at=self._expiry(expires_in_days),
            invitation_metadata={},
        )
        self.db.add(invitation)
        commit_or_conflict(self.db, "Invitation token collision, retry")
        self.db.refresh(invitation)

        logger.info(
            "invitation_created",
            invitation_id=invitation.id,
            organization_id=organization_id,
            type=INVITATION_TYPE_LINK,
            max_uses=max_uses,
        )
        return invitation, raw_token

    def _send_invitation(self, invitation: Invitation, raw_token: str, organization: Organization, role: Optional[Role]) -> None:
        if not self.notifier:
            return
        try:
            inviter_name = invitation.inviter.full_name if invitation.inviter else None
            self.notifier.send_invitation_email(
                invitation.email,
                raw_token,
                organization,
                inviter_name=inviter_name,
                role_name=role.name if role else None,
            )
        except Exception as e:
            logger.error("invitation_email_failed", invitation_id=invitation.id, error=str(e))

    # Validation and acceptance

    def get_by_token(self, token: str) -> Optional[Invitation]:
        if not token:
            return None
        return self.db.query(Invitation).filter(Invitation.token_hash == hash_token(token)).first()

    @staticmethod
    def check_usable(invitation: Invitation, now: Optional[datetime] = None) -> Optional[str]:
        """Reason the invitation cannot be accepted, or None"""
        if invitation.status == INVITATION_REVOKED:
            return "Invitation has been revoked"
        if invitation.status != INVITATION_PENDING:
            return "Invitation has already been used"
        if invitation.is_expired(now):
            return "Invitation has expired"
        if invitation.max_uses is not None and invitation.used_count >= invitation.max_uses:
            return "Invitation link has reached maximum uses"
        if invitation.organization is None or invitation.organization.is_deleted:
            return "Organization no longer exists"
        return None

    def validate_invitation(self, token: str) -> InvitationValidation:
        invitation = self.get_by_token(token)
        if not invitation:
            return InvitationValidation(False, "Invalid invitation token")
        error = self.check_usable(invitation)
        if error:
            return InvitationValidation(False, error, invitation)
        return InvitationValidation(True, invitation=invitation)

    def _usable_invitation(self, token: str) -> Invitation:
        validation = self.validate_invitation(token)
        if validation.invitation is None:
            raise NotFoundError(validation.error)
        if not validation.is_valid:
            raise InvalidInputError(validation.error)
        return validation.invitation

    def _claim(self, invitation: Invitation, user_id: str) -> None:
        """Consume one use with a single conditional UPDATE.

        The WHERE clause repeats every usability check, so concurrent
        acceptances can never push used_count past max_uses. SET expressions
        read the pre-update row.
        """
        now = datetime.utcnow()
        becomes_accepted = and_(
            Invitation.max_uses.isnot(None),
            Invitation.used_count + 1 >= Invitation.max_uses,
        )
        claimed = self.db.query(Invitation).filter(
            Invitation.id == invitation.id,
            Invitation.status == INVITATION_PENDING,
            Invitation.expires_at >= now,
            or_(Invitation.max_uses.is_(None), Invitation.used_count < Invitation.max_uses),
        ).update(
            {
                Invitation.used_count: Invitation.used_count + 1,
                Invitation.status: case((becomes_accepted, INVITATION_ACCEPTED), else_=INVITATION_PENDING),
                Invitation.accepted_by: user_id,
                Invitation.accepted_at: now,
            },
            synchronize_session=False,
        )
        if claimed != 1:
            self.db.rollback()
            self.db.refresh(invitation)
            raise InvalidInputError(self.check_usable(invitation) or "Invitation is no longer valid")

    def _grant_role(self, invitation: Invitation, user: User, warnings: List[str]) -> None:
        """Best effort: the membership stands even if the grant fails"""
        if not invitation.role_id:
            return
        try:
            self.roles.assign_role(
                user.id,
                invitation.role_id,
                assigned_by=invitation.invited_by,
                assigned_reason="Invitation acceptance",
            )
        except GatehouseError as e:
            logger.warning(
                "invitation_role_grant_failed",
                invitation_id=invitation.id,
                user_id=user.id,
                error=e.message,
            )
            warnings.append(f"Role could not be assigned: {e.message}")

    def _notify_accepted(self, invitation: Invitation, user: User) -> None:
        if not self.notifier:
            return
        try:
            self.notifier.send_welcome_email(user.email, user.full_name, invitation.organization)
            if invitation.inviter:
                self.notifier.send_invitation_accepted_email(
                    invitation.inviter.email, user.email, invitation.organization
                )
        except Exception as e:
            logger.error("invitation_accepted_email_failed", invitation_id=invitation.id, error=str(e))

    def accept_invitation(
        self,
        token: str,
        email: str,
        password: str,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AcceptanceResult:
        """
        Create a new user from an invitation.

        User creation and the invitation claim commit together. The role
        grant follows as a separate best-effort step.
        """
        invitation = self._usable_invitation(token)
        email = normalize_email(email)
        if invitation.type == INVITATION_TYPE_EMAIL and invitation.email != email:
            raise InvalidInputError("Email does not match the invitation")

        user = UserService.create_user(
            self.db,
            invitation.organization_id,
            email=email,
            password=password,
            username=username,
            first_name=first_name,
            last_name=last_name,
            commit=False,
        )
        self._claim(invitation, user.id)
        commit_or_conflict(self.db, "User with this email or username already exists in this organization")
        self.db.refresh(invitation)
        self.db.refresh(user)

        logger.info(
            "invitation_accepted",
            invitation_id=invitation.id,
            user_id=user.id,
            used_count=invitation.used_count,
            status=invitation.status,
        )

        warnings: List[str] = []
        self._grant_role(invitation, user, warnings)
        self._notify_accepted(invitation, user)
        return AcceptanceResult(user=user, invitation=invitation, warnings=warnings)

    def accept_invitation_for_user(self, token: str, user_id: str) -> AcceptanceResult:
        """Accept on behalf of an existing member of the invitation's organization"""
        invitation = self._usable_invitation(token)
        user = UserService.get_user(self.db, user_id)
        if not user:
            raise NotFoundError("User not found")
        if user.organization_id != invitation.organization_id:
            raise ForbiddenError("Invitation belongs to a different organization")
        if invitation.type == INVITATION_TYPE_EMAIL and invitation.email != user.email:
            raise InvalidInputError("Email does not match the invitation")

        self._claim(invitation, user.id)
        self.db.commit()
        self.db.refresh(invitation)
        logger.info("invitation_accepted", invitation_id=invitation.id, user_id=user.id, existing_user=True)

        warnings: List[str] = []
        self._grant_role(invitation, user, warnings)
        return AcceptanceResult(user=user, invitation=invitation, warnings=warnings)

    # Management

    def get_invitation(self, invitation_id: str, organization_id: Optional[str] = None) -> Invitation:
        query = self.db.query(Invitation).filter(Invitation.id == invitation_id)
        if organization_id:
            query = query.filter(Invitation.organization_id == organization_id)
        invitation = query.first()
        if not invitation:
            raise NotFoundError("Invitation not found")
        return invitation

    def revoke_invitation(
        self,
        invitation_id: str,
        organization_id: Optional[str] = None,
        revoked_by: Optional[str] = None,
    ) -> Invitation:
        invitation = self.get_invitation(invitation_id, organization_id)
        if invitation.status != INVITATION_PENDING:
            raise InvalidInputError("Only pending invitations can be revoked")

        invitation.status = INVITATION_REVOKED
        metadata: Dict[str, Any] = dict(invitation.invitation_metadata or {})
        metadata.update({"revoked_by": revoked_by, "revoked_at": datetime.utcnow().isoformat()})
        invitation.invitation_metadata = metadata
        self.db.commit()
        self.db.refresh(invitation)

        logger.info("invitation_revoked", invitation_id=invitation.id, revoked_by=revoked_by)
        return invitation

    def resend_invitation(
        self,
        invitation_id: str,
        organization_id: Optional[str] = None,
    ) -> Tuple[Invitation, str]:
        """Rotate the token and restart the expiry window; email invitations only"""
        invitation = self.get_invitation(invitation_id, organization_id)
        if invitation.type != INVITATION_TYPE_EMAIL:
            raise InvalidInputError("Only email invitations can be resent")
        if invitation.status != INVITATION_PENDING:
            raise InvalidInputError("Only pending invitations can be resent")

        raw_token = generate_token()
        invitation.token_hash = hash_token(raw_token)
        invitation.expires_at = self._expiry(None)
        commit_or_conflict(self.db, "Invitation token collision, retry")
        self.db.refresh(invitation)

        logger.info("invitation_resent", invitation_id=invitation.id)
        self._send_invitation(invitation, raw_token, invitation.organization, invitation.role)
        return invitation, raw_token

    def list_invitations(
        self,
        organization_id: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Invitation], int]:
        """Invitations of an organization; `expired` is derived from expires_at"""
        now = datetime.utcnow()
        query = self.db.query(Invitation).filter(Invitation.organization_id == organization_id)
        if status == INVITATION_EXPIRED:
            query = query.filter(Invitation.status == INVITATION_PENDING, Invitation.expires_at < now)
        elif status == INVITATION_PENDING:
            query = query.filter(Invitation.status == INVITATION_PENDING, Invitation.expires_at >= now)
        elif status in (INVITATION_ACCEPTED, INVITATION_REVOKED):
            query = query.filter(Invitation.status == status)
        elif status:
            raise InvalidInputError(f"Unknown invitation status: {status}")

        total = query.count()
        invitations = query.order_by(Invitation.created_at.desc()).offset(skip).limit(limit).all()
        return invitations, total
