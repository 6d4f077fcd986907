"""Invitation routes for user onboarding"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from gatehouse.config import settings
from gatehouse.database.database import get_db
from gatehouse.middleware.auth_middleware import (
    AuthContext,
    ensure_organization_access,
    get_notifier,
    get_permission_cache,
    require_auth,
    require_permissions,
)
from gatehouse.middleware.rate_limiting import rate_limit
from gatehouse.services.invitation_service import InvitationService
from gatehouse.services.notification_service import NotificationService
from gatehouse.services.permission_cache import PermissionCache

router = APIRouter()

# Rate limits
RATE_LIMIT_CREATE = rate_limit("invitations:create", limit=10, window=60)
RATE_LIMIT_ACCEPT = rate_limit("invitations:accept", limit=5, window=60)
RATE_LIMIT_VALIDATE = rate_limit("invitations:validate", limit=20, window=60)


class CreateInvitationRequest(BaseModel):
    email: EmailStr
    role_id: Optional[str] = None
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=90)
    message: Optional[str] = Field(default=None, max_length=1000)
    organization_id: Optional[str] = None


class CreateLinkInvitationRequest(BaseModel):
    role_id: Optional[str] = None
    max_uses: Optional[int] = Field(default=None, ge=1)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=90)
    organization_id: Optional[str] = None


class AcceptInvitationRequest(BaseModel):
    token: str


def get_invitation_service(
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    notifier: NotificationService = Depends(get_notifier),
) -> InvitationService:
    return InvitationService(db, cache, notifier)


def _invite_url(raw_token: str) -> str:
    return f"{settings.FRONTEND_URL}/invite/{raw_token}"


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_invitation(
    request: CreateInvitationRequest,
    _perm: None = Depends(require_permissions("users.create")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    invitations: InvitationService = Depends(get_invitation_service),
    _rate_limit: None = Depends(RATE_LIMIT_CREATE)
):
    """
    Invite an email address to the organization.
    The token only travels in the invitation email.
    """
    organization_id = ensure_organization_access(auth_context, db, request.organization_id)
    invitation, _ = invitations.create_email_invitation(
        organization_id,
        request.email,
        invited_by=auth_context.user.id,
        role_id=request.role_id,
        expires_in_days=request.expires_in_days,
        message=request.message,
    )
    return invitation.to_dict()


@router.post("/links", status_code=status.HTTP_201_CREATED)
async def create_link_invitation(
    request: CreateLinkInvitationRequest,
    _perm: None = Depends(require_permissions("users.create")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    invitations: InvitationService = Depends(get_invitation_service),
    _rate_limit: None = Depends(RATE_LIMIT_CREATE)
):
    """Create a shareable invitation link. The token is returned only here."""
    organization_id = ensure_organization_access(auth_context, db, request.organization_id)
    invitation, raw_token = invitations.create_link_invitation(
        organization_id,
        invited_by=auth_context.user.id,
        role_id=request.role_id,
        max_uses=request.max_uses,
        expires_in_days=request.expires_in_days,
    )
    return {**invitation.to_dict(), "token": raw_token, "invite_url": _invite_url(raw_token)}


@router.get("")
async def list_invitations(
    status_filter: Optional[str] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    _perm: None = Depends(require_permissions("users.view")),
    auth_context: AuthContext = Depends(require_auth),
    invitations: InvitationService = Depends(get_invitation_service),
):
    """List the organization's invitations, optionally by status"""
    items, total = invitations.list_invitations(
        auth_context.organization_id,
        status=status_filter,
        skip=skip,
        limit=limit,
    )
    return {"invitations": [i.to_dict() for i in items], "total": total, "skip": skip, "limit": limit}


@router.get("/validate/{token}")
async def validate_invitation(
    token: str,
    invitations: InvitationService = Depends(get_invitation_service),
    _rate_limit: None = Depends(RATE_LIMIT_VALIDATE)
):
    """
    Check whether a token can still be accepted.
    Public endpoint used by the signup page.
    """
    validation = invitations.validate_invitation(token)
    if not validation.is_valid:
        return {"valid": False, "error": validation.error}

    invitation = validation.invitation
    return {
        "valid": True,
        "type": invitation.type,
        "email": invitation.email,
        "role": invitation.role.name if invitation.role else None,
        "organization_name": invitation.organization.name,
        "organization_slug": invitation.organization.slug,
        "expires_at": invitation.expires_at.isoformat(),
    }


@router.post("/accept")
async def accept_invitation(
    request: AcceptInvitationRequest,
    auth_context: AuthContext = Depends(require_auth),
    invitations: InvitationService = Depends(get_invitation_service),
    _rate_limit: None = Depends(RATE_LIMIT_ACCEPT)
):
    """Accept an invitation as an existing member (grants the invitation's role)"""
    result = invitations.accept_invitation_for_user(request.token, auth_context.user.id)
    return {
        "invitation": result.invitation.to_dict(),
        "user": result.user.to_dict(),
        "warnings": result.warnings,
    }


@router.post("/{invitation_id}/revoke")
async def revoke_invitation(
    invitation_id: str,
    _perm: None = Depends(require_permissions("users.create")),
    auth_context: AuthContext = Depends(require_auth),
    invitations: InvitationService = Depends(get_invitation_service),
):
    invitation = invitations.revoke_invitation(
        invitation_id,
        organization_id=auth_context.organization_id,
        revoked_by=auth_context.user.id,
    )
    return invitation.to_dict()


@router.post("/{invitation_id}/resend")
async def resend_invitation(
    invitation_id: str,
    _perm: None = Depends(require_permissions("users.create")),
    auth_context: AuthContext = Depends(require_auth),
    invitations: InvitationService = Depends(get_invitation_service),
    _rate_limit: None = Depends(RATE_LIMIT_CREATE)
):
    """Send a fresh token and restart the expiry window"""
    invitation, _ = invitations.resend_invitation(invitation_id, organization_id=auth_context.organization_id)
    return invitation.to_dict()
