"""Organization routes"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gatehouse.database.database import get_db
from gatehouse.errors import NotFoundError
from gatehouse.middleware.auth_middleware import (
    AuthContext,
    ensure_organization_access,
    require_auth,
    require_permissions,
    require_super_admin,
)
from gatehouse.middleware.rate_limiting import rate_limit
from gatehouse.services.organization_service import OrganizationService
from gatehouse.services.subdomain_service import SubdomainService

router = APIRouter()

RATE_LIMIT_SUBDOMAIN = rate_limit("organizations:subdomain", limit=30, window=60)


class CreateOrganizationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    slug: Optional[str] = None
    domain: Optional[str] = None
    plan: str = "free"
    settings: Dict[str, Any] = {}
    branding: Dict[str, Any] = {}


class UpdateOrganizationRequest(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    domain: Optional[str] = None
    plan: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None
    branding: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


def _public_view(organization) -> Dict[str, Any]:
    """What an anonymous caller may learn about a tenant"""
    return {
        "id": organization.id,
        "name": organization.name,
        "slug": organization.slug,
        "domain": organization.domain,
        "branding": organization.branding or {},
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_organization(
    request: CreateOrganizationRequest,
    _admin: None = Depends(require_super_admin()),
    db: Session = Depends(get_db),
):
    """Create an organization with its default roles and no members"""
    organization = OrganizationService.create_organization(
        db,
        name=request.name,
        slug=request.slug,
        domain=request.domain,
        plan=request.plan,
        settings=request.settings,
        branding=request.branding,
    )
    return organization.to_dict()


@router.get("/subdomain-availability")
async def check_subdomain_availability(
    subdomain: str = Query(..., min_length=1, max_length=100),
    db: Session = Depends(get_db),
    _rate_limit: None = Depends(RATE_LIMIT_SUBDOMAIN)
):
    """Whether a subdomain can be claimed, with alternatives when it cannot"""
    return OrganizationService.check_subdomain_availability(db, subdomain)


@router.get("/resolve")
async def resolve_organization(
    request: Request,
    subdomain: Optional[str] = None,
    db: Session = Depends(get_db),
    _rate_limit: None = Depends(RATE_LIMIT_SUBDOMAIN)
):
    """Organization for a subdomain, or for the request's own Host header"""
    if subdomain:
        organization = OrganizationService.resolve_organization_by_subdomain(db, subdomain)
    else:
        organization = SubdomainService(db).resolve_host(request.headers.get("host"))
    if not organization:
        raise NotFoundError("Organization not found")
    return _public_view(organization)


@router.get("/current")
async def get_current_organization(
    auth_context: AuthContext = Depends(require_auth),
):
    return auth_context.user.organization.to_dict()


@router.patch("/current")
async def update_current_organization(
    request: UpdateOrganizationRequest,
    _perm: None = Depends(require_permissions("organizations.update")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    """Update the caller's organization"""
    organization = OrganizationService.update_organization(
        db,
        auth_context.organization_id,
        **request.model_dump(exclude_unset=True),
    )
    return organization.to_dict()


@router.get("/{organization_id}")
async def get_organization(
    organization_id: str,
    _perm: None = Depends(require_permissions("organizations.view")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    organization_id = ensure_organization_access(auth_context, db, organization_id)
    return OrganizationService.get_organization(db, organization_id).to_dict()


@router.delete("/{organization_id}")
async def delete_organization(
    organization_id: str,
    _admin: None = Depends(require_super_admin()),
    db: Session = Depends(get_db),
):
    """Soft delete; members can no longer sign in"""
    OrganizationService.delete_organization(db, organization_id)
    return {"message": "Organization deleted successfully"}


@router.post("/{organization_id}/restore")
async def restore_organization(
    organization_id: str,
    _admin: None = Depends(require_super_admin()),
    db: Session = Depends(get_db),
):
    return OrganizationService.restore_organization(db, organization_id).to_dict()
