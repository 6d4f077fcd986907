"""Organization service"""

from typing import Any, Dict, List, Optional, Tuple
import re

from sqlalchemy.orm import Session
import structlog

from gatehouse.database.database import commit_or_conflict, flush_or_conflict
from gatehouse.database.models import Organization
from gatehouse.errors import InvalidInputError, NotFoundError, ConflictError
from gatehouse.services.subdomain_service import SubdomainService
from gatehouse.templates import seed_organization_roles

logger = structlog.get_logger()

SLUG_CONFLICT = "Organization with this slug already exists"
DOMAIN_CONFLICT = "Subdomain is already taken"


def _slug_from(value: str) -> str:
    return re.sub(r'[^a-z0-9]+', '-', value.lower()).strip('-')


class OrganizationService:
    """Organization management service"""

    @staticmethod
    def _slug_taken(db: Session, slug: str, exclude_id: Optional[str] = None) -> bool:
        query = db.query(Organization.id).filter(
            Organization.slug == slug,
            Organization.deleted_at.is_(None),
        )
        if exclude_id:
            query = query.filter(Organization.id != exclude_id)
        return query.first() is not None

    @staticmethod
    def _unique_slug(db: Session, name: str) -> str:
        base_slug = _slug_from(name) or "organization"
        slug = base_slug
        counter = 1
        while OrganizationService._slug_taken(db, slug):
            slug = f"{base_slug}-{counter}"
            counter += 1
        return slug

    @staticmethod
    def _checked_domain(db: Session, domain: str) -> str:
        validation = SubdomainService(db).validate_and_reserve(domain)
        if not validation.is_valid:
            message = validation.error
            if validation.suggestions:
                message = f"{message}. Try: {', '.join(validation.suggestions)}"
            if validation.error == DOMAIN_CONFLICT:
                raise ConflictError(message)
            raise InvalidInputError(message)
        return domain

    @staticmethod
    def create_organization(
        db: Session,
        name: str,
        slug: Optional[str] = None,
        domain: Optional[str] = None,
        plan: str = "free",
        settings: Optional[Dict[str, Any]] = None,
        branding: Optional[Dict[str, Any]] = None,
        commit: bool = True,
    ) -> Organization:
        """
        Create an organization with its default roles.

        Without a slug one is derived from the name and suffixed until unique;
        an explicit slug that is taken is a conflict. Without a domain a unique
        subdomain is generated from the name.

        With commit=False the rows are only flushed so the caller can add more
        work to the same transaction.
        """
        if not name or not name.strip():
            raise InvalidInputError("Organization name is required")
        name = name.strip()

        if slug:
            slug = _slug_from(slug)
            if not slug:
                raise InvalidInputError("Invalid organization slug")
            if OrganizationService._slug_taken(db, slug):
                raise ConflictError(SLUG_CONFLICT)
        else:
            slug = OrganizationService._unique_slug(db, name)

        if domain:
            domain = OrganizationService._checked_domain(db, domain.strip().lower())
        else:
            domain = SubdomainService(db).generate_unique(name)

        organization = Organization(
            name=name,
            slug=slug,
            domain=domain,
            plan=plan or "free",
            settings=settings or {},
            branding=branding or {},
        )
        db.add(organization)
        flush_or_conflict(db, "Organization slug or subdomain already in use")

        seed_organization_roles(db, organization.id)
        flush_or_conflict(db, "Organization roles could not be created")
        if commit:
            commit_or_conflict(db, "Organization slug or subdomain already in use")
            db.refresh(organization)

        logger.info("organization_created", organization_id=organization.id, slug=slug, domain=domain)
        return organization

    @staticmethod
    def get_organization(db: Session, organization_id: str, include_deleted: bool = False) -> Organization:
        """Get an organization by ID"""
        query = db.query(Organization).filter(Organization.id == organization_id)
        if not include_deleted:
            query = query.filter(Organization.deleted_at.is_(None))
        organization = query.first()
        if not organization:
            raise NotFoundError("Organization not found")
        return organization

    @staticmethod
    def get_organization_by_slug(db: Session, slug: str) -> Organization:
        """Get an organization by slug"""
        organization = db.query(Organization).filter(
            Organization.slug == slug,
            Organization.deleted_at.is_(None),
        ).first()
        if not organization:
            raise NotFoundError("Organization not found")
        return organization

    @staticmethod
    def list_organizations(
        db: Session,
        skip: int = 0,
        limit: int = 20,
        include_deleted: bool = False,
    ) -> Tuple[List[Organization], int]:
        query = db.query(Organization)
        if not include_deleted:
            query = query.filter(Organization.deleted_at.is_(None))
        total = query.count()
        organizations = query.order_by(Organization.created_at.desc()).offset(skip).limit(limit).all()
        return organizations, total

    @staticmethod
    def update_organization(
        db: Session,
        organization_id: str,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        domain: Optional[str] = None,
        plan: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        branding: Optional[Dict[str, Any]] = None,
        is_active: Optional[bool] = None,
    ) -> Organization:
        """Update an organization"""
        organization = OrganizationService.get_organization(db, organization_id)

        if name:
            organization.name = name.strip()
        if slug and slug != organization.slug:
            slug = _slug_from(slug)
            if OrganizationService._slug_taken(db, slug, exclude_id=organization.id):
                raise ConflictError(SLUG_CONFLICT)
            organization.slug = slug
        if domain and domain != organization.domain:
            organization.domain = OrganizationService._checked_domain(db, domain.strip().lower())
        if plan:
            organization.plan = plan
        if settings is not None:
            organization.settings = settings
        if branding is not None:
            organization.branding = branding
        if is_active is not None:
            organization.is_active = is_active

        commit_or_conflict(db, "Organization slug or subdomain already in use")
        db.refresh(organization)
        return organization

    @staticmethod
    def delete_organization(db: Session, organization_id: str) -> Organization:
        """Soft delete; the slug and subdomain become available again"""
        organization = OrganizationService.get_organization(db, organization_id)
        organization.soft_delete()
        db.commit()
        logger.info("organization_deleted", organization_id=organization_id)
        return organization

    @staticmethod
    def restore_organization(db: Session, organization_id: str) -> Organization:
        """Fails with a conflict if a live organization took the slug or subdomain"""
        organization = OrganizationService.get_organization(db, organization_id, include_deleted=True)
        if not organization.is_deleted:
            return organization
        organization.restore()
        commit_or_conflict(db, "Organization slug or subdomain is now used by another organization")
        db.refresh(organization)
        logger.info("organization_restored", organization_id=organization_id)
        return organization

    @staticmethod
    def hard_delete_organization(db: Session, organization_id: str) -> None:
        organization = OrganizationService.get_organization(db, organization_id, include_deleted=True)
        db.delete(organization)
        db.commit()
        logger.info("organization_hard_deleted", organization_id=organization_id)

    @staticmethod
    def check_subdomain_availability(db: Session, subdomain: str) -> Dict[str, Any]:
        validation = SubdomainService(db).validate_and_reserve((subdomain or "").strip().lower())
        return {
            "subdomain": subdomain,
            "available": validation.is_valid,
            "error": validation.error,
            "suggestions": validation.suggestions,
        }

    @staticmethod
    def resolve_organization_by_subdomain(db: Session, subdomain: str) -> Optional[Organization]:
        return SubdomainService(db).resolve_organization((subdomain or "").strip().lower())
