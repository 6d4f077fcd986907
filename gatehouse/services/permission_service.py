"""Permission catalog and permission checks"""

from typing import Any, Dict, Iterable, List, Optional, Tuple
from sqlalchemy.orm import Session
import structlog

from gatehouse.config import settings
from gatehouse.database.database import commit_or_conflict
from gatehouse.database.models import Permission
from gatehouse.errors import ForbiddenError, InvalidInputError, NotFoundError
from gatehouse.services.permission_cache import PermissionCache
from gatehouse.services.role_service import RoleService

logger = structlog.get_logger()

PERMISSION_UPDATABLE_FIELDS = (
    "name",
    "description",
    "category",
    "risk_level",
    "requires_mfa",
    "requires_approval",
    "depends_on",
    "conflicts_with",
    "is_active",
    "is_deprecated",
)


class PermissionService:
    """Permission management and evaluation service"""

    def __init__(
        self,
        db: Session,
        cache: Optional[PermissionCache] = None,
        role_service: Optional[RoleService] = None,
    ):
        self.db = db
        self.cache = cache
        self.roles = role_service or RoleService(db, cache)

    # Catalog

    def create_permission(
        self,
        slug: str,
        name: str,
        description: Optional[str] = None,
        module: Optional[str] = None,
        category: Optional[str] = None,
        risk_level: str = "low",
        requires_mfa: bool = False,
        requires_approval: bool = False,
        depends_on: Optional[List[str]] = None,
        conflicts_with: Optional[List[str]] = None,
        is_system: bool = False,
    ) -> Permission:
        """Create a catalog entry; slugs follow the `module.action` convention"""
        if not slug or "." not in slug:
            raise InvalidInputError("Permission slug must look like module.action")

        permission = Permission(
            slug=slug,
            name=name,
            description=description,
            module=module or slug.split(".", 1)[0],
            category=category,
            risk_level=risk_level,
            requires_mfa=requires_mfa,
            requires_approval=requires_approval,
            depends_on=list(depends_on or []),
            conflicts_with=list(conflicts_with or []),
            is_system=is_system,
        )
        self.db.add(permission)
        commit_or_conflict(self.db, "Permission with this slug already exists")
        self.db.refresh(permission)
        logger.info("permission_created", slug=slug)
        return permission

    def get_permission(self, permission_id: str) -> Permission:
        permission = self.db.query(Permission).filter(Permission.id == permission_id).first()
        if not permission:
            raise NotFoundError("Permission not found")
        return permission

    def get_permission_by_slug(self, slug: str) -> Permission:
        permission = self.db.query(Permission).filter(Permission.slug == slug).first()
        if not permission:
            raise NotFoundError("Permission not found")
        return permission

    def list_permissions(self, skip: int = 0, limit: int = 100) -> Tuple[List[Permission], int]:
        """Active, non-deprecated permissions"""
        query = self.db.query(Permission).filter(
            Permission.is_active.is_(True),
            Permission.is_deprecated.is_(False),
        )
        total = query.count()
        permissions = query.order_by(Permission.module, Permission.slug).offset(skip).limit(limit).all()
        return permissions, total

    def list_by_module(self, module: str) -> List[Permission]:
        return self.db.query(Permission).filter(
            Permission.module == module,
            Permission.is_active.is_(True),
        ).order_by(Permission.slug).all()

    def update_permission(self, permission_id: str, **changes: Any) -> Permission:
        permission = self.get_permission(permission_id)
        if permission.is_system:
            raise ForbiddenError("Cannot modify system permissions")

        unknown = set(changes) - set(PERMISSION_UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"Unknown permission fields: {', '.join(sorted(unknown))}")

        for key, value in changes.items():
            if value is not None:
                setattr(permission, key, value)
        self.db.commit()
        self.db.refresh(permission)

        # Decisions for this slug may be cached for any user
        self.clear_cache()
        return permission

    def deactivate_permission(self, permission_id: str) -> Permission:
        permission = self.get_permission(permission_id)
        if permission.is_system:
            raise ForbiddenError("Cannot delete system permissions")

        permission.is_active = False
        self.db.commit()
        self.clear_cache()
        logger.info("permission_deactivated", slug=permission.slug)
        return permission

    # Evaluation

    def has_permission(self, user_id: str, permission_slug: str) -> bool:
        """Cache-first single permission check"""
        if self.cache is not None:
            cached = self.cache.get(user_id, permission_slug)
            if cached is not None:
                return cached

        allowed = permission_slug in self.roles.effective_permissions(user_id)

        if self.cache is not None:
            self.cache.set(user_id, permission_slug, allowed, settings.PERMISSION_CACHE_TTL_SECONDS)
        return allowed

    def has_all(self, user_id: str, permission_slugs: Iterable[str]) -> bool:
        required = set(permission_slugs)
        if not required:
            return True
        return required.issubset(self.roles.effective_permissions(user_id))

    def has_any(self, user_id: str, permission_slugs: Iterable[str]) -> bool:
        wanted = set(permission_slugs)
        if not wanted:
            return False
        return not wanted.isdisjoint(self.roles.effective_permissions(user_id))

    def get_user_permissions(self, user_id: str) -> List[str]:
        return sorted(self.roles.effective_permissions(user_id))

    def get_user_permissions_with_details(self, user_id: str) -> List[Dict[str, Any]]:
        """Catalog entries for the user's permissions; unknown slugs are listed bare"""
        slugs = self.roles.effective_permissions(user_id)
        if not slugs:
            return []
        known = {
            p.slug: p.to_dict()
            for p in self.db.query(Permission).filter(Permission.slug.in_(slugs)).all()
        }
        return [known.get(slug, {"slug": slug}) for slug in sorted(slugs)]

    def clear_user_cache(self, user_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_user(user_id)

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()
