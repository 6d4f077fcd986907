"""
Role Service.

Handles role management, role assignment and effective permission resolution.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
import re

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload
import structlog

from gatehouse.database.database import commit_or_conflict
from gatehouse.database.models import (
    Organization,
    Role,
    User,
    UserRole,
    SUPER_ADMIN_ROLE_SLUG,
)
from gatehouse.errors import ForbiddenError, InvalidInputError, NotFoundError
from gatehouse.services.permission_cache import PermissionCache

logger = structlog.get_logger()

ROLE_UPDATABLE_FIELDS = (
    "name",
    "description",
    "permissions",
    "priority",
    "is_assignable",
    "is_default",
    "level",
    "parent_role_id",
)


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def _clean_permissions(permissions: Optional[Iterable[str]]) -> List[str]:
    """Deduplicated permission slugs; order carries no meaning"""
    cleaned = []
    for slug in permissions or []:
        if not isinstance(slug, str) or not slug.strip():
            raise InvalidInputError("Permission slugs must be non-empty strings")
        slug = slug.strip()
        if slug not in cleaned:
            cleaned.append(slug)
    return cleaned


class RoleHierarchy(ABC):
    """Decides which roles contribute permissions for a set of assigned roles"""

    @abstractmethod
    def expand(self, db: Session, roles: List[Role]) -> List[Role]:
        pass


class FlatRoleHierarchy(RoleHierarchy):
    """Only the assigned roles themselves; parent roles contribute nothing"""

    def expand(self, db: Session, roles: List[Role]) -> List[Role]:
        return roles


class RoleService:
    """
    Service for managing roles, assigning them to users and resolving the
    permissions those assignments grant.

    Every write that can change a user's effective permissions invalidates the
    affected users' cache entries before returning.
    """

    def __init__(
        self,
        db: Session,
        cache: Optional[PermissionCache] = None,
        hierarchy: Optional[RoleHierarchy] = None,
    ):
        self.db = db
        self.cache = cache
        self.hierarchy = hierarchy or FlatRoleHierarchy()

    # Role catalog

    def _get_live_organization(self, organization_id: str) -> Organization:
        organization = self.db.query(Organization).filter(
            Organization.id == organization_id,
            Organization.deleted_at.is_(None),
        ).first()
        if not organization:
            raise NotFoundError("Organization not found")
        return organization

    def create_role(
        self,
        name: str,
        organization_id: Optional[str] = None,
        slug: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
        priority: int = 0,
        is_assignable: bool = True,
        is_default: bool = False,
        level: int = 0,
        parent_role_id: Optional[str] = None,
    ) -> Role:
        """
        Create a role.

        A role created without an organization is a system role: usable from
        every tenant and immutable afterwards.

        Raises:
            NotFoundError: organization or parent role missing
            ConflictError: slug already used in the same scope
        """
        if organization_id:
            self._get_live_organization(organization_id)

        slug = slugify(slug or name)
        if not slug:
            raise InvalidInputError("Role slug cannot be empty")

        if parent_role_id:
            self.get_role(parent_role_id)

        role = Role(
            organization_id=organization_id,
            name=name,
            slug=slug,
            description=description,
            permissions=_clean_permissions(permissions),
            priority=priority,
            is_system=organization_id is None,
            is_assignable=is_assignable,
            is_default=is_default,
            level=level,
            parent_role_id=parent_role_id,
        )
        self.db.add(role)
        message = (
            "Role with this slug already exists"
            if organization_id
            else "System role with this slug already exists"
        )
        commit_or_conflict(self.db, message)
        self.db.refresh(role)

        logger.info("role_created", role_id=role.id, slug=role.slug, organization_id=organization_id)
        return role

    def get_role(self, role_id: str) -> Role:
        role = self.db.query(Role).filter(Role.id == role_id, Role.deleted_at.is_(None)).first()
        if not role:
            raise NotFoundError("Role not found")
        return role

    def get_role_by_slug(self, organization_id: Optional[str], slug: str) -> Role:
        """Role by slug within an organization, or among system roles when None"""
        query = self.db.query(Role).filter(Role.slug == slug, Role.deleted_at.is_(None))
        if organization_id:
            query = query.filter(Role.organization_id == organization_id)
        else:
            query = query.filter(Role.organization_id.is_(None))
        role = query.first()
        if not role:
            raise NotFoundError("Role not found")
        return role

    def list_roles(
        self,
        organization_id: Optional[str] = None,
        include_system: bool = True,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Role], int]:
        """Roles visible from an organization, highest priority first"""
        query = self.db.query(Role).filter(Role.deleted_at.is_(None))
        if organization_id:
            if include_system:
                query = query.filter(
                    or_(Role.organization_id == organization_id, Role.organization_id.is_(None))
                )
            else:
                query = query.filter(Role.organization_id == organization_id)

        total = query.count()
        roles = query.order_by(Role.priority.desc(), Role.created_at.desc()).offset(skip).limit(limit).all()
        return roles, total

    def update_role(self, role_id: str, **changes: Any) -> Role:
        role = self.get_role(role_id)
        if role.is_system:
            raise ForbiddenError("Cannot modify system roles")

        unknown = set(changes) - set(ROLE_UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"Unknown role fields: {', '.join(sorted(unknown))}")

        permissions_changed = False
        for key, value in changes.items():
            if value is None:
                continue
            if key == "permissions":
                value = _clean_permissions(value)
                permissions_changed = set(value) != set(role.permissions or [])
            if key == "parent_role_id":
                if value == role.id:
                    raise InvalidInputError("A role cannot be its own parent")
                self.get_role(value)
            setattr(role, key, value)

        commit_or_conflict(self.db, "Role with this slug already exists")
        self.db.refresh(role)

        if permissions_changed:
            self.invalidate_role_holders(role.id)
        logger.info("role_updated", role_id=role.id, permissions_changed=permissions_changed)
        return role

    def delete_role(self, role_id: str) -> Role:
        """Soft delete; holders lose the role's permissions immediately"""
        role = self.get_role(role_id)
        if role.is_system:
            raise ForbiddenError("Cannot delete system roles")

        role.soft_delete()
        self.db.commit()
        self.invalidate_role_holders(role.id)
        logger.info("role_deleted", role_id=role.id)
        return role

    def restore_role(self, role_id: str) -> Role:
        role = self.db.query(Role).filter(Role.id == role_id).first()
        if not role:
            raise NotFoundError("Role not found")
        if not role.is_deleted:
            return role

        role.restore()
        commit_or_conflict(self.db, "Role with this slug already exists")
        self.invalidate_role_holders(role.id)
        logger.info("role_restored", role_id=role.id)
        return role

    # Assignments

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        scope: str = "global",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        conditions: Optional[Dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
        assigned_reason: Optional[str] = None,
        is_active: bool = True,
    ) -> UserRole:
        """
        Assign a role to a user.

        Raises:
            NotFoundError: user or role missing
            InvalidInputError: role not assignable, or owned by another organization
            ForbiddenError: super-admin granted by someone who is not one
            ConflictError: identical assignment already exists
        """
        user = self.db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()
        if not user:
            raise NotFoundError("User not found")

        role = self.get_role(role_id)
        if not role.is_assignable:
            raise InvalidInputError("This role cannot be assigned")
        if role.organization_id and role.organization_id != user.organization_id:
            raise InvalidInputError("Role belongs to a different organization")
        # Only a super-admin may hand out super-admin
        if role.slug == SUPER_ADMIN_ROLE_SLUG and role.is_system and assigned_by:
            if not self.is_super_admin(assigned_by):
                raise ForbiddenError()

        user_role = UserRole(
            user_id=user_id,
            role_id=role_id,
            scope=scope or "global",
            resource_type=resource_type,
            resource_id=resource_id,
            conditions=conditions or {},
            expires_at=expires_at,
            is_active=is_active,
            assigned_by=assigned_by,
            assigned_reason=assigned_reason,
        )
        self.db.add(user_role)
        commit_or_conflict(self.db, "Role already assigned to user")
        self.db.refresh(user_role)

        self.invalidate_user(user_id)
        logger.info(
            "role_assigned",
            user_id=user_id,
            role_id=role_id,
            scope=user_role.scope,
            assigned_by=assigned_by,
        )
        return user_role

    def revoke_role(self, user_role_id: str) -> Dict[str, Any]:
        """Delete an assignment; returns the removed assignment as a dict"""
        user_role = self.db.query(UserRole).filter(UserRole.id == user_role_id).first()
        if not user_role:
            raise NotFoundError("User role assignment not found")

        user_id = user_role.user_id
        removed = user_role.to_dict()
        self.db.delete(user_role)
        self.db.commit()

        self.invalidate_user(user_id)
        logger.info("role_revoked", user_id=user_id, user_role_id=user_role_id)
        return removed

    def get_assignment(self, user_role_id: str) -> UserRole:
        user_role = self.db.query(UserRole).filter(UserRole.id == user_role_id).first()
        if not user_role:
            raise NotFoundError("User role assignment not found")
        return user_role

    def _effective_query(self, now: Optional[datetime] = None):
        now = now or datetime.utcnow()
        return self.db.query(UserRole).join(Role, UserRole.role_id == Role.id).filter(
            UserRole.is_active.is_(True),
            or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
            Role.deleted_at.is_(None),
        )

    def effective_assignments(self, user_id: str) -> List[UserRole]:
        """Active, unexpired assignments of live roles, newest first"""
        return (
            self._effective_query()
            .options(joinedload(UserRole.role))
            .filter(UserRole.user_id == user_id)
            .order_by(UserRole.assigned_at.desc())
            .all()
        )

    def get_user_roles(self, user_id: str) -> List[UserRole]:
        user = self.db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()
        if not user:
            raise NotFoundError("User not found")
        return self.effective_assignments(user_id)

    def get_role_users(self, role_id: str) -> List[UserRole]:
        self.get_role(role_id)
        return (
            self._effective_query()
            .options(joinedload(UserRole.user))
            .filter(UserRole.role_id == role_id)
            .order_by(UserRole.assigned_at.desc())
            .all()
        )

    def effective_permissions(self, user_id: str) -> Set[str]:
        """Union of permission slugs over every effective assignment"""
        roles = [assignment.role for assignment in self.effective_assignments(user_id)]
        permissions: Set[str] = set()
        for role in self.hierarchy.expand(self.db, roles):
            permissions.update(role.permissions or [])
        return permissions

    def is_super_admin(self, user_id: str) -> bool:
        """Checked against live assignments, never through the cache"""
        return self._effective_query().filter(
            UserRole.user_id == user_id,
            Role.slug == SUPER_ADMIN_ROLE_SLUG,
            Role.is_system.is_(True),
        ).first() is not None

    # Cache invalidation

    def invalidate_user(self, user_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_user(user_id)

    def invalidate_role_holders(self, role_id: str) -> None:
        """Drop cached decisions of every user assigned the role, effective or not"""
        if self.cache is None:
            return
        rows = self.db.query(UserRole.user_id).filter(UserRole.role_id == role_id).distinct().all()
        for (user_id,) in rows:
            self.cache.invalidate_user(user_id)
        logger.debug("role_holders_invalidated", role_id=role_id, users=len(rows))
