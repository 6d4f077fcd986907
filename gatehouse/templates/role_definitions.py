"""
Default permission catalog and role definitions.

This module contains:
- PermissionDefinition: a catalog entry seeded into the permissions table
- RoleDefinition: a role seeded either system-wide or into every new organization
- seed_system_catalog / seed_organization_roles: idempotent seeding helpers
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session
import structlog

from gatehouse.database.models import Permission, Role, SUPER_ADMIN_ROLE_SLUG

logger = structlog.get_logger()


@dataclass
class PermissionDefinition:
    slug: str
    name: str
    description: str
    category: str = "read"
    risk_level: str = "low"
    requires_mfa: bool = False

    @property
    def module(self) -> str:
        return self.slug.split(".", 1)[0]


@dataclass
class RoleDefinition:
    """
    Defines a role to seed.

    Attributes:
        slug: Stable identifier (e.g., "admin", "viewer")
        name: Human-readable role name
        permissions: Permission slugs granted by the role
        priority: Higher priority sorts first (super-admin=100, viewer=10)
        level: Depth in the declared hierarchy (informational)
        is_default: Granted to users joining the organization without a role
    """

    slug: str
    name: str
    permissions: List[str]
    description: Optional[str] = None
    priority: int = 0
    level: int = 0
    is_default: bool = False


DEFAULT_PERMISSIONS: Tuple[PermissionDefinition, ...] = (
    PermissionDefinition("organizations.view", "View Organizations", "View organization details"),
    PermissionDefinition("organizations.create", "Create Organizations", "Create new organizations", "write", "high"),
    PermissionDefinition("organizations.update", "Update Organizations", "Update organization settings", "write", "medium"),
    PermissionDefinition("organizations.delete", "Delete Organizations", "Delete organizations", "write", "critical", True),
    PermissionDefinition("users.view", "View Users", "View user information"),
    PermissionDefinition("users.create", "Create Users", "Create and invite users", "write", "medium"),
    PermissionDefinition("users.update", "Update Users", "Update user information", "write", "medium"),
    PermissionDefinition("users.delete", "Delete Users", "Delete users", "write", "high", True),
    PermissionDefinition("roles.view", "View Roles", "View roles and permissions"),
    PermissionDefinition("roles.create", "Create Roles", "Create custom roles", "write", "high"),
    PermissionDefinition("roles.update", "Update Roles", "Update role permissions", "write", "high"),
    PermissionDefinition("roles.delete", "Delete Roles", "Delete custom roles", "write", "high"),
    PermissionDefinition("roles.assign", "Assign Roles", "Assign roles to users", "write", "high"),
    PermissionDefinition("roles.revoke", "Revoke Roles", "Revoke roles from users", "write", "high"),
    PermissionDefinition("permissions.view", "View Permissions", "View available permissions"),
    PermissionDefinition("permissions.manage", "Manage Permissions", "Create and manage permissions", "write", "critical"),
    PermissionDefinition("content.view", "View Content", "View content"),
    PermissionDefinition("content.create", "Create Content", "Create new content", "write"),
    PermissionDefinition("content.update", "Update Content", "Edit existing content", "write"),
    PermissionDefinition("content.delete", "Delete Content", "Delete content", "write", "medium"),
    PermissionDefinition("content.publish", "Publish Content", "Publish content", "write", "medium"),
    PermissionDefinition("system.view", "View System Settings", "View system configuration", "read", "medium"),
    PermissionDefinition("system.manage", "Manage System Settings", "Manage system configuration", "write", "critical", True),
)

ALL_PERMISSION_SLUGS = [p.slug for p in DEFAULT_PERMISSIONS]

SUPER_ADMIN_ROLE = RoleDefinition(
    slug=SUPER_ADMIN_ROLE_SLUG,
    name="Super Admin",
    description="Full system access across every organization.",
    permissions=ALL_PERMISSION_SLUGS,
    priority=100,
)

# Seeded into each organization on creation; organizations may edit their copies
ORGANIZATION_ROLES: Tuple[RoleDefinition, ...] = (
    RoleDefinition(
        slug="admin",
        name="Admin",
        description="Organization administrator with full organization management capabilities.",
        permissions=[
            "organizations.view", "organizations.update",
            "users.view", "users.create", "users.update", "users.delete",
            "roles.view", "roles.create", "roles.update", "roles.assign", "roles.revoke",
            "permissions.view",
            "content.view", "content.create", "content.update", "content.delete", "content.publish",
        ],
        priority=90,
        level=1,
    ),
    RoleDefinition(
        slug="editor",
        name="Editor",
        description="Full content management with read-only access to members and roles.",
        permissions=[
            "users.view", "roles.view",
            "content.view", "content.create", "content.update", "content.delete", "content.publish",
        ],
        priority=50,
        level=2,
    ),
    RoleDefinition(
        slug="contributor",
        name="Contributor",
        description="Creates and edits content but cannot publish.",
        permissions=["content.view", "content.create", "content.update"],
        priority=30,
        level=3,
    ),
    RoleDefinition(
        slug="viewer",
        name="Viewer",
        description="Read-only access to content and basic information.",
        permissions=["users.view", "content.view"],
        priority=10,
        level=4,
        is_default=True,
    ),
)

OWNER_ROLE_SLUG = "admin"


def seed_system_catalog(db: Session) -> None:
    """Insert missing catalog permissions and the super-admin role; commits"""
    existing = {slug for (slug,) in db.query(Permission.slug).all()}
    added = 0
    for definition in DEFAULT_PERMISSIONS:
        if definition.slug in existing:
            continue
        db.add(Permission(
            slug=definition.slug,
            name=definition.name,
            description=definition.description,
            module=definition.module,
            category=definition.category,
            risk_level=definition.risk_level,
            requires_mfa=definition.requires_mfa,
            is_system=True,
        ))
        added += 1

    super_admin = db.query(Role).filter(
        Role.slug == SUPER_ADMIN_ROLE.slug,
        Role.organization_id.is_(None),
    ).first()
    if not super_admin:
        db.add(_build_role(SUPER_ADMIN_ROLE, organization_id=None))
    db.commit()
    logger.info("system_catalog_seeded", permissions_added=added, super_admin_created=super_admin is None)


def _build_role(definition: RoleDefinition, organization_id: Optional[str]) -> Role:
    return Role(
        organization_id=organization_id,
        name=definition.name,
        slug=definition.slug,
        description=definition.description,
        permissions=list(definition.permissions),
        priority=definition.priority,
        level=definition.level,
        is_default=definition.is_default,
        is_system=organization_id is None,
        is_assignable=True,
    )


def seed_organization_roles(db: Session, organization_id: str) -> List[Role]:
    """Add the default roles to an organization; the caller commits"""
    roles = [_build_role(definition, organization_id) for definition in ORGANIZATION_ROLES]
    db.add_all(roles)
    return roles
