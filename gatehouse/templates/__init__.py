"""
Seed data for Gatehouse.

Code-defined permission catalog and default roles, written to the database at
startup (system catalog) and on organization creation (organization roles).
"""

from gatehouse.templates.role_definitions import (
    ALL_PERMISSION_SLUGS,
    DEFAULT_PERMISSIONS,
    ORGANIZATION_ROLES,
    OWNER_ROLE_SLUG,
    SUPER_ADMIN_ROLE,
    PermissionDefinition,
    RoleDefinition,
    seed_organization_roles,
    seed_system_catalog,
)

__all__ = [
    # Classes
    "PermissionDefinition",
    "RoleDefinition",
    # Catalog
    "ALL_PERMISSION_SLUGS",
    "DEFAULT_PERMISSIONS",
    "ORGANIZATION_ROLES",
    "OWNER_ROLE_SLUG",
    "SUPER_ADMIN_ROLE",
    # Functions
    "seed_organization_roles",
    "seed_system_catalog",
]
