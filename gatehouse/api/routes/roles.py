"""Role routes for role management and assignment within organizations."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gatehouse.database.database import get_db
from gatehouse.database.models import Role, User
from gatehouse.errors import ForbiddenError, NotFoundError
from gatehouse.middleware.auth_middleware import (
    AuthContext,
    ensure_organization_access,
    get_permission_cache,
    require_auth,
    require_permissions,
)
from gatehouse.services.permission_cache import PermissionCache
from gatehouse.services.role_service import RoleService

router = APIRouter()


# =============================================================================
# REQUEST MODELS
# =============================================================================


class CreateRoleRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    slug: Optional[str] = None
    description: Optional[str] = None
    permissions: List[str] = []
    priority: int = 0
    is_assignable: bool = True
    is_default: bool = False
    level: int = 0
    parent_role_id: Optional[str] = None
    organization_id: Optional[str] = None  # Another organization (super-admin only)
    system: bool = False  # Tenant-independent role (super-admin only)


class UpdateRoleRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    permissions: Optional[List[str]] = None
    priority: Optional[int] = None
    is_assignable: Optional[bool] = None
    is_default: Optional[bool] = None
    level: Optional[int] = None
    parent_role_id: Optional[str] = None


class AssignRoleRequest(BaseModel):
    user_id: str
    role_id: str
    scope: str = "global"
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    conditions: Dict[str, Any] = {}
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================


def _role_service(db: Session, cache: PermissionCache) -> RoleService:
    return RoleService(db, cache)


def _visible_role(roles: RoleService, auth_context: AuthContext, role_id: str) -> Role:
    """System roles and the caller's own roles; others look absent"""
    role = roles.get_role(role_id)
    if role.organization_id and role.organization_id != auth_context.organization_id:
        if not roles.is_super_admin(auth_context.user.id):
            raise NotFoundError("Role not found")
    return role


def _member(db: Session, roles: RoleService, auth_context: AuthContext, user_id: str) -> User:
    user = db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()
    if not user or (
        user.organization_id != auth_context.organization_id
        and not roles.is_super_admin(auth_context.user.id)
    ):
        raise NotFoundError("User not found")
    return user


# =============================================================================
# ROLE ENDPOINTS
# =============================================================================


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_role(
    request: CreateRoleRequest,
    _perm: None = Depends(require_permissions("roles.create")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
):
    """Create a custom role in the caller's organization"""
    if request.system:
        if not RoleService(db).is_super_admin(auth_context.user.id):
            raise ForbiddenError()
        organization_id = None
    else:
        organization_id = ensure_organization_access(auth_context, db, request.organization_id)

    role = _role_service(db, cache).create_role(
        request.name,
        organization_id=organization_id,
        slug=request.slug,
        description=request.description,
        permissions=request.permissions,
        priority=request.priority,
        is_assignable=request.is_assignable,
        is_default=request.is_default,
        level=request.level,
        parent_role_id=request.parent_role_id,
    )
    return role.to_dict()


@router.get("")
async def list_roles(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    include_system: bool = True,
    _perm: None = Depends(require_permissions("roles.view")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    """List roles available to the current organization"""
    roles, total = RoleService(db).list_roles(
        auth_context.organization_id,
        include_system=include_system,
        skip=skip,
        limit=limit,
    )
    return {"roles": [r.to_dict() for r in roles], "total": total, "skip": skip, "limit": limit}


@router.get("/users/{user_id}")
async def get_user_roles(
    user_id: str,
    _perm: None = Depends(require_permissions("roles.view")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    """Effective role assignments of a member"""
    roles = RoleService(db)
    _member(db, roles, auth_context, user_id)
    return [assignment.to_dict() for assignment in roles.get_user_roles(user_id)]


@router.get("/{role_id}")
async def get_role(
    role_id: str,
    _perm: None = Depends(require_permissions("roles.view")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    return _visible_role(RoleService(db), auth_context, role_id).to_dict()


@router.get("/{role_id}/users")
async def get_role_users(
    role_id: str,
    _perm: None = Depends(require_permissions("roles.view")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    """Members of the caller's organization holding the role"""
    roles = RoleService(db)
    _visible_role(roles, auth_context, role_id)
    is_super_admin = roles.is_super_admin(auth_context.user.id)
    return [
        assignment.to_dict()
        for assignment in roles.get_role_users(role_id)
        if is_super_admin or assignment.user.organization_id == auth_context.organization_id
    ]


@router.patch("/{role_id}")
async def update_role(
    role_id: str,
    request: UpdateRoleRequest,
    _perm: None = Depends(require_permissions("roles.update")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
):
    """Update a custom role; permission changes apply to holders immediately"""
    roles = _role_service(db, cache)
    _visible_role(roles, auth_context, role_id)
    role = roles.update_role(role_id, **request.model_dump(exclude_unset=True))
    return role.to_dict()


@router.delete("/{role_id}")
async def delete_role(
    role_id: str,
    _perm: None = Depends(require_permissions("roles.delete")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
):
    roles = _role_service(db, cache)
    _visible_role(roles, auth_context, role_id)
    roles.delete_role(role_id)
    return {"message": "Role deleted successfully"}


# =============================================================================
# ASSIGNMENT ENDPOINTS
# =============================================================================


@router.post("/assignments", status_code=status.HTTP_201_CREATED)
async def assign_role(
    request: AssignRoleRequest,
    _perm: None = Depends(require_permissions("roles.assign")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
):
    """Assign a role to a member of the caller's organization"""
    roles = _role_service(db, cache)
    _member(db, roles, auth_context, request.user_id)
    _visible_role(roles, auth_context, request.role_id)

    assignment = roles.assign_role(
        request.user_id,
        request.role_id,
        scope=request.scope,
        resource_type=request.resource_type,
        resource_id=request.resource_id,
        conditions=request.conditions,
        expires_at=request.expires_at,
        assigned_by=auth_context.user.id,
        assigned_reason=request.reason,
    )
    return assignment.to_dict()


@router.delete("/assignments/{assignment_id}")
async def revoke_role(
    assignment_id: str,
    _perm: None = Depends(require_permissions("roles.revoke")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
):
    """Remove a role assignment"""
    roles = _role_service(db, cache)
    assignment = roles.get_assignment(assignment_id)
    _member(db, roles, auth_context, assignment.user_id)
    return roles.revoke_role(assignment_id)
