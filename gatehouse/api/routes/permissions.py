"""Permission catalog and permission check routes"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gatehouse.database.database import get_db
from gatehouse.database.models import User
from gatehouse.errors import InvalidInputError, NotFoundError
from gatehouse.middleware.auth_middleware import (
    AuthContext,
    get_permission_service,
    require_auth,
    require_permissions,
    require_super_admin,
)
from gatehouse.middleware.rate_limiting import rate_limit
from gatehouse.services.permission_service import PermissionService

router = APIRouter()

# High limit: checked on every call of a downstream service
RATE_LIMIT_CHECK = rate_limit("permissions:check", limit=200, window=60)


class CreatePermissionRequest(BaseModel):
    slug: str
    name: str
    description: Optional[str] = None
    module: Optional[str] = None
    category: Optional[str] = None
    risk_level: str = "low"
    requires_mfa: bool = False
    requires_approval: bool = False
    depends_on: List[str] = []
    conflicts_with: List[str] = []


class CheckPermissionsRequest(BaseModel):
    permissions: List[str] = Field(min_length=1)
    mode: str = "all"  # "all" or "any"
    user_id: Optional[str] = None  # Defaults to the caller


def _target_user_id(
    db: Session,
    permissions: PermissionService,
    auth_context: AuthContext,
    user_id: Optional[str],
) -> str:
    """Caller, or another member of the caller's organization"""
    if not user_id or user_id == auth_context.user.id:
        return auth_context.user.id
    user = db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()
    if not user or (
        user.organization_id != auth_context.organization_id
        and not permissions.roles.is_super_admin(auth_context.user.id)
    ):
        raise NotFoundError("User not found")
    return user.id


@router.get("")
async def list_permissions(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    module: Optional[str] = None,
    _perm: None = Depends(require_permissions("permissions.view")),
    permissions: PermissionService = Depends(get_permission_service),
):
    """List the active permission catalog"""
    if module:
        items = permissions.list_by_module(module)
        return {"permissions": [p.to_dict() for p in items], "total": len(items)}
    items, total = permissions.list_permissions(skip=skip, limit=limit)
    return {"permissions": [p.to_dict() for p in items], "total": total, "skip": skip, "limit": limit}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_permission(
    request: CreatePermissionRequest,
    _admin: None = Depends(require_super_admin()),
    permissions: PermissionService = Depends(get_permission_service),
):
    """Add a catalog entry"""
    permission = permissions.create_permission(**request.model_dump())
    return permission.to_dict()


@router.get("/me")
async def get_my_permissions(
    details: bool = False,
    auth_context: AuthContext = Depends(require_auth),
    permissions: PermissionService = Depends(get_permission_service),
):
    """The caller's effective permissions"""
    if details:
        return {"permissions": permissions.get_user_permissions_with_details(auth_context.user.id)}
    return {"permissions": permissions.get_user_permissions(auth_context.user.id)}


@router.get("/users/{user_id}")
async def get_user_permissions(
    user_id: str,
    _perm: None = Depends(require_permissions("users.view")),
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    permissions: PermissionService = Depends(get_permission_service),
):
    target = _target_user_id(db, permissions, auth_context, user_id)
    return {"user_id": target, "permissions": permissions.get_user_permissions(target)}


@router.post("/check")
async def check_permissions(
    request: CheckPermissionsRequest,
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    permissions: PermissionService = Depends(get_permission_service),
    _rate_limit: None = Depends(RATE_LIMIT_CHECK)
):
    """
    Evaluate one or more permissions for the caller (or, with users.view,
    for another member of the organization).
    """
    if request.mode not in ("all", "any"):
        raise InvalidInputError("mode must be 'all' or 'any'")

    user_id = auth_context.user.id
    if request.user_id and request.user_id != user_id:
        if not permissions.has_permission(user_id, "users.view") and not permissions.roles.is_super_admin(user_id):
            raise NotFoundError("User not found")
        user_id = _target_user_id(db, permissions, auth_context, request.user_id)

    if len(request.permissions) == 1:
        allowed = permissions.has_permission(user_id, request.permissions[0])
    elif request.mode == "all":
        allowed = permissions.has_all(user_id, request.permissions)
    else:
        allowed = permissions.has_any(user_id, request.permissions)
    return {"user_id": user_id, "allowed": allowed}
