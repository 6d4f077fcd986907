"""Authentication middleware"""

from typing import Any, Callable, Dict, Optional
from fastapi import Request, HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
import structlog

from gatehouse.database.database import get_db
from gatehouse.database.models import Organization, User
from gatehouse.errors import UnauthorizedError
from gatehouse.security.jwt import ACCESS_TOKEN, verify_token
from gatehouse.security.token_denylist import TokenDenyList
from gatehouse.services.auth_service import AuthService
from gatehouse.services.notification_service import NotificationService
from gatehouse.services.permission_cache import PermissionCache
from gatehouse.services.permission_service import PermissionService
from gatehouse.services.role_service import RoleService
from gatehouse.services.subdomain_service import SubdomainService

logger = structlog.get_logger()

security = HTTPBearer(auto_error=False)


class AuthContext:
    """Authentication context"""
    def __init__(
        self,
        user: Optional[User] = None,
        claims: Optional[Dict[str, Any]] = None,
        tenant: Optional[Organization] = None,
        token: Optional[str] = None,
    ):
        self.user = user
        self.claims = claims or {}
        self.tenant = tenant
        self.token = token

    @property
    def organization_id(self) -> Optional[str]:
        return self.user.organization_id if self.user else None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


# Process-wide collaborators, created in the application lifespan

def get_permission_cache(request: Request) -> PermissionCache:
    return request.app.state.permission_cache


def get_token_denylist(request: Request) -> TokenDenyList:
    return request.app.state.token_denylist


def get_notifier(request: Request) -> NotificationService:
    return request.app.state.notifier


def get_auth_service(
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
    denylist: TokenDenyList = Depends(get_token_denylist),
    notifier: NotificationService = Depends(get_notifier),
) -> AuthService:
    return AuthService(db, cache, denylist, notifier)


def get_permission_service(
    db: Session = Depends(get_db),
    cache: PermissionCache = Depends(get_permission_cache),
) -> PermissionService:
    return PermissionService(db, cache)


def get_tenant_context(request: Request, db: Session = Depends(get_db)) -> Optional[Organization]:
    """Organization addressed by the Host header's subdomain, if any"""
    return SubdomainService(db).resolve_host(request.headers.get("host"))


async def get_auth_context(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    tenant: Optional[Organization] = Depends(get_tenant_context),
) -> AuthContext:
    """Get authentication context from request - use as dependency"""
    credentials: Optional[HTTPAuthorizationCredentials] = await security(request)
    if credentials:
        try:
            user = auth.get_current_user(credentials.credentials)
            claims = verify_token(credentials.credentials, ACCESS_TOKEN, auth.denylist)
            return AuthContext(user=user, claims=claims, tenant=tenant, token=credentials.credentials)
        except UnauthorizedError as e:
            logger.debug("bearer_token_rejected", error=e.message)

    return AuthContext(tenant=tenant)


async def require_auth(
    auth_context: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> AuthContext:
    """
    Require an authenticated user inside the addressed tenant.

    A request arriving on another organization's subdomain is refused unless
    the caller is a super-admin.
    """
    if not auth_context.user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )

    tenant = auth_context.tenant
    if tenant is not None and tenant.id != auth_context.user.organization_id:
        if not RoleService(db).is_super_admin(auth_context.user.id):
            logger.info(
                "tenant_mismatch",
                user_id=auth_context.user.id,
                tenant_id=tenant.id,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access denied for this organization"
            )
    return auth_context


def require_permissions(*permission_slugs: str, require_all: bool = True) -> Callable:
    """
    Dependency factory that requires permissions.

    Super-admins pass every check. Denials never name the missing permission.

    Usage:
        @router.post("/roles")
        async def create_role(
            _perm: None = Depends(require_permissions("roles.create")),
            auth_context: AuthContext = Depends(require_auth),
        ):
    """
    async def check_permissions(
        auth_context: AuthContext = Depends(require_auth),
        permissions: PermissionService = Depends(get_permission_service),
    ) -> None:
        user_id = auth_context.user.id
        if permissions.roles.is_super_admin(user_id):
            return

        if len(permission_slugs) == 1:
            allowed = permissions.has_permission(user_id, permission_slugs[0])
        elif require_all:
            allowed = permissions.has_all(user_id, permission_slugs)
        else:
            allowed = permissions.has_any(user_id, permission_slugs)

        if not allowed:
            logger.info("permission_denied", user_id=user_id, required=list(permission_slugs))
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )

    return check_permissions


def require_super_admin() -> Callable:
    """Dependency that requires the system super-admin role"""
    async def check_super_admin(
        auth_context: AuthContext = Depends(require_auth),
        db: Session = Depends(get_db),
    ) -> None:
        if not RoleService(db).is_super_admin(auth_context.user.id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )

    return check_super_admin


def ensure_organization_access(auth_context: AuthContext, db: Session, organization_id: Optional[str]) -> str:
    """
    Organization a management request acts on.

    Defaults to the caller's own organization; naming another one requires
    the super-admin role.
    """
    if not organization_id or organization_id == auth_context.organization_id:
        return auth_context.organization_id
    if not RoleService(db).is_super_admin(auth_context.user.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied for this organization"
        )
    return organization_id
