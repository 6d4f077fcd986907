"""Authentication routes"""

from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field
from typing import Optional

from gatehouse.database.models import Organization
from gatehouse.middleware.auth_middleware import (
    AuthContext,
    get_auth_service,
    get_tenant_context,
    require_auth,
    security,
)
from gatehouse.middleware.rate_limiting import rate_limit, enforce_rate_limit
from gatehouse.services.auth_service import AuthService

router = APIRouter()

# Rate limit configurations (requests per minute)
RATE_LIMIT_REGISTER = rate_limit("auth:register", limit=3, window=60)
RATE_LIMIT_LOGOUT = rate_limit("auth:logout", limit=10, window=60)
RATE_LIMIT_REFRESH = rate_limit("auth:refresh", limit=10, window=60)
RATE_LIMIT_FORGOT = rate_limit("auth:forgot", limit=3, window=60)
RATE_LIMIT_RESET = rate_limit("auth:reset", limit=5, window=60)
RATE_LIMIT_2FA = rate_limit("auth:2fa", limit=5, window=60)
RATE_LIMIT_ME = rate_limit("auth:me", limit=30, window=60)
LOGIN_RATE_LIMIT = 10
LOGIN_RATE_LIMIT_WINDOW_SECONDS = 60


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    organization_id: Optional[str] = None
    organization_slug: Optional[str] = None
    username: Optional[str] = Field(default=None, max_length=100)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class RegisterOrganizationRequest(BaseModel):
    email: EmailStr
    password: str
    organization_name: str = Field(min_length=1, max_length=100)
    organization_slug: Optional[str] = None
    organization_domain: Optional[str] = None
    username: Optional[str] = Field(default=None, max_length=100)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class RegisterInvitationRequest(BaseModel):
    token: str
    email: EmailStr
    password: str
    username: Optional[str] = Field(default=None, max_length=100)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: str  # Email address or username
    password: str
    organization_id: Optional[str] = None
    organization_slug: Optional[str] = None
    two_fa_code: Optional[str] = None


class TwoFactorLoginRequest(BaseModel):
    two_factor_token: str
    code: str


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    email: EmailStr
    organization_id: Optional[str] = None
    organization_slug: Optional[str] = None


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    auth: AuthService = Depends(get_auth_service),
    tenant: Optional[Organization] = Depends(get_tenant_context),
    _rate_limit: None = Depends(RATE_LIMIT_REGISTER)
):
    """Register into an existing organization (by id, slug or subdomain)"""
    return auth.register(
        request.email,
        request.password,
        organization_id=request.organization_id,
        organization_slug=request.organization_slug,
        tenant=tenant,
        username=request.username,
        first_name=request.first_name,
        last_name=request.last_name,
    )


@router.post("/register/organization", status_code=status.HTTP_201_CREATED)
async def register_with_organization(
    request: RegisterOrganizationRequest,
    auth: AuthService = Depends(get_auth_service),
    _rate_limit: None = Depends(RATE_LIMIT_REGISTER)
):
    """Create an organization together with its first administrator"""
    return auth.register_with_organization(
        request.email,
        request.password,
        organization_name=request.organization_name,
        organization_slug=request.organization_slug,
        organization_domain=request.organization_domain,
        username=request.username,
        first_name=request.first_name,
        last_name=request.last_name,
    )


@router.post("/register/invitation", status_code=status.HTTP_201_CREATED)
async def register_with_invitation(
    request: RegisterInvitationRequest,
    auth: AuthService = Depends(get_auth_service),
    _rate_limit: None = Depends(RATE_LIMIT_REGISTER)
):
    """Join an organization through an invitation token"""
    return auth.register_with_invitation(
        request.token,
        request.email,
        request.password,
        username=request.username,
        first_name=request.first_name,
        last_name=request.last_name,
    )


@router.post("/login")
async def login(
    request: LoginRequest,
    raw_request: Request,
    auth: AuthService = Depends(get_auth_service),
    tenant: Optional[Organization] = Depends(get_tenant_context),
):
    """Login and get tokens, or a step-up token when a 2FA code is needed"""
    await enforce_rate_limit(
        request=raw_request,
        key="auth:login",
        limit=LOGIN_RATE_LIMIT,
        window=LOGIN_RATE_LIMIT_WINDOW_SECONDS,
        identifier=request.email.lower(),
    )

    return auth.login(
        request.email,
        request.password,
        organization_id=request.organization_id,
        organization_slug=request.organization_slug,
        tenant=tenant,
        two_fa_code=request.two_fa_code,
        ip_address=_client_ip(raw_request),
    )


@router.post("/login/2fa")
async def login_two_factor(
    request: TwoFactorLoginRequest,
    raw_request: Request,
    auth: AuthService = Depends(get_auth_service),
    _rate_limit: None = Depends(RATE_LIMIT_2FA)
):
    """Complete a login with the step-up token and a TOTP or backup code"""
    return auth.verify_two_factor_login(
        request.two_factor_token,
        request.code,
        ip_address=_client_ip(raw_request),
    )


@router.post("/refresh")
async def refresh_token(
    request: RefreshRequest,
    auth: AuthService = Depends(get_auth_service),
    _rate_limit: None = Depends(RATE_LIMIT_REFRESH)
):
    """Exchange a refresh token for a new token pair"""
    return auth.refresh_token(request.refresh_token)


@router.post("/logout")
async def logout(
    request: Optional[LogoutRequest] = None,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    auth: AuthService = Depends(get_auth_service),
    _rate_limit: None = Depends(RATE_LIMIT_LOGOUT)
):
    """Logout and revoke the presented tokens"""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    return auth.logout(credentials.credentials, request.refresh_token if request else None)


@router.post("/forgot-password")
async def forgot_password(
    request: ForgotPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
    tenant: Optional[Organization] = Depends(get_tenant_context),
    _rate_limit: None = Depends(RATE_LIMIT_FORGOT)
):
    """Request a password reset email"""
    return auth.request_password_reset(
        request.email,
        organization_id=request.organization_id,
        organization_slug=request.organization_slug,
        tenant=tenant,
    )


@router.post("/reset-password")
async def reset_password(
    request: ResetPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
    _rate_limit: None = Depends(RATE_LIMIT_RESET)
):
    """Set a new password with a reset token"""
    return auth.reset_password(request.token, request.new_password)


@router.get("/me")
async def get_current_user_info(
    auth_context: AuthContext = Depends(require_auth),
    _rate_limit: None = Depends(RATE_LIMIT_ME)
):
    """Get current user information"""
    user = auth_context.user
    return {
        **user.to_dict(),
        "organization": user.organization.to_dict() if user.organization else None,
    }
