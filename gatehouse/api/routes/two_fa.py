"""Two-factor authentication routes"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from gatehouse.database.database import get_db
from gatehouse.middleware.auth_middleware import AuthContext, get_notifier, require_auth
from gatehouse.middleware.rate_limiting import rate_limit
from gatehouse.services.notification_service import NotificationService
from gatehouse.services.two_fa_service import TwoFAService

router = APIRouter()

RATE_LIMIT_2FA = rate_limit("auth:2fa", limit=5, window=60)


class TwoFASetupResponse(BaseModel):
    secret: str
    qr_code: str
    uri: str


class TwoFAEnableRequest(BaseModel):
    code: str


class PasswordConfirmRequest(BaseModel):
    password: str


@router.post("/setup", response_model=TwoFASetupResponse)
async def setup_2fa(
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    _rate_limit: None = Depends(RATE_LIMIT_2FA)
):
    """Start 2FA enrollment; the secret is pending until confirmed"""
    return TwoFAService.generate_secret(db, auth_context.user.id)


@router.post("/enable")
async def enable_2fa(
    request: TwoFAEnableRequest,
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier),
    _rate_limit: None = Depends(RATE_LIMIT_2FA)
):
    """Confirm enrollment with a code. Backup codes are shown only here."""
    backup_codes = TwoFAService.enable(db, auth_context.user.id, request.code, notifier)
    return {"enabled": True, "backup_codes": backup_codes}


@router.post("/disable")
async def disable_2fa(
    request: PasswordConfirmRequest,
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier),
    _rate_limit: None = Depends(RATE_LIMIT_2FA)
):
    TwoFAService.disable(db, auth_context.user.id, request.password, notifier)
    return {"enabled": False}


@router.post("/backup-codes")
async def regenerate_backup_codes(
    request: PasswordConfirmRequest,
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
    _rate_limit: None = Depends(RATE_LIMIT_2FA)
):
    """Replace every backup code"""
    return {"backup_codes": TwoFAService.regenerate_backup_codes(db, auth_context.user.id, request.password)}


@router.get("/status")
async def get_2fa_status(
    auth_context: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    return TwoFAService.get_status(db, auth_context.user.id)
