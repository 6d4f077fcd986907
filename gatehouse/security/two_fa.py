"""Two-Factor Authentication utilities"""

import pyotp
import qrcode
import io
import base64
import secrets
from typing import List

# Backup code alphabet without look-alike characters (0/O, 1/I/L)
BACKUP_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"


def generate_2fa_secret() -> str:
    """Generate a new TOTP secret"""
    return pyotp.random_base32(length=32)


def get_2fa_uri(secret: str, email: str, issuer: str) -> str:
    """Get the provisioning URI for QR code generation"""
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=email, issuer_name=issuer)


def generate_qr_code(uri: str) -> str:
    """Generate a QR code image as base64 string"""
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    img_str = base64.b64encode(buffer.getvalue()).decode()
    return f"data:image/png;base64,{img_str}"


def verify_2fa_code(secret: str, code: str, valid_window: int = 1) -> bool:
    """Verify a TOTP code, tolerating `valid_window` steps of clock skew"""
    if not code:
        return False
    totp = pyotp.TOTP(secret)
    return totp.verify(code.strip().replace(" ", ""), valid_window=valid_window)


def normalize_backup_code(code: str) -> str:
    """Canonical form used for hashing and comparison"""
    return code.strip().upper().replace("-", "").replace(" ", "")


def generate_backup_codes(count: int = 8) -> List[str]:
    """Generate backup codes for 2FA, formatted XXXX-XXXX"""
    codes = []
    for _ in range(count):
        code = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(8))
        codes.append(f"{code[:4]}-{code[4:]}")
    return codes
