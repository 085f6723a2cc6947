"""
TOTP secrets, QR provisioning and backup recovery codes.
"""
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import base64
import io
import secrets

import pyotp
import qrcode

from mongosnap.models.users import BackupCode, User
from mongosnap.utils.crypto import hash_token

ISSUER = "MongoSnap"
BACKUP_CODE_COUNT = 10


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, email: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=ISSUER)


def generate_qr_code(uri: str) -> str:
    """Render ``uri`` as a PNG data URL for authenticator apps."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


def verify_totp(secret: Optional[str], code: str) -> bool:
    if not secret or not code:
        return False
    # one 30 second step of drift either way
    return pyotp.TOTP(secret).verify(code.strip().replace(" ", ""), valid_window=1)


def _normalize_backup_code(code: str) -> str:
    return code.strip().upper().replace(" ", "").replace("-", "")


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> Tuple[List[str], List[BackupCode]]:
    """Return the plain codes (shown once) and the hashed records to store."""
    plain = []
    for _ in range(count):
        code = secrets.token_hex(4).upper()
        plain.append(f"{code[:4]}-{code[4:]}")
    hashed = [BackupCode(code_hash=hash_token(_normalize_backup_code(code))) for code in plain]
    return plain, hashed


def use_backup_code(user: User, code: str) -> bool:
    """Mark the matching unused backup code as used. The caller persists the user."""
    digest = hash_token(_normalize_backup_code(code))
    for backup in user.backup_codes:
        if not backup.used and secrets.compare_digest(backup.code_hash, digest):
            backup.used = True
            backup.used_at = datetime.now(timezone.utc)
            return True
    return False


def remaining_backup_codes(user: User) -> int:
    return sum(1 for code in user.backup_codes if not code.used)


def backup_codes_text(email: str, codes: List[str]) -> str:
    lines = [
        "MongoSnap backup codes",
        f"Account: {email}",
        f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}",
        "",
        "Each code can be used once to sign in when you cannot use your authenticator app.",
        "",
    ]
    lines.extend(codes)
    return "\n".join(lines) + "\n"
