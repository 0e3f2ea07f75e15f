"""
Secrets and one-time codes for MFA.

- TOTP secrets (RFC 6238, pyotp) encrypted at rest with Fernet
- Provisioning URI and QR code PNG for authenticator apps
- Numeric one-time codes for SMS / email
- Backup codes, stored only as SHA-256 hashes
"""

import base64
import hashlib
import logging
import secrets
import string
from io import BytesIO
from typing import Optional, Union

import pyotp
import qrcode
from cryptography.fernet import Fernet, InvalidToken

from core.errors import ValidationError

logger = logging.getLogger(__name__)

DIGESTS = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}

# Excludes 0/O and 1/I
ALPHANUMERIC = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
MIXED = ALPHANUMERIC + "#$%&*+=?"

BACKUP_ALPHABETS = {
    "numeric": string.digits,
    "alphanumeric": ALPHANUMERIC,
    "mixed": MIXED,
}


class SecretBox:
    """Fernet encryption for secrets at rest."""

    def __init__(self, key: Union[str, bytes]):
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise ValidationError("Stored MFA secret could not be decrypted") from e


def build_totp(secret: str, digits: int = 6, period: int = 30, algorithm: str = "SHA1",
               issuer: Optional[str] = None) -> pyotp.TOTP:
    return pyotp.TOTP(
        secret,
        digits=digits,
        interval=period,
        digest=DIGESTS[algorithm],
        issuer=issuer,
    )


def qr_code_data_uri(data: str) -> str:
    """Render ``data`` as a base64 PNG data URI."""
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    qr_base64 = base64.b64encode(buffer.getvalue()).decode()
    return f"data:image/png;base64,{qr_base64}"


def generate_numeric_code(length: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def generate_backup_codes(count: int, length: int, fmt: str = "alphanumeric") -> list[str]:
    """Generate ``count`` distinct codes of ``length`` characters."""
    alphabet = BACKUP_ALPHABETS.get(fmt)
    if alphabet is None:
        raise ValidationError(f"Unknown backup code format '{fmt}'")

    codes: list[str] = []
    seen = set()
    while len(codes) < count:
        code = "".join(secrets.choice(alphabet) for _ in range(length))
        if code not in seen:
            seen.add(code)
            codes.append(code)
    return codes


def normalize_code(code: str) -> str:
    return "".join(str(code).split()).upper()


def hash_code(code: str) -> str:
    """Hash a code for storage."""
    return hashlib.sha256(normalize_code(code).encode()).hexdigest()
