"""MFA data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class MFAMethod(str, Enum):
    """Supported second factors."""
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"
    BIOMETRICS = "biometrics"
    SECURITY_KEY = "security_key"
    BACKUP_CODES = "backup_codes"


class EnrollmentStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DISABLED = "disabled"
    REVOKED = "revoked"


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


# Lower is preferred when offering methods to the user
METHOD_PRIORITY = {
    MFAMethod.TOTP: 1,
    MFAMethod.SECURITY_KEY: 2,
    MFAMethod.BIOMETRICS: 3,
    MFAMethod.SMS: 4,
    MFAMethod.EMAIL: 5,
    MFAMethod.BACKUP_CODES: 6,
}

# Metadata keys never returned to callers
PRIVATE_METADATA = ("secret",)


@dataclass
class MFAEnrollment:
    """A user's enrollment in one factor type."""
    id: str
    user_id: str
    method: MFAMethod
    status: EnrollmentStatus
    created_at: datetime
    device_info: Optional[dict] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # One-time payload for the caller (QR code, backup codes); never stored
    setup_data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == EnrollmentStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "method": self.method.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "device_info": self.device_info,
            "metadata": {k: v for k, v in self.metadata.items() if k not in PRIVATE_METADATA},
        }


@dataclass
class VerificationCode:
    """A single-use code, stored as a hash."""
    code_hash: str
    created_at: float
    expires_at: Optional[float] = None  # backup codes never expire
    used: bool = False

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_usable(self, now: float) -> bool:
        return not self.used and not self.is_expired(now)


@dataclass
class MFAChallenge:
    """A step-up challenge satisfied by any one of ``allowed_methods``."""
    id: str
    user_id: str
    allowed_methods: list[MFAMethod]
    status: ChallengeStatus
    created_at: float
    expires_at: float
    completed_method: Optional[MFAMethod] = None
