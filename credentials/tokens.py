"""
Credential token model.

The access secret is opaque to this package: the credential authority owns
signing and verification. When the secret happens to be a JWT its ``iat`` /
``exp`` claims are read (signature not verified) to fill in the lifetime.
"""

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

import jwt

from core.errors import ValidationError
from core.timestamps import from_epoch, parse_timestamp, to_epoch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialToken:
    """An access credential with a fixed lifetime."""

    access_secret: str
    issued_at: datetime
    expires_at: datetime
    refresh_secret: Optional[str] = None
    kind: str = "Bearer"
    scope: str = ""
    fallback: bool = False

    # -------------------------------------------------------------------------
    # Lifetime helpers (``now`` is epoch seconds)
    # -------------------------------------------------------------------------

    @property
    def lifetime(self) -> float:
        """Total lifetime in seconds."""
        return to_epoch(self.expires_at) - to_epoch(self.issued_at)

    def remaining(self, now: float) -> float:
        """Seconds until expiry (negative once expired)."""
        return to_epoch(self.expires_at) - now

    def age(self, now: float) -> float:
        return now - to_epoch(self.issued_at)

    def is_expired(self, now: float) -> bool:
        return self.remaining(now) <= 0

    def is_well_formed(self) -> bool:
        return bool(self.access_secret) and bool(self.kind) and self.lifetime > 0

    def masked(self) -> str:
        """Short form safe for logs."""
        if len(self.access_secret) <= 10:
            return "***"
        return f"{self.access_secret[:10]}..."

    def with_refresh_secret(self, refresh_secret: Optional[str]) -> "CredentialToken":
        return replace(self, refresh_secret=refresh_secret)

    # -------------------------------------------------------------------------
    # Serialization (sync payloads)
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict:
        data = asdict(self)
        data["issued_at"] = self.issued_at.isoformat()
        data["expires_at"] = self.expires_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CredentialToken":
        try:
            token = cls(
                access_secret=data["access_secret"],
                issued_at=_coerce_datetime(data["issued_at"]),
                expires_at=_coerce_datetime(data["expires_at"]),
                refresh_secret=data.get("refresh_secret"),
                kind=data.get("kind", "Bearer"),
                scope=data.get("scope", ""),
                fallback=bool(data.get("fallback", False)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed credential payload: {e}") from e
        _require_positive_lifetime(token)
        return token

    @classmethod
    def from_jwt(cls, access_secret: str, refresh_secret: Optional[str] = None) -> "CredentialToken":
        """Build a token from a JWT's ``iat``/``exp`` claims."""
        try:
            claims = jwt.decode(access_secret, options={"verify_signature": False})
        except jwt.InvalidTokenError as e:
            raise ValidationError(f"Access secret is not a readable JWT: {e}") from e

        if "exp" not in claims or "iat" not in claims:
            raise ValidationError("JWT is missing 'iat' or 'exp' claim")

        token = cls(
            access_secret=access_secret,
            issued_at=from_epoch(float(claims["iat"])),
            expires_at=from_epoch(float(claims["exp"])),
            refresh_secret=refresh_secret,
            kind=claims.get("typ", "Bearer"),
            scope=_scope_from_claims(claims),
        )
        _require_positive_lifetime(token)
        return token


@dataclass
class Session:
    """The authority's view of the current session."""

    user_id: str
    token: CredentialToken
    metadata: dict[str, Any] = field(default_factory=dict)


def _coerce_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return from_epoch(float(value))
    return parse_timestamp(value)


def _scope_from_claims(claims: dict) -> str:
    scope = claims.get("scope", "")
    if isinstance(scope, (list, tuple)):
        return " ".join(str(s) for s in scope)
    return str(scope)


def _require_positive_lifetime(token: CredentialToken) -> None:
    if token.lifetime <= 0:
        raise ValidationError("Credential expires before it was issued")
