"""
Centralized error types for the credential and session lifecycle.

Error Hierarchy:
- LifecycleError: base class, carries a stable machine-readable ``code``
- ValidationError: malformed input or failed verification
- RateLimitedError / NoActiveEnrollmentError / EnrollmentNotFoundError: MFA
- CircuitOpenError / RotationFailedError: credential refresh and rotation
- AlreadyActiveError / NotActiveError: manager lifecycle misuse

Usage:
    from core.errors import ValidationError, RateLimitedError

    raise ValidationError("Access secret is empty")

    try:
        await mfa.verify(user_id, "totp", code)
    except RateLimitedError as e:
        logger.warning(f"Verification throttled: {e} ({e.code})")
"""

from typing import Optional


class LifecycleError(Exception):
    """
    Base class for expected lifecycle errors.
    Messages are safe to surface to callers.
    """
    code = "LIFECYCLE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


# =============================================================================
# Validation
# =============================================================================

class ValidationError(LifecycleError):
    """Input or credential failed validation."""
    code = "VALIDATION_ERROR"


class UnsupportedMethodError(ValidationError):
    """MFA method is not one of the known factor types."""
    code = "MFA_METHOD_NOT_SUPPORTED"


class MethodDisabledError(ValidationError):
    """MFA method is known but disabled by configuration."""
    code = "MFA_METHOD_DISABLED"


class AlreadyEnrolledError(ValidationError):
    """User already has an active enrollment for the method."""
    code = "MFA_ALREADY_ENROLLED"


# =============================================================================
# MFA
# =============================================================================

class RateLimitedError(LifecycleError):
    """Too many attempts inside the rate-limit window."""
    code = "MFA_RATE_LIMITED"

    def __init__(self, message: str, retry_after: float = 0.0, code: Optional[str] = None):
        super().__init__(message, code)
        self.retry_after = retry_after


class NoActiveEnrollmentError(LifecycleError):
    """Verification requested for a method the user is not enrolled in."""
    code = "MFA_NOT_ENROLLED"


class EnrollmentNotFoundError(LifecycleError):
    """Enrollment id does not exist."""
    code = "MFA_ENROLLMENT_NOT_FOUND"


class DeliveryError(LifecycleError):
    """Out-of-band code could not be delivered."""
    code = "MFA_DELIVERY_FAILED"


# =============================================================================
# Credential refresh / rotation
# =============================================================================

class CircuitOpenError(LifecycleError):
    """Raised when attempting a call while the circuit is open."""
    code = "CIRCUIT_OPEN"


class RotationFailedError(LifecycleError):
    """Rotation failed and no fallback credential could be issued."""
    code = "ROTATION_FAILED"


# =============================================================================
# Manager lifecycle
# =============================================================================

class AlreadyActiveError(LifecycleError):
    """Manager is already running."""
    code = "ALREADY_ACTIVE"


class NotActiveError(LifecycleError):
    """Manager is not running."""
    code = "NOT_ACTIVE"
