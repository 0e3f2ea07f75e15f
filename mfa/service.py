"""
Multi-Factor Authentication service.

Enrollment and verification for TOTP, SMS, email, biometric, security key
and backup-code factors.

Features:
- TOTP secrets (RFC 6238) encrypted at rest, QR code for enrollment
- Single-use, expiring SMS / email codes delivered out of band
- Backup codes stored only as hashes
- Per-user rate limiting of code sends and failed verifications
- Step-up challenges

All operations on the same user are serialized, so a single-use code can
never be accepted twice.
"""

import asyncio
import hmac
import logging
import re
import time
import uuid
from collections import defaultdict
from dataclasses import replace
from typing import Any, Callable, Optional, Union

import pyotp
from cryptography.fernet import Fernet

from config.settings import MFASettings
from core.errors import (
    AlreadyEnrolledError,
    DeliveryError,
    EnrollmentNotFoundError,
    MethodDisabledError,
    NoActiveEnrollmentError,
    RateLimitedError,
    UnsupportedMethodError,
    ValidationError,
)
from core.timestamps import from_epoch
from mfa.codes import (
    SecretBox,
    build_totp,
    generate_backup_codes,
    generate_numeric_code,
    hash_code,
    qr_code_data_uri,
)
from mfa.delivery import LoggingDelivery, NotificationDelivery, mask_target
from mfa.models import (
    METHOD_PRIORITY,
    ChallengeStatus,
    EnrollmentStatus,
    MFAChallenge,
    MFAEnrollment,
    MFAMethod,
    VerificationCode,
)
from mfa.rate_limit import AttemptRateLimiter

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 ()\-]{6,19}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

OUT_OF_BAND_METHODS = (MFAMethod.SMS, MFAMethod.EMAIL)


class MFAService:
    """Manages MFA enrollments and verifications for users."""

    def __init__(
        self,
        settings: Optional[MFASettings] = None,
        delivery: Optional[NotificationDelivery] = None,
        clock: Callable[[], float] = time.time,
        encryption_key: Optional[Union[str, bytes]] = None,
    ):
        self.settings = settings or MFASettings()
        self._clock = clock
        self._delivery = delivery or LoggingDelivery()

        key = encryption_key or self.settings.encryption_key.get_secret_value()
        if not key:
            logger.warning(
                "MFA_ENCRYPTION_KEY not set, TOTP secrets are encrypted with an ephemeral key. "
                "Set MFA_ENCRYPTION_KEY for production."
            )
            key = Fernet.generate_key()
        self._secrets = SecretBox(key)

        self._enrollments: dict[str, MFAEnrollment] = {}
        # "<user>:sms", "<user>:email", "<user>:backup:<hash>"
        self._codes: dict[str, VerificationCode] = {}
        self._challenges: dict[str, MFAChallenge] = {}
        self._limiter = AttemptRateLimiter(self.settings.rate_limit_window, clock)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._stats: dict[str, int] = defaultdict(int)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _now(self) -> float:
        return self._clock()

    @staticmethod
    def _resolve_method(method: Union[str, MFAMethod]) -> MFAMethod:
        try:
            return MFAMethod(method)
        except ValueError:
            raise UnsupportedMethodError(f"Unsupported MFA method '{method}'") from None

    def is_method_enabled(self, method: Union[str, MFAMethod]) -> bool:
        method = self._resolve_method(method)
        s = self.settings
        return {
            MFAMethod.TOTP: s.enable_totp,
            MFAMethod.SMS: s.enable_sms,
            MFAMethod.EMAIL: s.enable_email,
            MFAMethod.BIOMETRICS: s.enable_biometrics,
            MFAMethod.SECURITY_KEY: s.enable_security_keys,
            MFAMethod.BACKUP_CODES: s.enable_backup_codes,
        }[method]

    def _find_enrollment(self, user_id: str, method: MFAMethod,
                         status: EnrollmentStatus = EnrollmentStatus.ACTIVE) -> Optional[MFAEnrollment]:
        for enrollment in self._enrollments.values():
            if enrollment.user_id == user_id and enrollment.method == method and enrollment.status == status:
                return enrollment
        return None

    def _get_enrollment(self, enrollment_id: str) -> MFAEnrollment:
        enrollment = self._enrollments.get(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found")
        return enrollment

    def _totp(self, enrollment: MFAEnrollment) -> pyotp.TOTP:
        secret = self._secrets.decrypt(enrollment.metadata["secret"])
        s = self.settings
        return build_totp(secret, s.totp_digits, s.totp_period, s.totp_algorithm, s.issuer)

    # =========================================================================
    # Enrollment
    # =========================================================================

    async def enroll(self, user_id: str, method: Union[str, MFAMethod],
                     device_info: Optional[dict] = None) -> MFAEnrollment:
        """
        Enroll a user in a factor type.

        Args:
            user_id: User identifier
            method: Factor type
            device_info: Optional device description (name, platform, credential_id)

        Returns:
            The enrollment, with one-time ``setup_data`` (TOTP provisioning
            URI and QR code, or the first batch of backup codes)

        Raises:
            UnsupportedMethodError, MethodDisabledError, AlreadyEnrolledError
        """
        method = self._resolve_method(method)
        if not self.is_method_enabled(method):
            raise MethodDisabledError(f"MFA method '{method.value}' is not enabled")

        async with self._locks[user_id]:
            if self._find_enrollment(user_id, method) is not None:
                raise AlreadyEnrolledError(f"User already enrolled in '{method.value}'")

            # A new TOTP setup replaces an unconfirmed one
            pending = self._find_enrollment(user_id, method, EnrollmentStatus.PENDING)
            if pending is not None:
                pending.status = EnrollmentStatus.REVOKED

            now = self._now()
            enrollment = MFAEnrollment(
                id=f"mfa_{uuid.uuid4().hex}",
                user_id=user_id,
                method=method,
                status=EnrollmentStatus.ACTIVE,
                created_at=from_epoch(now),
                device_info=device_info,
                metadata={
                    "enrolled_at": from_epoch(now).isoformat(),
                    "last_used": None,
                    "verified_at": None,
                    "usage_count": 0,
                },
            )
            setup_data = self._setup_method(enrollment)
            self._enrollments[enrollment.id] = enrollment
            self._stats["enrollments_created"] += 1

        logger.info(
            f"MFA enrollment {enrollment.id} created ({method.value}, {enrollment.status.value})",
            extra={"user_id": user_id, "method": method.value},
        )
        return replace(enrollment, setup_data=setup_data)

    def _setup_method(self, enrollment: MFAEnrollment) -> dict[str, Any]:
        method = enrollment.method

        if method == MFAMethod.TOTP:
            secret = pyotp.random_base32()
            enrollment.metadata["secret"] = self._secrets.encrypt(secret)
            totp = self._totp(enrollment)
            uri = totp.provisioning_uri(name=enrollment.user_id, issuer_name=self.settings.issuer)
            setup = {"provisioning_uri": uri, "manual_entry_key": secret}
            if self.settings.totp_qr_code:
                setup["qr_code"] = qr_code_data_uri(uri)
            if self.settings.require_totp_confirmation:
                enrollment.status = EnrollmentStatus.PENDING
            return setup

        if method == MFAMethod.BACKUP_CODES:
            codes = self._issue_backup_codes(enrollment.user_id)
            enrollment.metadata["codes_remaining"] = len(codes)
            return {"backup_codes": codes}

        if method in (MFAMethod.BIOMETRICS, MFAMethod.SECURITY_KEY) and enrollment.device_info:
            enrollment.metadata["credential_id"] = enrollment.device_info.get("credential_id")
        return {}

    async def confirm_enrollment(self, enrollment_id: str, code: str) -> MFAEnrollment:
        """Activate a pending TOTP enrollment with a code from the authenticator app."""
        enrollment = self._get_enrollment(enrollment_id)
        async with self._locks[enrollment.user_id]:
            if enrollment.status != EnrollmentStatus.PENDING:
                raise ValidationError(f"Enrollment {enrollment_id} is not pending confirmation")

            key = f"{enrollment.user_id}:verify"
            self._limiter.check(key)
            if not self._check_totp(enrollment, code):
                self._limiter.record(key)
                raise ValidationError("Invalid verification code", code="MFA_INVALID_CODE")

            enrollment.status = EnrollmentStatus.ACTIVE
            enrollment.metadata["verified_at"] = from_epoch(self._now()).isoformat()

        logger.info(f"MFA enrollment {enrollment_id} confirmed", extra={"user_id": enrollment.user_id})
        return enrollment

    async def disable_enrollment(self, enrollment_id: str) -> MFAEnrollment:
        """Disable an enrollment; it is kept for history."""
        return await self._deactivate(enrollment_id, EnrollmentStatus.DISABLED)

    async def revoke_enrollment(self, enrollment_id: str) -> MFAEnrollment:
        """Revoke an enrollment (e.g. lost device); it is kept for history."""
        return await self._deactivate(enrollment_id, EnrollmentStatus.REVOKED)

    async def _deactivate(self, enrollment_id: str, status: EnrollmentStatus) -> MFAEnrollment:
        enrollment = self._get_enrollment(enrollment_id)
        async with self._locks[enrollment.user_id]:
            if enrollment.status not in (EnrollmentStatus.ACTIVE, EnrollmentStatus.PENDING):
                raise ValidationError(
                    f"Enrollment {enrollment_id} is already {enrollment.status.value}"
                )
            enrollment.status = status
            enrollment.metadata[f"{status.value}_at"] = from_epoch(self._now()).isoformat()
            self._drop_codes(enrollment.user_id, enrollment.method)

        logger.info(
            f"MFA enrollment {enrollment_id} {status.value}",
            extra={"user_id": enrollment.user_id, "method": enrollment.method.value},
        )
        return enrollment

    def _drop_codes(self, user_id: str, method: MFAMethod) -> None:
        if method == MFAMethod.BACKUP_CODES:
            prefix = f"{user_id}:backup:"
            for key in [k for k in self._codes if k.startswith(prefix)]:
                del self._codes[key]
        elif method in OUT_OF_BAND_METHODS:
            self._codes.pop(f"{user_id}:{method.value}", None)

    # =========================================================================
    # Backup codes
    # =========================================================================

    async def generate_backup_codes(self, user_id: str) -> list[str]:
        """
        Issue a fresh set of backup codes, invalidating any unused ones.

        Returns:
            The plaintext codes. Only their hashes are kept.
        """
        if not self.is_method_enabled(MFAMethod.BACKUP_CODES):
            raise MethodDisabledError("MFA method 'backup_codes' is not enabled")

        async with self._locks[user_id]:
            codes = self._issue_backup_codes(user_id)
            enrollment = self._find_enrollment(user_id, MFAMethod.BACKUP_CODES)
            if enrollment is not None:
                enrollment.metadata["codes_remaining"] = len(codes)

        logger.info(f"Generated {len(codes)} backup codes", extra={"user_id": user_id})
        return codes

    def _issue_backup_codes(self, user_id: str) -> list[str]:
        self._drop_codes(user_id, MFAMethod.BACKUP_CODES)
        s = self.settings
        codes = generate_backup_codes(s.backup_code_count, s.backup_code_length, s.backup_code_format)
        now = self._now()
        for code in codes:
            code_hash = hash_code(code)
            self._codes[f"{user_id}:backup:{code_hash}"] = VerificationCode(code_hash=code_hash, created_at=now)
        return codes

    # =========================================================================
    # Out-of-band codes
    # =========================================================================

    async def send_code(self, user_id: str, method: Union[str, MFAMethod], target: str) -> None:
        """
        Generate and deliver a one-time code over SMS or email.

        Raises:
            ValidationError: method cannot deliver codes, or bad target
            NoActiveEnrollmentError: user not enrolled in ``method``
            RateLimitedError: a code was sent inside the rate-limit window
            DeliveryError: the gateway failed (the code is discarded)
        """
        method = self._resolve_method(method)
        if method not in OUT_OF_BAND_METHODS:
            raise ValidationError(f"Codes cannot be sent for '{method.value}'")
        pattern = PHONE_PATTERN if method == MFAMethod.SMS else EMAIL_PATTERN
        if not target or not pattern.match(target):
            raise ValidationError(f"Invalid {method.value} target")

        async with self._locks[user_id]:
            if self._find_enrollment(user_id, method) is None:
                raise NoActiveEnrollmentError(f"No active '{method.value}' enrollment")

            rate_key = f"{user_id}:send"
            try:
                self._limiter.check(rate_key)
            except RateLimitedError:
                self._stats["rate_limited"] += 1
                raise
            self._limiter.record(rate_key)

            s = self.settings
            code = generate_numeric_code(s.code_length)
            now = self._now()
            code_key = f"{user_id}:{method.value}"
            self._codes[code_key] = VerificationCode(
                code_hash=hash_code(code), created_at=now, expires_at=now + s.code_ttl
            )

            if method == MFAMethod.SMS:
                message, subject = s.sms_template.format(code=code), None
            else:
                minutes = max(1, int(s.code_ttl // 60))
                message, subject = s.email_template.format(code=code, minutes=minutes), s.email_subject

            try:
                await self._delivery.deliver(method.value, target, message, subject)
            except Exception as e:
                self._codes.pop(code_key, None)
                logger.error(
                    f"Failed to deliver {method.value} code to {mask_target(target)}: {e}",
                    extra={"user_id": user_id, "method": method.value},
                )
                raise DeliveryError(f"Could not deliver {method.value} code") from e

            self._stats["codes_sent"] += 1

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify(self, user_id: str, method: Union[str, MFAMethod], code: str) -> bool:
        """
        Verify a second-factor code.

        Returns:
            True on success

        Raises:
            NoActiveEnrollmentError: user not enrolled in ``method``
            RateLimitedError: a failed verification happened inside the window
            ValidationError: wrong, expired or already used code
        """
        method = self._resolve_method(method)

        async with self._locks[user_id]:
            enrollment = self._find_enrollment(user_id, method)
            if enrollment is None:
                raise NoActiveEnrollmentError(f"No active '{method.value}' enrollment")

            rate_key = f"{user_id}:verify"
            try:
                self._limiter.check(rate_key)
            except RateLimitedError:
                self._stats["rate_limited"] += 1
                raise

            if not self._check_code(enrollment, code):
                self._limiter.record(rate_key)
                self._stats["verifications_failed"] += 1
                logger.warning(
                    f"MFA verification failed ({method.value})",
                    extra={"user_id": user_id, "method": method.value},
                )
                raise ValidationError("Invalid verification code", code="MFA_INVALID_CODE")

            now_iso = from_epoch(self._now()).isoformat()
            enrollment.metadata["last_used"] = now_iso
            enrollment.metadata["verified_at"] = now_iso
            enrollment.metadata["usage_count"] = enrollment.metadata.get("usage_count", 0) + 1
            self._stats["verifications_succeeded"] += 1

        logger.info(f"MFA verification succeeded ({method.value})",
                    extra={"user_id": user_id, "method": method.value})
        return True

    def _check_code(self, enrollment: MFAEnrollment, code: str) -> bool:
        method = enrollment.method
        if method == MFAMethod.TOTP:
            return self._check_totp(enrollment, code)
        if method in OUT_OF_BAND_METHODS:
            return self._consume(f"{enrollment.user_id}:{method.value}", code)
        if method == MFAMethod.BACKUP_CODES:
            ok = self._consume(f"{enrollment.user_id}:backup:{hash_code(code)}", code)
            if ok:
                remaining = enrollment.metadata.get("codes_remaining", 1)
                enrollment.metadata["codes_remaining"] = max(0, remaining - 1)
            return ok
        # Biometric and security-key assertions are checked by the platform
        return bool(code and str(code).strip())

    def _check_totp(self, enrollment: MFAEnrollment, code: str) -> bool:
        code = str(code or "").strip()
        if not code.isdigit() or len(code) != self.settings.totp_digits:
            return False
        totp = self._totp(enrollment)
        return totp.verify(code, for_time=int(self._now()), valid_window=self.settings.totp_valid_window)

    def _consume(self, key: str, code: str) -> bool:
        stored = self._codes.get(key)
        if stored is None or not stored.is_usable(self._now()):
            return False
        if not hmac.compare_digest(stored.code_hash, hash_code(code)):
            return False
        stored.used = True
        return True

    # =========================================================================
    # Step-up challenges
    # =========================================================================

    def create_challenge(self, user_id: str,
                         methods: Optional[list[Union[str, MFAMethod]]] = None) -> MFAChallenge:
        """Open a step-up challenge that any one of ``methods`` can satisfy."""
        active = self.get_user_enrollments(user_id)
        enrolled = [e.method for e in active]
        if methods is None:
            allowed = enrolled
        else:
            allowed = [m for m in (self._resolve_method(m) for m in methods) if m in enrolled]
        if not allowed:
            raise NoActiveEnrollmentError("No active enrollment can satisfy the challenge")

        now = self._now()
        challenge = MFAChallenge(
            id=f"chl_{uuid.uuid4().hex}",
            user_id=user_id,
            allowed_methods=sorted(allowed, key=METHOD_PRIORITY.get),
            status=ChallengeStatus.PENDING,
            created_at=now,
            expires_at=now + self.settings.challenge_ttl,
        )
        self._challenges[challenge.id] = challenge
        self._stats["challenges_created"] += 1
        return challenge

    async def verify_challenge(self, challenge_id: str, method: Union[str, MFAMethod],
                               code: str) -> MFAChallenge:
        challenge = self._challenges.get(challenge_id)
        if challenge is None:
            raise ValidationError(f"Challenge {challenge_id} not found", code="MFA_CHALLENGE_NOT_FOUND")
        if challenge.status == ChallengeStatus.COMPLETED:
            raise ValidationError("Challenge already completed", code="MFA_CHALLENGE_COMPLETED")
        if challenge.status == ChallengeStatus.EXPIRED or self._now() >= challenge.expires_at:
            challenge.status = ChallengeStatus.EXPIRED
            raise ValidationError("Challenge has expired", code="MFA_CHALLENGE_EXPIRED")

        method = self._resolve_method(method)
        if method not in challenge.allowed_methods:
            raise ValidationError(f"Method '{method.value}' cannot satisfy this challenge")

        await self.verify(challenge.user_id, method, code)
        challenge.status = ChallengeStatus.COMPLETED
        challenge.completed_method = method
        self._stats["challenges_completed"] += 1
        return challenge

    # =========================================================================
    # Queries
    # =========================================================================

    def get_user_enrollments(self, user_id: str, include_inactive: bool = False) -> list[MFAEnrollment]:
        return [
            e for e in self._enrollments.values()
            if e.user_id == user_id and (include_inactive or e.is_active)
        ]

    def get_available_methods(self, user_id: str) -> list[dict]:
        """Enabled methods in priority order, with the user's enrollment state."""
        methods = []
        for method in sorted(MFAMethod, key=METHOD_PRIORITY.get):
            if not self.is_method_enabled(method):
                continue
            enrolled = self._find_enrollment(user_id, method) is not None
            methods.append({
                "method": method.value,
                "priority": METHOD_PRIORITY[method],
                "enrolled": enrolled,
                "requires_setup": not enrolled,
            })
        return methods

    def get_statistics(self) -> dict:
        by_method: dict[str, int] = defaultdict(int)
        by_status: dict[str, int] = defaultdict(int)
        for enrollment in self._enrollments.values():
            by_status[enrollment.status.value] += 1
            if enrollment.is_active:
                by_method[enrollment.method.value] += 1

        return {
            "total_enrollments": len(self._enrollments),
            "active_by_method": dict(by_method),
            "by_status": dict(by_status),
            "users_enrolled": len({e.user_id for e in self._enrollments.values() if e.is_active}),
            "verifications_succeeded": self._stats["verifications_succeeded"],
            "verifications_failed": self._stats["verifications_failed"],
            "codes_sent": self._stats["codes_sent"],
            "rate_limited": self._stats["rate_limited"],
            "challenges_created": self._stats["challenges_created"],
            "challenges_completed": self._stats["challenges_completed"],
        }
