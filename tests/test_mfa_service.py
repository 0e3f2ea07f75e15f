"""Tests for the MFA service."""

import asyncio
import logging
import re

import pyotp
import pytest

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
from mfa.models import ChallengeStatus, EnrollmentStatus, MFAMethod
from mfa.service import MFAService


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class CapturingDelivery:
    """Keeps every message so tests can read the code back."""

    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail

    async def deliver(self, channel, target, message, subject=None):
        if self.fail:
            raise ConnectionError("gateway down")
        self.messages.append((channel, target, message, subject))

    def last_code(self):
        return re.search(r"\b(\d{6})\b", self.messages[-1][2]).group(1)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def delivery():
    return CapturingDelivery()


@pytest.fixture
def build_service(clock, delivery, fernet_key):
    def _build(**overrides):
        return MFAService(MFASettings(**overrides), delivery=delivery, clock=clock,
                          encryption_key=fernet_key)
    return _build


@pytest.fixture
def service(build_service):
    return build_service()


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------

class TestEnrollment:
    @pytest.mark.asyncio
    async def test_unsupported_method(self, service):
        with pytest.raises(UnsupportedMethodError) as exc:
            await service.enroll("alice", "carrier_pigeon")
        assert exc.value.code == "MFA_METHOD_NOT_SUPPORTED"

    @pytest.mark.asyncio
    async def test_disabled_method(self, service):
        with pytest.raises(MethodDisabledError):
            await service.enroll("alice", "biometrics")

    @pytest.mark.asyncio
    async def test_already_enrolled(self, service):
        await service.enroll("alice", "sms")
        with pytest.raises(AlreadyEnrolledError):
            await service.enroll("alice", MFAMethod.SMS)

    @pytest.mark.asyncio
    async def test_totp_setup_data(self, service):
        enrollment = await service.enroll("alice", "totp")

        assert enrollment.status == EnrollmentStatus.ACTIVE
        setup = enrollment.setup_data
        assert setup["provisioning_uri"].startswith("otpauth://totp/")
        assert "issuer=CredLife" in setup["provisioning_uri"]
        assert setup["qr_code"].startswith("data:image/png;base64,")
        assert len(setup["manual_entry_key"]) == 32

    @pytest.mark.asyncio
    async def test_totp_secret_never_exposed(self, service):
        enrollment = await service.enroll("alice", "totp")
        secret = enrollment.setup_data["manual_entry_key"]

        stored = service.get_user_enrollments("alice")[0]
        assert stored.setup_data == {}
        assert stored.metadata["secret"] != secret
        assert "secret" not in stored.to_dict()["metadata"]

    @pytest.mark.asyncio
    async def test_qr_code_optional(self, build_service):
        service = build_service(totp_qr_code=False)
        enrollment = await service.enroll("alice", "totp")
        assert "qr_code" not in enrollment.setup_data

    @pytest.mark.asyncio
    async def test_pending_totp_requires_confirmation(self, build_service, clock):
        service = build_service(require_totp_confirmation=True)
        enrollment = await service.enroll("alice", "totp")
        assert enrollment.status == EnrollmentStatus.PENDING

        totp = pyotp.parse_uri(enrollment.setup_data["provisioning_uri"])
        with pytest.raises(NoActiveEnrollmentError):
            await service.verify("alice", "totp", totp.at(clock.now))

        confirmed = await service.confirm_enrollment(enrollment.id, totp.at(clock.now))
        assert confirmed.status == EnrollmentStatus.ACTIVE
        assert await service.verify("alice", "totp", totp.at(clock.now)) is True

    @pytest.mark.asyncio
    async def test_new_setup_replaces_pending(self, build_service):
        service = build_service(require_totp_confirmation=True)
        first = await service.enroll("alice", "totp")
        second = await service.enroll("alice", "totp")

        statuses = {e.id: e.status for e in service.get_user_enrollments("alice", include_inactive=True)}
        assert statuses[first.id] == EnrollmentStatus.REVOKED
        assert statuses[second.id] == EnrollmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_disable_and_reenroll(self, service):
        enrollment = await service.enroll("alice", "email")
        disabled = await service.disable_enrollment(enrollment.id)

        assert disabled.status == EnrollmentStatus.DISABLED
        assert "disabled_at" in disabled.metadata
        assert service.get_user_enrollments("alice") == []
        assert len(service.get_user_enrollments("alice", include_inactive=True)) == 1
        await service.enroll("alice", "email")

    @pytest.mark.asyncio
    async def test_deactivated_enrollment_cannot_change_again(self, service):
        enrollment = await service.enroll("alice", "email")
        await service.revoke_enrollment(enrollment.id)

        with pytest.raises(ValidationError):
            await service.disable_enrollment(enrollment.id)
        with pytest.raises(ValidationError):
            await service.revoke_enrollment(enrollment.id)

        assert enrollment.status == EnrollmentStatus.REVOKED
        assert "disabled_at" not in enrollment.metadata

    @pytest.mark.asyncio
    async def test_disable_twice_is_refused(self, service):
        enrollment = await service.enroll("alice", "sms")
        await service.disable_enrollment(enrollment.id)
        with pytest.raises(ValidationError):
            await service.disable_enrollment(enrollment.id)
        assert enrollment.status == EnrollmentStatus.DISABLED

    @pytest.mark.asyncio
    async def test_unknown_enrollment(self, service):
        with pytest.raises(EnrollmentNotFoundError):
            await service.revoke_enrollment("mfa_missing")

    @pytest.mark.asyncio
    async def test_platform_factor(self, build_service):
        service = build_service(enable_biometrics=True)
        enrollment = await service.enroll("alice", "biometrics",
                                          device_info={"name": "laptop", "credential_id": "cred-1"})
        assert enrollment.metadata["credential_id"] == "cred-1"
        assert await service.verify("alice", "biometrics", "signed-assertion") is True


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------

class TestTOTP:
    @pytest.mark.asyncio
    async def test_current_code_verifies(self, service, clock):
        enrollment = await service.enroll("alice", "totp")
        totp = pyotp.parse_uri(enrollment.setup_data["provisioning_uri"])

        assert await service.verify("alice", "totp", totp.at(clock.now)) is True
        stored = service.get_user_enrollments("alice")[0]
        assert stored.metadata["usage_count"] == 1
        assert stored.metadata["last_used"] is not None

    @pytest.mark.asyncio
    async def test_previous_step_accepted_within_window(self, service, clock):
        enrollment = await service.enroll("alice", "totp")
        totp = pyotp.parse_uri(enrollment.setup_data["provisioning_uri"])
        assert await service.verify("alice", "totp", totp.at(clock.now - 30)) is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["12345", "abcdef", ""])
    async def test_malformed_code_rejected(self, service, code):
        await service.enroll("alice", "totp")
        with pytest.raises(ValidationError) as exc:
            await service.verify("alice", "totp", code)
        assert exc.value.code == "MFA_INVALID_CODE"


# ---------------------------------------------------------------------------
# Backup codes
# ---------------------------------------------------------------------------

class TestBackupCodes:
    @pytest.mark.asyncio
    async def test_generated_codes(self, service):
        await service.enroll("alice", "backup_codes")
        codes = await service.generate_backup_codes("alice")

        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(len(c) == 8 for c in codes)

    @pytest.mark.asyncio
    async def test_code_is_single_use(self, service):
        await service.enroll("alice", "backup_codes")
        codes = await service.generate_backup_codes("alice")

        assert await service.verify("alice", "backup_codes", codes[0]) is True
        with pytest.raises(ValidationError):
            await service.verify("alice", "backup_codes", codes[0])

    @pytest.mark.asyncio
    async def test_concurrent_use_accepts_once(self, service):
        enrollment = await service.enroll("alice", "backup_codes")
        code = enrollment.setup_data["backup_codes"][0]

        results = await asyncio.gather(
            service.verify("alice", "backup_codes", code),
            service.verify("alice", "backup_codes", code),
            return_exceptions=True,
        )
        assert results.count(True) == 1
        assert sum(isinstance(r, ValidationError) for r in results) == 1

    @pytest.mark.asyncio
    async def test_input_normalized(self, service):
        enrollment = await service.enroll("alice", "backup_codes")
        code = enrollment.setup_data["backup_codes"][0]
        spaced = f" {code[:4].lower()} {code[4:].lower()} "
        assert await service.verify("alice", "backup_codes", spaced) is True

    @pytest.mark.asyncio
    async def test_regenerating_invalidates_old_codes(self, service, clock):
        enrollment = await service.enroll("alice", "backup_codes")
        old = enrollment.setup_data["backup_codes"]
        await service.generate_backup_codes("alice")

        with pytest.raises(ValidationError):
            await service.verify("alice", "backup_codes", old[0])

    @pytest.mark.asyncio
    async def test_codes_remaining_tracked(self, service):
        enrollment = await service.enroll("alice", "backup_codes")
        await service.verify("alice", "backup_codes", enrollment.setup_data["backup_codes"][0])
        assert service.get_user_enrollments("alice")[0].metadata["codes_remaining"] == 9

    @pytest.mark.asyncio
    async def test_disabled_enrollment_drops_codes(self, service):
        enrollment = await service.enroll("alice", "backup_codes")
        await service.disable_enrollment(enrollment.id)
        with pytest.raises(NoActiveEnrollmentError):
            await service.verify("alice", "backup_codes", enrollment.setup_data["backup_codes"][0])

    @pytest.mark.asyncio
    async def test_numeric_format(self, build_service):
        service = build_service(backup_code_format="numeric", backup_code_length=10, backup_code_count=4)
        enrollment = await service.enroll("alice", "backup_codes")
        codes = enrollment.setup_data["backup_codes"]
        assert len(codes) == 4
        assert all(c.isdigit() and len(c) == 10 for c in codes)


# ---------------------------------------------------------------------------
# SMS / email codes
# ---------------------------------------------------------------------------

class TestOutOfBandCodes:
    @pytest.mark.asyncio
    async def test_sms_roundtrip(self, service, delivery):
        await service.enroll("alice", "sms")
        await service.send_code("alice", "sms", "+1 555 123 4567")

        channel, target, message, subject = delivery.messages[-1]
        assert channel == "sms"
        assert subject is None
        assert await service.verify("alice", "sms", delivery.last_code()) is True

    @pytest.mark.asyncio
    async def test_email_message(self, service, delivery):
        await service.enroll("alice", "email")
        await service.send_code("alice", "email", "alice@example.com")

        _, _, message, subject = delivery.messages[-1]
        assert subject == "Your verification code"
        assert "5 minutes" in message

    @pytest.mark.asyncio
    async def test_code_expires(self, service, delivery, clock):
        await service.enroll("alice", "sms")
        await service.send_code("alice", "sms", "+15551234567")

        clock.now += 301
        with pytest.raises(ValidationError):
            await service.verify("alice", "sms", delivery.last_code())

    @pytest.mark.asyncio
    async def test_code_single_use(self, service, delivery):
        await service.enroll("alice", "sms")
        await service.send_code("alice", "sms", "+15551234567")
        code = delivery.last_code()

        assert await service.verify("alice", "sms", code) is True
        with pytest.raises(ValidationError):
            await service.verify("alice", "sms", code)

    @pytest.mark.asyncio
    async def test_send_rate_limited(self, service, clock):
        await service.enroll("alice", "sms")
        await service.send_code("alice", "sms", "+15551234567")

        with pytest.raises(RateLimitedError) as exc:
            await service.send_code("alice", "sms", "+15551234567")
        assert exc.value.retry_after == pytest.approx(12.0)

        clock.now += 12
        await service.send_code("alice", "sms", "+15551234567")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,target", [
        ("sms", "call me"),
        ("sms", ""),
        ("email", "not-an-address"),
    ])
    async def test_invalid_target(self, service, method, target):
        await service.enroll("alice", method)
        with pytest.raises(ValidationError):
            await service.send_code("alice", method, target)

    @pytest.mark.asyncio
    async def test_cannot_send_totp(self, service):
        with pytest.raises(ValidationError):
            await service.send_code("alice", "totp", "+15551234567")

    @pytest.mark.asyncio
    async def test_send_requires_enrollment(self, service):
        with pytest.raises(NoActiveEnrollmentError):
            await service.send_code("alice", "sms", "+15551234567")

    @pytest.mark.asyncio
    async def test_delivery_failure(self, clock, fernet_key):
        service = MFAService(MFASettings(), delivery=CapturingDelivery(fail=True),
                             clock=clock, encryption_key=fernet_key)
        await service.enroll("alice", "sms")

        with pytest.raises(DeliveryError):
            await service.send_code("alice", "sms", "+15551234567")
        assert service.get_statistics()["codes_sent"] == 0


# ---------------------------------------------------------------------------
# Verification throttling
# ---------------------------------------------------------------------------

class TestVerificationRateLimit:
    @pytest.mark.asyncio
    async def test_failed_attempt_throttles_next(self, service, clock):
        await service.enroll("alice", "backup_codes")

        with pytest.raises(ValidationError):
            await service.verify("alice", "backup_codes", "WRONG123")
        with pytest.raises(RateLimitedError) as exc:
            await service.verify("alice", "backup_codes", "WRONG123")
        assert exc.value.code == "MFA_RATE_LIMITED"

        clock.now += 13
        with pytest.raises(ValidationError):
            await service.verify("alice", "backup_codes", "WRONG123")

    @pytest.mark.asyncio
    async def test_limits_are_per_user(self, service):
        await service.enroll("alice", "backup_codes")
        bob = await service.enroll("bob", "backup_codes")

        with pytest.raises(ValidationError):
            await service.verify("alice", "backup_codes", "WRONG123")
        assert await service.verify("bob", "backup_codes", bob.setup_data["backup_codes"][0])

    @pytest.mark.asyncio
    async def test_verify_without_enrollment(self, service):
        with pytest.raises(NoActiveEnrollmentError):
            await service.verify("alice", "sms", "123456")


# ---------------------------------------------------------------------------
# Challenges and queries
# ---------------------------------------------------------------------------

class TestChallenges:
    @pytest.mark.asyncio
    async def test_challenge_completed_by_any_allowed_method(self, service):
        await service.enroll("alice", "totp")
        backup = await service.enroll("alice", "backup_codes")

        challenge = service.create_challenge("alice")
        assert challenge.allowed_methods == [MFAMethod.TOTP, MFAMethod.BACKUP_CODES]

        done = await service.verify_challenge(challenge.id, "backup_codes",
                                              backup.setup_data["backup_codes"][0])
        assert done.status == ChallengeStatus.COMPLETED
        assert done.completed_method == MFAMethod.BACKUP_CODES

        with pytest.raises(ValidationError) as exc:
            await service.verify_challenge(challenge.id, "backup_codes",
                                           backup.setup_data["backup_codes"][1])
        assert exc.value.code == "MFA_CHALLENGE_COMPLETED"

    @pytest.mark.asyncio
    async def test_challenge_expires(self, service, clock):
        backup = await service.enroll("alice", "backup_codes")
        challenge = service.create_challenge("alice")

        clock.now += 601
        with pytest.raises(ValidationError) as exc:
            await service.verify_challenge(challenge.id, "backup_codes",
                                           backup.setup_data["backup_codes"][0])
        assert exc.value.code == "MFA_CHALLENGE_EXPIRED"
        assert challenge.status == ChallengeStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_method_outside_challenge(self, service):
        await service.enroll("alice", "totp")
        backup = await service.enroll("alice", "backup_codes")
        challenge = service.create_challenge("alice", methods=["totp"])

        with pytest.raises(ValidationError):
            await service.verify_challenge(challenge.id, "backup_codes",
                                           backup.setup_data["backup_codes"][0])

    def test_challenge_needs_enrollment(self, service):
        with pytest.raises(NoActiveEnrollmentError):
            service.create_challenge("alice")

    @pytest.mark.asyncio
    async def test_unknown_challenge(self, service):
        with pytest.raises(ValidationError):
            await service.verify_challenge("chl_missing", "totp", "123456")


class TestQueries:
    @pytest.mark.asyncio
    async def test_available_methods_in_priority_order(self, service):
        await service.enroll("alice", "sms")
        methods = service.get_available_methods("alice")

        assert [m["method"] for m in methods] == ["totp", "sms", "email", "backup_codes"]
        sms = next(m for m in methods if m["method"] == "sms")
        assert sms["enrolled"] is True
        assert sms["requires_setup"] is False

    @pytest.mark.asyncio
    async def test_statistics(self, service):
        await service.enroll("alice", "sms")
        enrollment = await service.enroll("bob", "backup_codes")
        await service.verify("bob", "backup_codes", enrollment.setup_data["backup_codes"][0])
        await service.revoke_enrollment(enrollment.id)

        stats = service.get_statistics()
        assert stats["total_enrollments"] == 2
        assert stats["active_by_method"] == {"sms": 1}
        assert stats["by_status"] == {"active": 1, "revoked": 1}
        assert stats["users_enrolled"] == 1
        assert stats["verifications_succeeded"] == 1

    def test_ephemeral_key_warning(self, caplog, clock):
        with caplog.at_level(logging.WARNING, logger="mfa.service"):
            MFAService(MFASettings(), clock=clock)
        assert "MFA_ENCRYPTION_KEY" in caplog.text
