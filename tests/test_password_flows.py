"""Tests for forgot/reset/change password flows."""

import pytest

from clinicauth.service.errors import AuthErrorKind
from clinicauth.storage.models import OtpPurpose, RoleRef


@pytest.fixture
def coordinator(memory_store, auth_service):
    password_hash, algo = auth_service.hasher.hash("Old!Pass1")
    return memory_store.create_user(
        "coord",
        email="coord@example.com",
        mobile_number="9000000001",
        password_hash=password_hash,
        password_algo=algo,
        roles=[RoleRef(role_id="role-coord", role_name="Co-ordinator")],
    )


async def _reset_code(cache, identifier):
    record = await cache.get_otp(OtpPurpose.PASSWORD_RESET, identifier)
    return record.code if record else None


class TestForgotPassword:
    async def test_sends_otp_to_allowed_role(self, auth_service, coordinator, cache):
        result = await auth_service.forgot_password("coord@example.com")

        assert result.value["success"] is True
        assert await _reset_code(cache, "coord@example.com")

    async def test_unknown_identifier(self, auth_service):
        result = await auth_service.forgot_password("ghost@example.com")

        assert result.error.kind == AuthErrorKind.NOT_FOUND

    async def test_role_not_allowed(self, auth_service, alice):
        result = await auth_service.forgot_password("alice@example.com")

        assert result.error.kind == AuthErrorKind.FORBIDDEN
        assert result.error.http_status == 403

    async def test_locked_account(self, auth_service, coordinator, memory_store):
        memory_store.set_locked(coordinator.id, True)

        result = await auth_service.forgot_password("coord@example.com")

        assert result.error.kind == AuthErrorKind.ACCOUNT_LOCKED


class TestVerifyResetOtp:
    async def test_check_does_not_consume(self, auth_service, coordinator, cache):
        await auth_service.forgot_password("coord@example.com")
        code = await _reset_code(cache, "coord@example.com")

        result = await auth_service.verify_otp_for_password_reset("coord@example.com", code)

        assert result.value == {"isValid": True, "errorType": None}
        assert await _reset_code(cache, "coord@example.com") == code

    async def test_wrong_or_missing_code_is_unauthorized(self, auth_service, coordinator):
        missing = await auth_service.verify_otp_for_password_reset("coord@example.com", "1")
        await auth_service.forgot_password("coord@example.com")
        wrong = await auth_service.verify_otp_for_password_reset("coord@example.com", "1")

        for result in (missing, wrong):
            assert result.error.message == "Invalid OTP"
            assert result.error.http_status == 401
        assert missing.error.kind == AuthErrorKind.OTP_NOT_FOUND
        assert wrong.error.kind == AuthErrorKind.OTP_INVALID

    async def test_expired_code_is_gone(self, auth_service, coordinator, clock, settings):
        await auth_service.forgot_password("coord@example.com")
        clock.advance(settings.otp_expiry_seconds + 1)

        result = await auth_service.verify_otp_for_password_reset("coord@example.com", "1")

        assert result.error.http_status == 410


class TestResetPassword:
    async def test_reset_changes_password_and_ends_sessions(
        self, auth_service, coordinator, cache
    ):
        session = (await auth_service.login("coord", "Old!Pass1")).value
        await auth_service.forgot_password("coord@example.com")
        code = await _reset_code(cache, "coord@example.com")

        result = await auth_service.reset_password("coord@example.com", code, "New!Pass2")

        assert result.ok
        assert (await auth_service.login("coord", "New!Pass2")).ok
        assert (await auth_service.login("coord", "Old!Pass1")).error.kind == (
            AuthErrorKind.INVALID_CREDENTIALS
        )
        assert await cache.is_session_blacklisted(session["sessionId"])

    async def test_code_is_consumed(self, auth_service, coordinator, cache):
        await auth_service.forgot_password("coord@example.com")
        code = await _reset_code(cache, "coord@example.com")
        await auth_service.reset_password("coord@example.com", code, "New!Pass2")

        again = await auth_service.reset_password("coord@example.com", code, "New!Pass3")

        assert again.error.kind == AuthErrorKind.OTP_NOT_FOUND

    async def test_unknown_user_gets_generic_success(self, auth_service):
        result = await auth_service.reset_password("ghost@example.com", "123456", "New!Pass2")

        assert result.value == {"message": "Password reset successful"}

    async def test_wrong_code(self, auth_service, coordinator):
        await auth_service.forgot_password("coord@example.com")

        result = await auth_service.reset_password("coord@example.com", "1", "New!Pass2")

        assert result.error.kind == AuthErrorKind.OTP_INVALID


class TestChangePassword:
    async def test_change_requires_current_password(self, auth_service, alice):
        result = await auth_service.change_password(alice.id, "wrong", "N3w!Password")

        assert result.error.kind == AuthErrorKind.VALIDATION
        assert result.error.message == "Current password is incorrect"

    async def test_new_password_must_differ(self, auth_service, alice):
        result = await auth_service.change_password(alice.id, "P@ss1", "P@ss1")

        assert result.error.kind == AuthErrorKind.VALIDATION

    async def test_change_invalidates_sessions(self, auth_service, alice, cache):
        session = (await auth_service.login("alice", "P@ss1")).value

        result = await auth_service.change_password(alice.id, "P@ss1", "N3w!Password")

        assert result.ok
        assert await cache.is_session_blacklisted(session["sessionId"])
        assert (await auth_service.login("alice", "N3w!Password")).ok

    async def test_first_time_setup_skips_current_check(self, auth_service, memory_store):
        user = memory_store.create_user("fresh", email="fresh@example.com")

        result = await auth_service.change_password(user.id, "", "N3w!Password")

        assert result.ok
        assert (await auth_service.login("fresh", "N3w!Password")).ok

    async def test_unknown_user(self, auth_service):
        result = await auth_service.change_password("missing", "x", "N3w!Password")

        assert result.error.kind == AuthErrorKind.NOT_FOUND


class TestResendOtp:
    async def test_resend_replaces_login_code(self, auth_service, alice, cache):
        await auth_service.generate_otp("9876543210")
        first = (await cache.get_otp(OtpPurpose.LOGIN, "9876543210")).code

        result = await auth_service.resend_otp("9876543210", purpose=OtpPurpose.LOGIN)
        second = (await cache.get_otp(OtpPurpose.LOGIN, "9876543210")).code

        assert result.value["message"] == "OTP resent successfully"
        assert (await auth_service.verify_otp_and_login("9876543210", second)).ok
        stale = await auth_service.verify_otp_and_login("9876543210", first)
        assert not stale.ok

    async def test_resend_reset_code_checks_role(self, auth_service, alice):
        result = await auth_service.resend_otp(
            "alice@example.com", purpose=OtpPurpose.PASSWORD_RESET
        )

        assert result.error.kind == AuthErrorKind.FORBIDDEN

    async def test_resend_for_unknown_identifier_is_generic(self, auth_service):
        result = await auth_service.resend_otp("ghost@example.com")

        assert result.value["success"] is True
