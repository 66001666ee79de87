"""Unit tests for the auth service.

Tests for:
- Password login and account lock handling
- OTP login, including the fixed-OTP demo bypass
- Single-session exclusivity and multi-session mode
- Bearer authentication against the revocation blacklist
- Best-effort steps that must not fail a login
"""

import asyncio
import threading
from datetime import timedelta

import pytest

from clinicauth.service.auth import GENERIC_OTP_MESSAGE, LOCKED_MESSAGE, RequestContext
from clinicauth.service.errors import AuthErrorKind
from clinicauth.service.mobile import MobileAppSettings
from clinicauth.storage.models import (
    Clinic,
    Membership,
    OtpPurpose,
    Platform,
    RoleRef,
    Tenant,
    utcnow,
)


def bearer(session: dict) -> str:
    return f"Bearer {session['accessToken']}"


class TestPasswordLogin:
    async def test_login_returns_session_payload(self, auth_service, alice, settings):
        result = await auth_service.login("alice", "P@ss1")

        assert result.ok
        session = result.value
        assert session["accessToken"] and session["refreshToken"]
        assert session["sessionId"]
        assert session["expiresIn"] == settings.access_token_ttl_seconds
        assert session["user"]["userId"] == "alice"
        assert session["user"]["roles"][0]["roleName"] == "Doctor"
        assert "promoterOrganizationId" not in session

    @pytest.mark.parametrize("identifier", ["alice", "ALICE@example.com", "9876543210"])
    async def test_any_identifier_logs_in(self, auth_service, alice, identifier):
        result = await auth_service.login(identifier, "P@ss1")

        assert result.ok
        assert result.value["user"]["id"] == alice.id

    async def test_wrong_password_is_invalid_credentials(self, auth_service, alice):
        result = await auth_service.login("alice", "wrong")

        assert not result.ok
        assert result.error.kind == AuthErrorKind.INVALID_CREDENTIALS
        assert result.error.http_status == 401

    async def test_unknown_user_looks_like_wrong_password(self, auth_service):
        result = await auth_service.login("mallory", "P@ss1")

        assert result.error.kind == AuthErrorKind.INVALID_CREDENTIALS

    async def test_locked_account_is_forbidden(self, auth_service, alice, memory_store):
        memory_store.set_locked(alice.id, True)

        result = await auth_service.login("alice", "P@ss1")

        assert result.error.kind == AuthErrorKind.ACCOUNT_LOCKED
        assert result.error.message == LOCKED_MESSAGE
        assert result.error.http_status == 403

    async def test_lock_checked_before_password(self, auth_service, alice, memory_store):
        memory_store.set_locked(alice.id, True)

        result = await auth_service.login("alice", "wrong")

        assert result.error.kind == AuthErrorKind.ACCOUNT_LOCKED
        assert result.error.http_status == 403

    async def test_elapsed_temporary_lock_allows_login(self, auth_service, alice, memory_store):
        memory_store.set_locked(alice.id, True, locked_until=utcnow() - timedelta(minutes=1))

        result = await auth_service.login("alice", "P@ss1")

        assert result.ok


class TestSessionClaims:
    async def test_access_token_claims(self, auth_service, alice, memory_store):
        memory_store.add_tenant(Tenant(id="public", name="Public", slug="public"))
        session = (await auth_service.login("alice", "P@ss1")).value

        claims = auth_service.tokens.decode(session["accessToken"])

        assert claims["sub"] == alice.id
        assert claims["sid"] == session["sessionId"]
        assert claims["role_names"] == ["Doctor"]
        assert claims["tenant_id"] == "public"
        assert session["user"]["tenant"]["name"] == "Public"

    async def test_privileged_user_gets_promoter_organization(
        self, auth_service, memory_store
    ):
        password_hash, algo = auth_service.hasher.hash("Adm1n!pass")
        memory_store.create_user(
            "admin",
            password_hash=password_hash,
            password_algo=algo,
            roles=[RoleRef(role_id="role-admin", role_name="Admin")],
        )
        memory_store.set_root_organization("org-root")

        session = (await auth_service.login("admin", "Adm1n!pass")).value

        assert session["promoterOrganizationId"] == "org-root"
        assert "organizationMemberships" not in session["user"]
        claims = auth_service.tokens.decode(session["accessToken"])
        assert claims["promoter_organization_id"] == "org-root"

    async def test_regular_user_gets_memberships_and_clinics(
        self, auth_service, alice, memory_store
    ):
        memory_store.add_membership(
            "person-alice", Membership("org-1", "North Clinic", "NC", "DOCTOR")
        )
        memory_store.add_clinic(Clinic(id="clinic-1", name="North Clinic"))
        memory_store.users[alice.id].clinic_ids = ["clinic-1"]

        session = (await auth_service.login("alice", "P@ss1")).value

        user = session["user"]
        assert user["organizationMemberships"][0]["organizationName"] == "North Clinic"
        assert user["clinicId"] == "clinic-1"
        assert user["clinics"][0]["name"] == "North Clinic"

    async def test_failed_supplementary_lookup_does_not_fail_login(
        self, auth_service, alice, memory_store, monkeypatch
    ):
        def broken(*args, **kwargs):
            raise RuntimeError("tenant table unavailable")

        monkeypatch.setattr(memory_store, "get_tenant", broken)
        monkeypatch.setattr(memory_store, "create_user_session", broken)

        result = await auth_service.login("alice", "P@ss1")

        assert result.ok
        assert "tenant" not in result.value["user"]

    async def test_login_opens_audit_row(self, auth_service, alice, memory_store):
        ctx = RequestContext(request_id="req-1", ip_addr="10.0.0.1", user_agent="pytest")
        session = (await auth_service.login("alice", "P@ss1", ctx=ctx)).value

        row = memory_store.get_user_session(session["sessionId"])

        assert row.is_open
        assert row.ip_addr == "10.0.0.1"
        assert row.user_agent == "pytest"


class TestSingleSession:
    """A new login displaces the previous session for the same user."""

    async def test_second_login_evicts_first(self, auth_service, alice, cache):
        first = (await auth_service.login("alice", "P@ss1")).value
        second = (await auth_service.login("alice", "P@ss1")).value

        assert await cache.is_session_blacklisted(first["sessionId"])
        assert (await cache.get_session(alice.id)).session_id == second["sessionId"]

        old = await auth_service.authenticate(bearer(first))
        new = await auth_service.authenticate(bearer(second))
        assert old.error.kind == AuthErrorKind.TOKEN_REVOKED
        assert new.ok

    async def test_evicted_refresh_token_is_revoked(self, auth_service, alice, cache):
        first = (await auth_service.login("alice", "P@ss1")).value
        await auth_service.login("alice", "P@ss1")

        jti = auth_service.tokens.decode(first["refreshToken"])["jti"]
        assert (await cache.get_refresh_token(jti)).revoked

        result = await auth_service.refresh_tokens(first["refreshToken"])
        assert result.error.kind == AuthErrorKind.TOKEN_REVOKED

    async def test_evicted_audit_row_is_closed(self, auth_service, alice, memory_store):
        first = (await auth_service.login("alice", "P@ss1")).value
        await auth_service.login("alice", "P@ss1")

        assert not memory_store.get_user_session(first["sessionId"]).is_open

    def test_concurrent_logins_leave_one_live_session(self, auth_service, alice, cache):
        barrier = threading.Barrier(2)
        sessions = []
        sessions_lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            session = asyncio.run(auth_service.login("alice", "P@ss1")).value
            with sessions_lock:
                sessions.append(session)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        live = [
            s["sessionId"]
            for s in sessions
            if not asyncio.run(cache.is_session_blacklisted(s["sessionId"]))
        ]
        session_keys = [key for key in cache._values if key.startswith("user:session:")]
        assert len(sessions) == 2
        assert len(live) == 1
        assert session_keys == [f"user:session:{alice.id}"]
        assert asyncio.run(cache.get_session(alice.id)).session_id == live[0]


class TestMultiSession:
    async def test_sessions_coexist(self, make_service, alice, cache):
        service = make_service(multi_login_session_allowed=True)

        first = (await service.login("alice", "P@ss1")).value
        second = (await service.login("alice", "P@ss1")).value

        assert (await service.authenticate(bearer(first))).ok
        assert (await service.authenticate(bearer(second))).ok
        assert await cache.get_session(alice.id, first["sessionId"]) is not None
        assert await cache.get_session(alice.id, second["sessionId"]) is not None


class TestAuthenticate:
    async def test_missing_or_malformed_header(self, auth_service):
        for header in (None, "", "Basic abc", "Bearer "):
            result = await auth_service.authenticate(header)
            assert result.error.kind == AuthErrorKind.TOKEN_INVALID

    async def test_context_carries_claims(self, auth_service, alice):
        session = (await auth_service.login("alice", "P@ss1")).value

        ctx = (await auth_service.authenticate(bearer(session))).value

        assert ctx.user_id == alice.id
        assert ctx.session_id == session["sessionId"]
        assert ctx.role_names == ["Doctor"]
        assert ctx.token == session["accessToken"]

    async def test_expired_token_rejected_unless_allowed(
        self, auth_service, alice, clock, settings
    ):
        session = (await auth_service.login("alice", "P@ss1")).value
        clock.advance(settings.access_token_ttl_seconds + settings.jwt_leeway_seconds + 1)

        strict = await auth_service.authenticate(bearer(session))
        lenient = await auth_service.authenticate(bearer(session), allow_expired=True)

        assert strict.error.kind == AuthErrorKind.TOKEN_EXPIRED
        assert lenient.ok

    async def test_refresh_token_is_not_a_bearer_token(self, auth_service, alice):
        session = (await auth_service.login("alice", "P@ss1")).value

        result = await auth_service.authenticate(f"Bearer {session['refreshToken']}")

        assert result.error.kind == AuthErrorKind.TOKEN_INVALID

    async def test_blacklist_check_fails_closed(self, auth_service, alice, cache, monkeypatch):
        session = (await auth_service.login("alice", "P@ss1")).value

        async def unavailable(session_id):
            raise ConnectionError("cache down")

        monkeypatch.setattr(cache, "is_session_blacklisted", unavailable)

        result = await auth_service.authenticate(bearer(session))

        assert result.error.kind == AuthErrorKind.TOKEN_REVOKED


class TestOtpLogin:
    async def test_generate_then_verify_logs_in(self, auth_service, alice, cache):
        sent = await auth_service.generate_otp("9876543210")
        code = (await cache.get_otp(OtpPurpose.LOGIN, "9876543210")).code

        result = await auth_service.verify_otp_and_login("9876543210", code)

        assert sent.value["success"] is True
        assert sent.value["otpExpiry"] == auth_service.settings.otp_expiry_seconds
        assert result.ok
        assert result.value["user"]["id"] == alice.id

    async def test_unknown_identifier_gets_generic_message(self, auth_service, cache):
        result = await auth_service.generate_otp("0000000000")

        assert result.value["message"] == GENERIC_OTP_MESSAGE
        assert await cache.get_otp(OtpPurpose.LOGIN, "0000000000") is None

    async def test_locked_account_gets_generic_message(self, auth_service, alice, memory_store):
        memory_store.set_locked(alice.id, True)

        result = await auth_service.generate_otp("9876543210")

        assert result.value["message"] == GENERIC_OTP_MESSAGE

    async def test_otp_error_kinds(self, auth_service, alice, clock, settings):
        missing = await auth_service.verify_otp_and_login("9876543210", "123456")
        await auth_service.generate_otp("9876543210")
        wrong = await auth_service.verify_otp_and_login("9876543210", "000000000")
        clock.advance(settings.otp_expiry_seconds + 1)
        expired = await auth_service.verify_otp_and_login("9876543210", "000000000")

        assert missing.error.kind == AuthErrorKind.OTP_NOT_FOUND
        assert missing.error.http_status == 404
        assert wrong.error.kind == AuthErrorKind.OTP_INVALID
        assert wrong.error.http_status == 400
        assert expired.error.kind == AuthErrorKind.OTP_EXPIRED
        assert expired.error.http_status == 410

    async def test_locked_after_valid_otp(self, auth_service, alice, cache, memory_store):
        await auth_service.generate_otp("9876543210")
        code = (await cache.get_otp(OtpPurpose.LOGIN, "9876543210")).code
        memory_store.set_locked(alice.id, True)

        result = await auth_service.verify_otp_and_login("9876543210", code)

        assert result.error.kind == AuthErrorKind.ACCOUNT_LOCKED

    async def test_mobile_settings_bind_an_app_instance(
        self, auth_service, alice, cache, memory_store
    ):
        await auth_service.generate_otp("9876543210")
        code = (await cache.get_otp(OtpPurpose.LOGIN, "9876543210")).code
        mobile = MobileAppSettings(
            app_name="clinic-app", platform=Platform.ANDROID, fcm_id="fcm-1", version="2.0.0"
        )

        session = (await auth_service.verify_otp_and_login("9876543210", code, mobile)).value

        instance = memory_store.get_mobile_instance(session["appInstanceId"])
        assert instance.user_id == alice.id
        claims = auth_service.tokens.decode(session["accessToken"])
        assert claims["app_instance_id"] == session["appInstanceId"]


class TestFixedOtpBypass:
    """Demo identifiers configured through FIXED_OTP_IDENTIFIERS."""

    @pytest.fixture
    def demo_user(self, memory_store):
        return memory_store.create_user("demo", mobile_number="9921125771")

    @pytest.fixture
    def bypass_service(self, make_service):
        return make_service(fixed_otp_identifiers="9921125771", fixed_otp_value="1234")

    async def test_generate_stores_nothing(self, bypass_service, demo_user, cache):
        result = await bypass_service.generate_otp("9921125771")

        assert result.value["success"] is True
        assert await cache.get_otp(OtpPurpose.LOGIN, "9921125771") is None

    async def test_fixed_code_logs_in(self, bypass_service, demo_user):
        result = await bypass_service.verify_otp_and_login("9921125771", "1234")

        assert result.ok
        assert result.value["user"]["id"] == demo_user.id

    async def test_fixed_code_rejected_without_configuration(self, auth_service, demo_user):
        result = await auth_service.verify_otp_and_login("9921125771", "1234")

        assert result.error.kind == AuthErrorKind.OTP_NOT_FOUND
