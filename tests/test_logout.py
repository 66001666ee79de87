"""Tests for logout and bulk session invalidation."""

from clinicauth.service.errors import AuthErrorKind


class TestLogout:
    async def test_logout_blacklists_and_clears(self, auth_service, alice, cache, memory_store):
        session = (await auth_service.login("alice", "P@ss1")).value

        result = await auth_service.logout(alice.id, session["accessToken"])

        assert result.value == {"message": "Logout successful"}
        assert await cache.is_session_blacklisted(session["sessionId"])
        assert await cache.get_session(alice.id) is None
        assert not memory_store.get_user_session(session["sessionId"]).is_open
        jti = auth_service.tokens.decode(session["refreshToken"])["jti"]
        assert (await cache.get_refresh_token(jti)).revoked

    async def test_logout_with_expired_token(self, auth_service, alice, cache, clock, settings):
        session = (await auth_service.login("alice", "P@ss1")).value
        clock.advance(settings.access_token_ttl_seconds + settings.jwt_leeway_seconds + 1)

        ctx = await auth_service.authenticate(
            f"Bearer {session['accessToken']}", allow_expired=True
        )
        result = await auth_service.logout(ctx.value.user_id, ctx.value.token)

        assert result.ok
        assert await cache.is_session_blacklisted(session["sessionId"])
        assert await cache.get_session(alice.id) is None

    async def test_blacklist_outlives_the_access_token(
        self, auth_service, alice, cache, clock, settings
    ):
        session = (await auth_service.login("alice", "P@ss1")).value
        await auth_service.logout(alice.id, session["accessToken"])

        clock.advance(settings.access_token_ttl_seconds + 1)

        assert await cache.is_session_blacklisted(session["sessionId"])

    async def test_stale_device_does_not_remove_newer_session(self, auth_service, alice, cache):
        first = (await auth_service.login("alice", "P@ss1")).value
        second = (await auth_service.login("alice", "P@ss1")).value

        await auth_service.logout(alice.id, first["accessToken"])

        assert (await cache.get_session(alice.id)).session_id == second["sessionId"]
        assert (await auth_service.authenticate(f"Bearer {second['accessToken']}")).ok

    async def test_token_of_another_user_is_rejected(self, auth_service, alice):
        session = (await auth_service.login("alice", "P@ss1")).value

        result = await auth_service.logout("someone-else", session["accessToken"])

        assert result.error.kind == AuthErrorKind.TOKEN_INVALID

    async def test_multi_session_logout_only_ends_one(self, make_service, alice, cache):
        service = make_service(multi_login_session_allowed=True)
        first = (await service.login("alice", "P@ss1")).value
        second = (await service.login("alice", "P@ss1")).value

        await service.logout(alice.id, first["accessToken"])

        assert await cache.get_session(alice.id, first["sessionId"]) is None
        assert await cache.get_session(alice.id, second["sessionId"]) is not None
        assert (await service.authenticate(f"Bearer {second['accessToken']}")).ok


class TestInvalidateAll:
    async def test_every_session_is_revoked(self, make_service, alice, cache):
        service = make_service(multi_login_session_allowed=True)
        sessions = [(await service.login("alice", "P@ss1")).value for _ in range(3)]

        count = await service.invalidate_all_user_sessions(alice.id)

        assert count == 3
        for session in sessions:
            assert await cache.is_session_blacklisted(session["sessionId"])
            check = await service.authenticate(f"Bearer {session['accessToken']}")
            assert check.error.kind == AuthErrorKind.TOKEN_REVOKED

    async def test_open_audit_rows_are_closed(self, auth_service, alice, memory_store):
        session = (await auth_service.login("alice", "P@ss1")).value

        await auth_service.invalidate_all_user_sessions(alice.id)

        assert not memory_store.get_user_session(session["sessionId"]).is_open

    async def test_no_sessions_is_zero(self, auth_service, alice):
        assert await auth_service.invalidate_all_user_sessions(alice.id) == 0
