"""End-to-end flows through the auth facade, including the audit trail."""

from datetime import timedelta

import pytest

from identityd.service.auth import AuthService
from identityd.service.errors import (
    DuplicateError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    LockedError,
)
from identityd.service.two_factor import generate_totp


class ExplodingSink:
    def record(self, outcome):
        raise RuntimeError("audit backend down")


async def _register_alice(engine):
    return await engine.auth.register("alice", "alice@x.com", "Passw0rd!")


class TestSessionLifecycle:
    async def test_register_login_refresh_rotate(self, engine):
        user = await _register_alice(engine)
        await engine.auth.login("alice", "Passw0rd!")

        result = await engine.auth.authenticate(
            "alice", "Passw0rd!", "web", ["read"], ip_address="10.0.0.1", user_agent="agent"
        )
        assert not result.requires_two_factor
        original = result.refresh_token
        assert original.expires_at == engine.clock.now + timedelta(days=30)
        assert engine.auth.validate_access_token(result.access_token).user_id == user.id

        engine.clock.advance(days=24)
        rotated = await engine.auth.rotate_refresh_token(original.token, "10.0.0.2")

        assert rotated.refresh_token is not None
        assert rotated.refresh_token.token != original.token
        assert engine.refresh_tokens.require_usable(original.token).id == original.id
        active = await engine.auth.list_active_refresh_tokens(user.id)
        assert {t.id for t in active} == {original.id, rotated.refresh_token.id}

        assert engine.audit.actions() == [
            "USER_REGISTERED",
            "LOGIN_SUCCESS",
            "LOGIN_SUCCESS",
            "ACCESS_TOKEN_VALIDATED",
            "TOKEN_REFRESHED",
        ]
        assert rotated.client_id == "web"
        assert engine.audit.outcomes[-1].description == "rotated"
        assert engine.audit.outcomes[-1].client_id == "web"

    async def test_logout_everywhere(self, engine):
        user = await _register_alice(engine)
        first = await engine.auth.issue_refresh_token(user, "web")
        await engine.auth.issue_refresh_token(user, "mobile")

        assert await engine.auth.revoke_refresh_token(first.token, "logout") is True
        assert await engine.auth.revoke_refresh_token(first.token) is False
        assert await engine.auth.revoke_all_refresh_tokens(user.id) == 1

        with pytest.raises(InvalidOrExpiredTokenError):
            await engine.auth.rotate_refresh_token(first.token)
        assert engine.audit.actions()[-2:] == ["TOKENS_REVOKED_ALL", "TOKEN_REFRESH_FAILED"]
        assert engine.audit.outcomes[-1].success is False

    async def test_revoke_audit_names_owner_and_client(self, engine):
        user = await _register_alice(engine)
        token = await engine.auth.issue_refresh_token(user, "mobile")

        await engine.auth.revoke_refresh_token(token.token, "logout")
        revoked = engine.audit.outcomes[-1]
        await engine.auth.revoke_refresh_token(token.token, "logout")
        noop = engine.audit.outcomes[-1]

        assert (revoked.action, revoked.user_id, revoked.client_id) == ("TOKEN_REVOKED", user.id, "mobile")
        assert revoked.description == "logout"
        assert (noop.user_id, noop.client_id, noop.description) == (None, None, "no-op")

    async def test_access_token_facade(self, engine):
        user = await _register_alice(engine)
        token = engine.auth.issue_access_token(user, ["read"], "cli")

        assert engine.auth.validate_access_token(token).scopes == ["read"]
        with pytest.raises(InvalidTokenError):
            engine.auth.validate_access_token(token + "x")
        assert engine.audit.actions()[-3:] == [
            "ACCESS_TOKEN_ISSUED",
            "ACCESS_TOKEN_VALIDATED",
            "ACCESS_TOKEN_INVALID",
        ]


class TestRegistrationAudit:
    async def test_duplicate_registration_is_audited(self, engine):
        await _register_alice(engine)

        with pytest.raises(DuplicateError):
            await engine.auth.register("alice", "other@x.com", "Passw0rd!", ip_address="10.0.0.9")

        failed = engine.audit.outcomes[-1]
        assert failed.action == "USER_REGISTER_FAILED"
        assert failed.success is False
        assert failed.ip_address == "10.0.0.9"
        assert failed.error_message == "Username or email already exists"

    async def test_email_verification_flow(self, engine):
        await _register_alice(engine)
        await engine.dispatch.wait_for_pending()
        _, token = engine.email.verifications[0]

        assert await engine.auth.verify_email(token) is True
        assert await engine.auth.verify_email(token) is False
        assert engine.audit.actions()[-2:] == ["EMAIL_VERIFIED", "EMAIL_VERIFY_FAILED"]
        assert engine.store.get_user_by_username("alice").is_email_verified is True


class TestLoginAudit:
    async def test_unknown_user_is_login_failed(self, engine):
        with pytest.raises(InvalidCredentialsError):
            await engine.auth.login("nobody", "Passw0rd!")

        outcome = engine.audit.outcomes[-1]
        assert outcome.action == "LOGIN_FAILED"
        assert outcome.user_id is None
        assert outcome.description == "unknown_user"

    async def test_lockout_is_audited_once(self, engine):
        user = await _register_alice(engine)

        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await engine.auth.login("alice", "wrong-password")
        with pytest.raises(LockedError):
            await engine.auth.login("alice", "Passw0rd!")

        actions = engine.audit.actions()
        assert actions[1:] == ["LOGIN_FAILED"] * 4 + ["ACCOUNT_LOCKED", "LOGIN_FAILED"]
        locked = engine.audit.outcomes[5]
        assert locked.user_id == user.id
        assert engine.audit.outcomes[-1].description == "Account locked"

        engine.clock.advance(minutes=15)
        await engine.auth.login("alice", "Passw0rd!")
        assert engine.audit.actions()[-1] == "LOGIN_SUCCESS"

    async def test_failing_sink_does_not_fail_operations(self, engine):
        auth = AuthService(
            engine.credentials,
            engine.two_factor,
            engine.access_tokens,
            engine.refresh_tokens,
            audit_sink=ExplodingSink(),
        )

        user = await auth.register("alice", "alice@x.com", "Passw0rd!")
        result = await auth.authenticate("alice", "Passw0rd!", "web")
        with pytest.raises(InvalidCredentialsError):
            await auth.login("alice", "nope-nope")

        assert result.user.id == user.id
        assert result.refresh_token is not None


class TestTwoFactorLogin:
    async def _enrolled(self, engine):
        user = await _register_alice(engine)
        secret, _ = await engine.auth.setup_persistent_secret(user)
        return user, secret

    async def test_authenticate_requires_second_factor(self, engine):
        user, secret = await self._enrolled(engine)

        pending = await engine.auth.authenticate("alice", "Passw0rd!", "web", ["read"])

        assert pending.requires_two_factor
        assert pending.access_token is None and pending.refresh_token is None
        assert engine.audit.actions()[-1] == "2FA_REQUIRED"
        assert await engine.auth.list_active_refresh_tokens(user.id) == []

        code = generate_totp(secret, engine.clock.now.timestamp())
        done = await engine.auth.complete_two_factor_login(
            pending.two_factor_token, code, "web", ["read"], ip_address="10.0.0.1"
        )

        claims = engine.auth.validate_access_token(done.access_token)
        assert claims.user_id == user.id
        assert claims.scopes == ["read"]
        assert done.refresh_token.ip_address == "10.0.0.1"
        assert engine.audit.actions()[-2] == "LOGIN_SUCCESS"

    async def test_wrong_code_is_audited(self, engine):
        user, secret = await self._enrolled(engine)
        pending = await engine.auth.authenticate("alice", "Passw0rd!", "web")
        correct = generate_totp(secret, engine.clock.now.timestamp())
        wrong = "000000" if correct != "000000" else "111111"
        challenge = engine.store.get_most_recent_pending_challenge(
            user.id, "totp", now=engine.clock.now
        )
        if challenge.code == wrong:
            wrong = "222222"

        with pytest.raises(InvalidCodeError):
            await engine.auth.complete_two_factor_login(pending.two_factor_token, wrong, "web")

        failed = engine.audit.outcomes[-1]
        assert failed.action == "2FA_FAILED"
        assert failed.user_id == user.id

    async def test_handle_is_bound_to_its_lifetime(self, engine):
        _, secret = await self._enrolled(engine)
        pending = await engine.auth.authenticate("alice", "Passw0rd!", "web")

        engine.clock.advance(minutes=11)
        with pytest.raises(InvalidTokenError):
            await engine.auth.complete_two_factor_login(
                pending.two_factor_token,
                generate_totp(secret, engine.clock.now.timestamp()),
                "web",
            )
        assert engine.audit.outcomes[-1].user_id is None

    async def test_email_second_factor(self, engine):
        user = await _register_alice(engine)

        await engine.auth.initiate_two_factor(user, "email")
        await engine.dispatch.wait_for_pending()
        _, code = engine.email.codes[0]

        assert await engine.auth.verify_two_factor(user, code, "email") is True
        assert engine.audit.actions()[-2:] == ["2FA_INITIATED", "2FA_VERIFIED"]
        assert engine.audit.outcomes[-1].description == "email"
