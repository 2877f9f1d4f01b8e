"""Tests for refresh-token issue, rotation and revocation."""

from datetime import timedelta

import pytest

from identityd.service.errors import InvalidOrExpiredTokenError, UserNotFoundError
from identityd.storage.models import User


@pytest.fixture
def user(store):
    return store.insert_user(User.new("alice", "alice@x.com", "hash"))


class TestIssue:
    async def test_issue_sets_thirty_day_expiry(self, engine, user):
        token = await engine.refresh_tokens.issue(user, "web", "10.0.0.1", "pytest-agent")

        assert token.expires_at == engine.clock.now + timedelta(days=30)
        assert token.ip_address == "10.0.0.1"
        assert token.user_agent == "pytest-agent"
        assert len(token.token) >= 80
        assert engine.refresh_tokens.is_usable(token)

    async def test_tokens_are_unique(self, engine, user):
        values = {(await engine.refresh_tokens.issue(user, "web")).token for _ in range(20)}
        assert len(values) == 20

    async def test_issue_for_missing_user(self, engine):
        ghost = User.new("ghost", "ghost@x.com", "hash")
        with pytest.raises(UserNotFoundError):
            await engine.refresh_tokens.issue(ghost, "web")


class TestUsability:
    async def test_expired_token_is_unusable(self, engine, user):
        token = await engine.refresh_tokens.issue(user, "web")

        engine.clock.advance(days=30)
        assert engine.refresh_tokens.is_usable(token) is False
        with pytest.raises(InvalidOrExpiredTokenError):
            engine.refresh_tokens.require_usable(token.token)
        with pytest.raises(InvalidOrExpiredTokenError):
            await engine.refresh_tokens.rotate(token.token)

    async def test_unknown_token(self, engine):
        with pytest.raises(InvalidOrExpiredTokenError):
            await engine.refresh_tokens.rotate("not-a-token")
        with pytest.raises(InvalidOrExpiredTokenError):
            engine.refresh_tokens.require_usable("")


class TestRevoke:
    async def test_revoked_token_is_rejected(self, engine, user):
        token = await engine.refresh_tokens.issue(user, "web")

        assert await engine.refresh_tokens.revoke(token.token) is True

        with pytest.raises(InvalidOrExpiredTokenError):
            engine.refresh_tokens.require_usable(token.token)
        with pytest.raises(InvalidOrExpiredTokenError):
            await engine.refresh_tokens.rotate(token.token)

        stored = engine.store.list_refresh_tokens_for_user(user.id)[0]
        assert stored.revoked_at == engine.clock.now
        assert stored.revoke_reason == "Revoked by user"

    async def test_revoke_is_idempotent(self, engine, user):
        token = await engine.refresh_tokens.issue(user, "web")
        await engine.refresh_tokens.revoke(token.token, "logout")
        engine.clock.advance(minutes=5)

        assert await engine.refresh_tokens.revoke(token.token, "again") is False
        assert await engine.refresh_tokens.revoke("unknown-token") is False

        stored = engine.store.list_refresh_tokens_for_user(user.id)[0]
        assert stored.revoke_reason == "logout"
        assert stored.revoked_at == engine.clock.now - timedelta(minutes=5)

    async def test_revoke_token_returns_revoked_row(self, engine, user):
        token = await engine.refresh_tokens.issue(user, "mobile")

        revoked = await engine.refresh_tokens.revoke_token(token.token, "logout")

        assert (revoked.id, revoked.user_id, revoked.client_id) == (token.id, user.id, "mobile")
        assert revoked.revoke_reason == "logout"
        assert await engine.refresh_tokens.revoke_token(token.token) is None
        assert await engine.refresh_tokens.revoke_token("") is None

    async def test_revoke_all_for_user(self, engine, user, store):
        other = store.insert_user(User.new("bob", "bob@x.com", "hash"))
        first = await engine.refresh_tokens.issue(user, "web")
        second = await engine.refresh_tokens.issue(user, "mobile")
        kept = await engine.refresh_tokens.issue(other, "web")
        await engine.refresh_tokens.revoke(first.token)

        assert await engine.refresh_tokens.revoke_all_for_user(user.id, "logout everywhere") == 1
        assert await engine.refresh_tokens.list_active_for_user(user.id) == []
        assert [t.id for t in await engine.refresh_tokens.list_active_for_user(other.id)] == [kept.id]
        with pytest.raises(InvalidOrExpiredTokenError):
            engine.refresh_tokens.require_usable(second.token)


class TestRotate:
    async def test_rotation_outside_window_only_mints_access_token(self, engine, user):
        token = await engine.refresh_tokens.issue(user, "web")
        engine.clock.advance(days=10)

        result = await engine.refresh_tokens.rotate(token.token, "10.0.0.2")

        assert result.refresh_token is None
        claims = engine.access_tokens.validate_access_token(result.access_token)
        assert claims.user_id == user.id
        assert claims.client_id == "web"
        assert claims.scopes == []

    async def test_exactly_seven_days_left_does_not_rotate(self, engine, user):
        token = await engine.refresh_tokens.issue(user, "web")
        engine.clock.advance(days=23)

        at_boundary = await engine.refresh_tokens.rotate(token.token)
        engine.clock.advance(seconds=1)
        past_boundary = await engine.refresh_tokens.rotate(token.token)

        assert at_boundary.refresh_token is None
        assert past_boundary.refresh_token is not None
        assert past_boundary.client_id == "web"

    async def test_rotation_inside_window_keeps_original_usable(self, engine, user):
        token = await engine.refresh_tokens.issue(user, "web", "10.0.0.1", "agent")
        engine.clock.advance(days=24)

        result = await engine.refresh_tokens.rotate(token.token, "10.0.0.2")

        fresh = result.refresh_token
        assert fresh is not None
        assert fresh.token != token.token
        assert fresh.rotated_from == token.id
        assert fresh.ip_address == "10.0.0.2"
        assert fresh.user_agent == ""
        assert fresh.expires_at == engine.clock.now + timedelta(days=30)

        original = engine.refresh_tokens.require_usable(token.token)
        assert original.expires_at == token.expires_at
        assert original.revoked_at is None

        engine.clock.advance(days=5, hours=23)
        assert engine.refresh_tokens.require_usable(token.token)
        engine.clock.advance(hours=1)
        with pytest.raises(InvalidOrExpiredTokenError):
            engine.refresh_tokens.require_usable(token.token)
        assert engine.refresh_tokens.require_usable(fresh.token)

    async def test_rotation_can_revoke_source(self, make_engine, user):
        engine = make_engine(revoke_on_rotation=True)
        token = await engine.refresh_tokens.issue(user, "web")
        engine.clock.advance(days=25)

        result = await engine.refresh_tokens.rotate(token.token)

        assert result.refresh_token is not None
        with pytest.raises(InvalidOrExpiredTokenError):
            engine.refresh_tokens.require_usable(token.token)
        revoked = [t for t in engine.store.list_refresh_tokens_for_user(user.id) if t.id == token.id]
        assert revoked[0].revoke_reason == "rotated"

    async def test_rotation_passes_scopes_through(self, engine, user):
        token = await engine.refresh_tokens.issue(user, "web")

        result = await engine.refresh_tokens.rotate(token.token, scopes=["profile"])

        assert engine.access_tokens.validate_access_token(result.access_token).scopes == ["profile"]

    async def test_rotation_for_vanished_user(self, engine, user, store):
        token = await engine.refresh_tokens.issue(user, "web")
        store.users.pop(user.id)

        with pytest.raises(UserNotFoundError) as exc_info:
            await engine.refresh_tokens.rotate(token.token)
        assert exc_info.value.status_code == 500
