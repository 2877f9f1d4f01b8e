from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from identityd.logging import get_logger
from identityd.storage.common import SecretCipher
from identityd.storage.errors import ConstraintViolation
from identityd.storage.models import User
from identityd.storage.postgres import PostgresStore

KEY = "postgres-unit-test-key-material-0123456789"
NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class RecordingPool:
    """Stands in for psycopg_pool; records SQL and replays canned results."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def connection(self):
        return _RecordingConnection(self)


class _RecordingConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.pool.calls.append((" ".join(sql.split()), params))
        result = self.pool.results.pop(0) if self.pool.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


def _store(*results):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = RecordingPool(*results)
    store._cipher = SecretCipher(KEY)
    store.logger = get_logger(__name__)
    return store


def _user_row(**overrides):
    row = {
        "id": "user-1",
        "username": "alice",
        "email": "alice@x.com",
        "password_hash": "hash",
        "first_name": None,
        "last_name": None,
        "is_email_verified": False,
        "email_verification_token": None,
        "email_verification_expires_at": None,
        "is_locked": False,
        "failed_login_attempts": 0,
        "lockout_until": None,
        "two_factor_enabled": False,
        "two_factor_secret": None,
        "created_at": NOW,
        "updated_at": NOW,
        "last_login_at": None,
    }
    row.update(overrides)
    return row


def test_ensure_schema_creates_tables():
    store = _store()
    store._ensure_schema()

    statements = [sql for sql, _ in store.pool.calls]
    assert any("CREATE TABLE IF NOT EXISTS identity_user" in s for s in statements)
    assert any("CREATE TABLE IF NOT EXISTS refresh_token" in s for s in statements)
    assert any("CREATE TABLE IF NOT EXISTS two_factor_verification" in s for s in statements)


def test_get_user_maps_row_and_decrypts_secret():
    cipher = SecretCipher(KEY)
    naive = datetime(2024, 1, 1, 12, 0)
    store = _store(
        FakeCursor([_user_row(two_factor_secret=cipher.encrypt("JBSWY3DPEHPK3PXP"), created_at=naive)])
    )

    user = store.get_user_by_username("alice")

    sql, params = store.pool.calls[0]
    assert sql == "SELECT * FROM identity_user WHERE username = %s"
    assert params == ("alice",)
    assert user.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert user.created_at.tzinfo is not None


def test_get_user_missing_returns_none():
    store = _store(FakeCursor([]))
    assert store.get_user_by_id("nope") is None


def test_insert_user_encrypts_secret():
    store = _store()
    user = User.new("alice", "alice@x.com", "hash")
    user.two_factor_secret = "JBSWY3DPEHPK3PXP"

    store.insert_user(user)

    sql, params = store.pool.calls[0]
    assert sql.startswith("INSERT INTO identity_user")
    assert "JBSWY3DPEHPK3PXP" not in params
    assert SecretCipher(KEY).decrypt(params[13]) == "JBSWY3DPEHPK3PXP"


def test_insert_user_unique_violation():
    store = _store(errors.UniqueViolation("duplicate key value"))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.insert_user(User.new("alice", "alice@x.com", "hash"))
    assert exc_info.value.field in {"username", "email"}


def test_update_missing_user_raises():
    store = _store(FakeCursor([]))
    with pytest.raises(ConstraintViolation):
        store.update_user(User.new("ghost", "ghost@x.com", "hash"))


def test_record_login_failure_is_single_statement():
    until = NOW + timedelta(minutes=15)
    store = _store(FakeCursor([_user_row(failed_login_attempts=5, is_locked=True, lockout_until=until)]))

    user = store.record_login_failure("user-1", max_attempts=5, lockout_until=until, now=NOW)

    assert len(store.pool.calls) == 1
    sql, params = store.pool.calls[0]
    assert "FOR UPDATE" in sql and "RETURNING u.*" in sql
    assert params == {"user_id": "user-1", "max_attempts": 5, "lockout_until": until, "now": NOW}
    assert user.is_locked is True
    assert user.lockout_until == until


def test_refresh_lookup_excludes_revoked():
    store = _store(FakeCursor([]))

    assert store.get_refresh_token("opaque") is None
    sql, _ = store.pool.calls[0]
    assert "revoked_at IS NULL" in sql


def test_mark_revoked_returns_revoked_row():
    row = {
        "id": "t-1",
        "user_id": "user-1",
        "client_id": "web",
        "token": "opaque",
        "expires_at": NOW + timedelta(days=30),
        "created_at": NOW,
        "revoked_at": NOW,
        "revoke_reason": "logout",
    }
    store = _store(FakeCursor([row]), FakeCursor([]))

    revoked = store.mark_refresh_token_revoked("opaque", reason="logout", now=NOW)

    assert (revoked.user_id, revoked.client_id, revoked.revoke_reason) == ("user-1", "web", "logout")
    assert store.mark_refresh_token_revoked("opaque", reason="logout", now=NOW) is None
    sql, params = store.pool.calls[0]
    assert "WHERE token = %s AND revoked_at IS NULL RETURNING *" in sql
    assert params == (NOW, "logout", "opaque")


def test_record_login_success_skips_active_lockout():
    until = NOW + timedelta(minutes=15)
    locked = _user_row(failed_login_attempts=5, is_locked=True, lockout_until=until)
    store = _store(FakeCursor([]), FakeCursor([locked]))

    user = store.record_login_success("user-1", now=NOW)

    update_sql, update_params = store.pool.calls[0]
    assert "NOT (is_locked AND lockout_until IS NOT NULL AND lockout_until > %s)" in update_sql
    assert update_params == (NOW, NOW, "user-1", NOW)
    assert store.pool.calls[1] == ("SELECT * FROM identity_user WHERE id = %s", ("user-1",))
    assert user.is_lockout_active(NOW)


def test_record_login_success_returns_cleared_row():
    store = _store(FakeCursor([_user_row(last_login_at=NOW)]))

    user = store.record_login_success("user-1", now=NOW)

    assert len(store.pool.calls) == 1
    assert user.last_login_at == NOW


def test_targeted_user_updates_touch_named_columns():
    store = _store(FakeCursor([_user_row()]), FakeCursor([_user_row()]), FakeCursor([]))

    store.update_password_hash("user-1", "new-hash", now=NOW)
    store.enroll_two_factor_secret("user-1", "JBSWY3DPEHPK3PXP", now=NOW)

    hash_sql, hash_params = store.pool.calls[0]
    assert "SET password_hash = %s, updated_at = %s WHERE id = %s" in hash_sql
    assert hash_params == ("new-hash", NOW, "user-1")
    enroll_sql, enroll_params = store.pool.calls[1]
    assert "SET two_factor_secret = %s, two_factor_enabled = TRUE" in enroll_sql
    assert "failed_login_attempts" not in enroll_sql
    assert SecretCipher(KEY).decrypt(enroll_params[0]) == "JBSWY3DPEHPK3PXP"
    assert store.update_password_hash("missing", "x", now=NOW) is None


def test_mark_email_verified_matches_token():
    store = _store(FakeCursor(rowcount=1), FakeCursor(rowcount=0))

    assert store.mark_email_verified("user-1", "token-1", now=NOW) is True
    assert store.mark_email_verified("user-1", "token-1", now=NOW) is False
    sql, params = store.pool.calls[0]
    assert "WHERE id = %s AND email_verification_token = %s" in sql
    assert params == (NOW, "user-1", "token-1")


def test_record_challenge_mismatch_is_single_statement():
    store = _store(FakeCursor([{"failed_attempts": 5}]), FakeCursor([]))

    assert store.record_challenge_mismatch("c-1", max_attempts=5, now=NOW) == 5
    assert store.record_challenge_mismatch("missing", max_attempts=5, now=NOW) == 0
    sql, params = store.pool.calls[0]
    assert "SET failed_attempts = failed_attempts + 1" in sql
    assert params == (5, NOW, NOW, "c-1")


def test_insert_refresh_token_for_missing_user():
    from identityd.storage.models import RefreshToken

    store = _store(errors.ForeignKeyViolation("fk"))
    with pytest.raises(ConstraintViolation):
        store.insert_refresh_token(
            RefreshToken.new("ghost", "web", "opaque", ttl=timedelta(days=30), now=NOW)
        )


def test_mark_challenge_verified_is_conditional():
    store = _store(FakeCursor(rowcount=0))

    assert store.mark_challenge_verified("c-1", now=NOW) is False
    sql, _ = store.pool.calls[0]
    assert "is_verified = FALSE" in sql


def test_pending_challenge_query_orders_newest_first():
    row = {
        "id": "c-1",
        "user_id": "user-1",
        "method": "email",
        "code": "123456",
        "expires_at": NOW + timedelta(minutes=10),
        "created_at": NOW,
        "is_verified": False,
        "verified_at": None,
    }
    store = _store(FakeCursor([row]))

    challenge = store.get_most_recent_pending_challenge("user-1", "email", now=NOW)

    sql, params = store.pool.calls[0]
    assert "ORDER BY created_at DESC LIMIT 1" in sql
    assert params == ("user-1", "email", NOW)
    assert challenge.code == "123456"
