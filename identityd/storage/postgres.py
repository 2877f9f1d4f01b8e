from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from identityd.logging import get_logger
from identityd.storage.common import SecretCipher, ensure_aware
from identityd.storage.errors import ConstraintViolation
from identityd.storage.models import RefreshToken, TwoFactorVerification, User


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS identity_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verification_token TEXT,
        email_verification_expires_at TIMESTAMPTZ,
        is_locked BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        lockout_until TIMESTAMPTZ,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        CONSTRAINT identity_user_username_key UNIQUE (username),
        CONSTRAINT identity_user_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES identity_user(id),
        client_id TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        ip_address TEXT NOT NULL DEFAULT '',
        user_agent TEXT NOT NULL DEFAULT '',
        revoked_at TIMESTAMPTZ,
        revoke_reason TEXT,
        rotated_from TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS two_factor_verification (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES identity_user(id),
        method TEXT NOT NULL,
        code TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verified_at TIMESTAMPTZ,
        failed_attempts INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    ALTER TABLE two_factor_verification
        ADD COLUMN IF NOT EXISTS failed_attempts INTEGER NOT NULL DEFAULT 0
    """,
    """
    CREATE INDEX IF NOT EXISTS two_factor_pending_idx
        ON two_factor_verification (user_id, method, created_at DESC)
        WHERE is_verified = FALSE
    """,
)

_USER_COLUMNS = (
    "id",
    "username",
    "email",
    "password_hash",
    "first_name",
    "last_name",
    "is_email_verified",
    "email_verification_token",
    "email_verification_expires_at",
    "is_locked",
    "failed_login_attempts",
    "lockout_until",
    "two_factor_enabled",
    "two_factor_secret",
    "created_at",
    "updated_at",
    "last_login_at",
)

_REFRESH_COLUMNS = (
    "id",
    "user_id",
    "client_id",
    "token",
    "expires_at",
    "created_at",
    "ip_address",
    "user_agent",
    "revoked_at",
    "revoke_reason",
    "rotated_from",
)

_CHALLENGE_COLUMNS = (
    "id",
    "user_id",
    "method",
    "code",
    "expires_at",
    "created_at",
    "is_verified",
    "verified_at",
    "failed_attempts",
)


class PostgresStore:
    """Postgres-backed credential, refresh-token and challenge store."""

    def __init__(self, dsn: str, fs_root: str, *, secret_encryption_key: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(secret_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_email_verified=bool(row.get("is_email_verified", False)),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires_at=ensure_aware(
                row.get("email_verification_expires_at")
            ),
            is_locked=bool(row.get("is_locked", False)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            lockout_until=ensure_aware(row.get("lockout_until")),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row.get("updated_at") or row["created_at"]),
            last_login_at=ensure_aware(row.get("last_login_at")),
        )

    def _user_params(self, user: User) -> tuple:
        return (
            user.id,
            user.username,
            user.email,
            user.password_hash,
            user.first_name,
            user.last_name,
            user.is_email_verified,
            user.email_verification_token,
            user.email_verification_expires_at,
            user.is_locked,
            user.failed_login_attempts,
            user.lockout_until,
            user.two_factor_enabled,
            self._cipher.encrypt(user.two_factor_secret),
            user.created_at,
            user.updated_at,
            user.last_login_at,
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            client_id=row["client_id"],
            token=row["token"],
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(row["created_at"]),
            ip_address=row.get("ip_address") or "",
            user_agent=row.get("user_agent") or "",
            revoked_at=ensure_aware(row.get("revoked_at")),
            revoke_reason=row.get("revoke_reason"),
            rotated_from=row.get("rotated_from"),
        )

    @staticmethod
    def _challenge_from_row(row: dict) -> TwoFactorVerification:
        return TwoFactorVerification(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            method=row["method"],
            code=row["code"],
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(row["created_at"]),
            is_verified=bool(row.get("is_verified", False)),
            verified_at=ensure_aware(row.get("verified_at")),
            failed_attempts=int(row.get("failed_attempts") or 0),
        )

    # users
    def _fetch_user(self, where: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM identity_user WHERE {where} = %s", (value,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        return self._fetch_user("email_verification_token", token)

    def exists_by_username_or_email(self, username: str, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM identity_user WHERE username = %s OR email = %s LIMIT 1",
                (username, email),
            ).fetchone()
        return row is not None

    def insert_user(self, user: User) -> User:
        placeholders = ", ".join(["%s"] * len(_USER_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO identity_user ({', '.join(_USER_COLUMNS)}) VALUES ({placeholders})",
                    self._user_params(user),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def update_user(self, user: User) -> User:
        assignments = ", ".join(f"{col} = %s" for col in _USER_COLUMNS[1:])
        params = self._user_params(user)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE identity_user SET {assignments} WHERE id = %s RETURNING *",
                params[1:] + (user.id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user.id})
        return self._user_from_row(row)

    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_until: datetime,
        now: datetime,
    ) -> Optional[User]:
        """Count a failed login in one statement so racing failures all land."""
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH current AS (
                    SELECT id,
                           (is_locked AND lockout_until IS NOT NULL
                                AND lockout_until <= %(now)s) AS elapsed,
                           CASE WHEN is_locked AND lockout_until IS NOT NULL
                                     AND lockout_until <= %(now)s
                                THEN 1
                                ELSE failed_login_attempts + 1
                           END AS attempts
                    FROM identity_user
                    WHERE id = %(user_id)s
                    FOR UPDATE
                )
                UPDATE identity_user u
                SET failed_login_attempts = c.attempts,
                    is_locked = CASE WHEN c.attempts >= %(max_attempts)s THEN TRUE
                                     WHEN c.elapsed THEN FALSE
                                     ELSE u.is_locked END,
                    lockout_until = CASE WHEN c.attempts >= %(max_attempts)s THEN %(lockout_until)s
                                         WHEN c.elapsed THEN NULL
                                         ELSE u.lockout_until END,
                    updated_at = %(now)s
                FROM current c
                WHERE u.id = c.id
                RETURNING u.*
                """,
                {
                    "user_id": user_id,
                    "max_attempts": max_attempts,
                    "lockout_until": lockout_until,
                    "now": now,
                },
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def record_login_success(self, user_id: str, *, now: datetime) -> Optional[User]:
        """Clear the failure count unless a lockout is currently active.

        When the guarded update matches nothing the current row is returned
        as-is, so a concurrent lockout stays visible to the caller.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity_user
                SET failed_login_attempts = 0,
                    is_locked = FALSE,
                    lockout_until = NULL,
                    last_login_at = %s,
                    updated_at = %s
                WHERE id = %s
                  AND NOT (is_locked AND lockout_until IS NOT NULL AND lockout_until > %s)
                RETURNING *
                """,
                (now, now, user_id, now),
            ).fetchone()
        if not row:
            return self.get_user_by_id(user_id)
        return self._user_from_row(row)

    def update_password_hash(
        self, user_id: str, password_hash: str, *, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity_user
                SET password_hash = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, now, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def enroll_two_factor_secret(
        self, user_id: str, secret: str, *, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity_user
                SET two_factor_secret = %s, two_factor_enabled = TRUE, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (self._cipher.encrypt(secret), now, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def mark_email_verified(self, user_id: str, token: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE identity_user
                SET is_email_verified = TRUE,
                    email_verification_token = NULL,
                    email_verification_expires_at = NULL,
                    updated_at = %s
                WHERE id = %s AND email_verification_token = %s
                """,
                (now, user_id, token),
            )
            return cur.rowcount > 0

    # refresh tokens
    def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s AND revoked_at IS NULL",
                (token_value,),
            ).fetchone()
        if not row:
            return None
        return self._refresh_from_row(row)

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        placeholders = ", ".join(["%s"] * len(_REFRESH_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO refresh_token ({', '.join(_REFRESH_COLUMNS)}) VALUES ({placeholders})",
                    (
                        token.id,
                        token.user_id,
                        token.client_id,
                        token.token,
                        token.expires_at,
                        token.created_at,
                        token.ip_address,
                        token.user_agent,
                        token.revoked_at,
                        token.revoke_reason,
                        token.rotated_from,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"field": "user_id"})
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return token

    def update_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET expires_at = %s, revoked_at = %s, revoke_reason = %s
                WHERE id = %s
                RETURNING *
                """,
                (token.expires_at, token.revoked_at, token.revoke_reason, token.id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("refresh token not found", {"id": token.id})
        return self._refresh_from_row(row)

    def mark_refresh_token_revoked(
        self, token_value: str, *, reason: str, now: datetime
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoke_reason = %s
                WHERE token = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (now, reason, token_value),
            ).fetchone()
        if not row:
            return None
        return self._refresh_from_row(row)

    def list_refresh_tokens_for_user(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def revoke_all_refresh_tokens_for_user(
        self, user_id: str, *, reason: str, now: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoke_reason = %s
                WHERE user_id = %s AND revoked_at IS NULL
                """,
                (now, reason, user_id),
            )
            return cur.rowcount

    # two-factor challenges
    def insert_challenge(self, challenge: TwoFactorVerification) -> TwoFactorVerification:
        placeholders = ", ".join(["%s"] * len(_CHALLENGE_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO two_factor_verification ({', '.join(_CHALLENGE_COLUMNS)}) VALUES ({placeholders})",
                    (
                        challenge.id,
                        challenge.user_id,
                        challenge.method,
                        challenge.code,
                        challenge.expires_at,
                        challenge.created_at,
                        challenge.is_verified,
                        challenge.verified_at,
                        challenge.failed_attempts,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"field": "user_id"})
        return challenge

    def update_challenge(self, challenge: TwoFactorVerification) -> TwoFactorVerification:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_verification
                SET code = %s, expires_at = %s, is_verified = %s, verified_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    challenge.code,
                    challenge.expires_at,
                    challenge.is_verified,
                    challenge.verified_at,
                    challenge.id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("challenge not found", {"id": challenge.id})
        return self._challenge_from_row(row)

    def get_most_recent_pending_challenge(
        self, user_id: str, method: str, *, now: datetime
    ) -> Optional[TwoFactorVerification]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM two_factor_verification
                WHERE user_id = %s AND method = %s
                  AND is_verified = FALSE AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, method, now),
            ).fetchone()
        if not row:
            return None
        return self._challenge_from_row(row)

    def mark_challenge_verified(self, challenge_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE two_factor_verification
                SET is_verified = TRUE, verified_at = %s
                WHERE id = %s AND is_verified = FALSE
                """,
                (now, challenge_id),
            )
            return cur.rowcount > 0

    def record_challenge_mismatch(
        self, challenge_id: str, *, max_attempts: int, now: datetime
    ) -> int:
        """Count a wrong code; the challenge expires once ``max_attempts`` is reached."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_verification
                SET failed_attempts = failed_attempts + 1,
                    expires_at = CASE WHEN failed_attempts + 1 >= %s AND expires_at > %s
                                      THEN %s ELSE expires_at END
                WHERE id = %s
                RETURNING failed_attempts
                """,
                (max_attempts, now, now, challenge_id),
            ).fetchone()
        if not row:
            return 0
        return int(row["failed_attempts"])
