from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from identityd.logging import get_logger
from identityd.storage.common import (
    SecretCipher,
    deserialize_datetime,
    serialize_datetime,
)
from identityd.storage.errors import ConstraintViolation
from identityd.storage.models import RefreshToken, TwoFactorVerification, User


class MemoryStore:
    """In-process credential, refresh-token and challenge store.

    All reads hand out copies; a change only becomes visible through one of the
    write methods, each of which runs under ``_data_lock`` and rewrites the JSON
    state file under ``fs_root/state``.
    """

    def __init__(
        self, fs_root: str = "/tmp/identityd", *, secret_encryption_key: str
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.challenges: Dict[str, TwoFactorVerification] = {}
        # RLock so write helpers can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(secret_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    # users
    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email_verification_token == token),
                None,
            )
            return replace(user) if user else None

    def exists_by_username_or_email(self, username: str, email: str) -> bool:
        with self._data_lock:
            return any(
                u.username == username or u.email == email for u in self.users.values()
            )

    def insert_user(self, user: User) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == user.username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email == user.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def update_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_until: datetime,
        now: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.is_locked and user.lockout_until and user.lockout_until <= now:
                # previous window elapsed; start a fresh count
                user.is_locked = False
                user.lockout_until = None
                user.failed_login_attempts = 0
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts:
                user.is_locked = True
                user.lockout_until = lockout_until
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def record_login_success(self, user_id: str, *, now: datetime) -> Optional[User]:
        """Clear the failure count unless a lockout is currently active.

        A user locked by a concurrent failure is returned unchanged so the
        caller can refuse the login.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.is_lockout_active(now):
                return replace(user)
            user.failed_login_attempts = 0
            user.is_locked = False
            user.lockout_until = None
            user.last_login_at = now
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def update_password_hash(
        self, user_id: str, password_hash: str, *, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def enroll_two_factor_secret(
        self, user_id: str, secret: str, *, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.two_factor_secret = secret
            user.two_factor_enabled = True
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def mark_email_verified(self, user_id: str, token: str, *, now: datetime) -> bool:
        """Consume a verification token; False when it was already used or replaced."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.email_verification_token != token:
                return False
            user.is_email_verified = True
            user.email_verification_token = None
            user.email_verification_expires_at = None
            user.updated_at = now
            self._persist_state()
            return True

    # refresh tokens
    def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]:
        """Look up a refresh token by value; revoked rows are never returned."""
        with self._data_lock:
            token = next(
                (
                    t
                    for t in self.refresh_tokens.values()
                    if t.token == token_value and t.revoked_at is None
                ),
                None,
            )
            return replace(token) if token else None

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user not found", {"field": "user_id"})
            if any(t.token == token.token for t in self.refresh_tokens.values()):
                raise ConstraintViolation("token already exists", {"field": "token"})
            self.refresh_tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def update_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.id not in self.refresh_tokens:
                raise ConstraintViolation("refresh token not found", {"id": token.id})
            self.refresh_tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def mark_refresh_token_revoked(
        self, token_value: str, *, reason: str, now: datetime
    ) -> Optional[RefreshToken]:
        """Revoke a live token and return it; None when unknown or already revoked."""
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.token == token_value and token.revoked_at is None:
                    token.revoked_at = now
                    token.revoke_reason = reason
                    self._persist_state()
                    return replace(token)
            return None

    def list_refresh_tokens_for_user(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [
                replace(t) for t in self.refresh_tokens.values() if t.user_id == user_id
            ]
            return sorted(tokens, key=lambda t: t.created_at, reverse=True)

    def revoke_all_refresh_tokens_for_user(
        self, user_id: str, *, reason: str, now: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and token.revoked_at is None:
                    token.revoked_at = now
                    token.revoke_reason = reason
                    count += 1
            if count:
                self._persist_state()
            return count

    # two-factor challenges
    def insert_challenge(self, challenge: TwoFactorVerification) -> TwoFactorVerification:
        with self._data_lock:
            if challenge.user_id not in self.users:
                raise ConstraintViolation("user not found", {"field": "user_id"})
            self.challenges[challenge.id] = replace(challenge)
            self._persist_state()
            return replace(challenge)

    def update_challenge(self, challenge: TwoFactorVerification) -> TwoFactorVerification:
        with self._data_lock:
            if challenge.id not in self.challenges:
                raise ConstraintViolation("challenge not found", {"id": challenge.id})
            self.challenges[challenge.id] = replace(challenge)
            self._persist_state()
            return replace(challenge)

    def get_most_recent_pending_challenge(
        self, user_id: str, method: str, *, now: datetime
    ) -> Optional[TwoFactorVerification]:
        with self._data_lock:
            pending = [
                c
                for c in self.challenges.values()
                if c.user_id == user_id and c.method == method and c.is_pending(now)
            ]
            if not pending:
                return None
            latest = max(pending, key=lambda c: c.created_at)
            return replace(latest)

    def mark_challenge_verified(self, challenge_id: str, *, now: datetime) -> bool:
        """Flip a challenge to verified only if it is still unverified."""
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.is_verified:
                return False
            challenge.is_verified = True
            challenge.verified_at = now
            self._persist_state()
            return True

    def record_challenge_mismatch(
        self, challenge_id: str, *, max_attempts: int, now: datetime
    ) -> int:
        """Count a wrong code; the challenge expires once ``max_attempts`` is reached."""
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge:
                return 0
            challenge.failed_attempts += 1
            if challenge.failed_attempts >= max_attempts and challenge.expires_at > now:
                challenge.expires_at = now
            self._persist_state()
            return challenge.failed_attempts

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "challenges": [
                self._serialize_challenge(c) for c in self.challenges.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.challenges = {
            c["id"]: self._deserialize_challenge(c) for c in data.get("challenges", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
            path=str(path),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "is_email_verified": user.is_email_verified,
            "email_verification_token": user.email_verification_token,
            "email_verification_expires_at": serialize_datetime(
                user.email_verification_expires_at
            ),
            "is_locked": user.is_locked,
            "failed_login_attempts": user.failed_login_attempts,
            "lockout_until": serialize_datetime(user.lockout_until),
            "two_factor_enabled": user.two_factor_enabled,
            "two_factor_secret": self._cipher.encrypt(user.two_factor_secret),
            "created_at": serialize_datetime(user.created_at),
            "updated_at": serialize_datetime(user.updated_at),
            "last_login_at": serialize_datetime(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            is_email_verified=bool(data.get("is_email_verified", False)),
            email_verification_token=data.get("email_verification_token"),
            email_verification_expires_at=deserialize_datetime(
                data.get("email_verification_expires_at")
            ),
            is_locked=bool(data.get("is_locked", False)),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            lockout_until=deserialize_datetime(data.get("lockout_until")),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            two_factor_secret=self._cipher.decrypt(data.get("two_factor_secret")),
            created_at=deserialize_datetime(data["created_at"]),
            updated_at=deserialize_datetime(data.get("updated_at") or data["created_at"]),
            last_login_at=deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "client_id": token.client_id,
            "token": token.token,
            "expires_at": serialize_datetime(token.expires_at),
            "created_at": serialize_datetime(token.created_at),
            "ip_address": token.ip_address,
            "user_agent": token.user_agent,
            "revoked_at": serialize_datetime(token.revoked_at),
            "revoke_reason": token.revoke_reason,
            "rotated_from": token.rotated_from,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            client_id=data["client_id"],
            token=data["token"],
            expires_at=deserialize_datetime(data["expires_at"]),
            created_at=deserialize_datetime(data["created_at"]),
            ip_address=data.get("ip_address") or "",
            user_agent=data.get("user_agent") or "",
            revoked_at=deserialize_datetime(data.get("revoked_at")),
            revoke_reason=data.get("revoke_reason"),
            rotated_from=data.get("rotated_from"),
        )

    def _serialize_challenge(self, challenge: TwoFactorVerification) -> dict:
        return {
            "id": challenge.id,
            "user_id": challenge.user_id,
            "method": challenge.method,
            "code": challenge.code,
            "expires_at": serialize_datetime(challenge.expires_at),
            "created_at": serialize_datetime(challenge.created_at),
            "is_verified": challenge.is_verified,
            "verified_at": serialize_datetime(challenge.verified_at),
            "failed_attempts": challenge.failed_attempts,
        }

    def _deserialize_challenge(self, data: dict) -> TwoFactorVerification:
        return TwoFactorVerification(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            method=data["method"],
            code=data["code"],
            expires_at=deserialize_datetime(data["expires_at"]),
            created_at=deserialize_datetime(data["created_at"]),
            is_verified=bool(data.get("is_verified", False)),
            verified_at=deserialize_datetime(data.get("verified_at")),
            failed_attempts=int(data.get("failed_attempts", 0)),
        )
