from __future__ import annotations

import asyncio
import math
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from identityd.config import Settings
from identityd.logging import get_logger
from identityd.service.email import BackgroundEmailDispatch
from identityd.service.errors import (
    DuplicateError,
    InvalidCredentialsError,
    LockedError,
    ValidationError,
)
from identityd.storage.errors import ConstraintViolation
from identityd.storage.models import User, utcnow

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    def get_user_by_verification_token(self, token: str) -> Optional[User]: ...

    def exists_by_username_or_email(self, username: str, email: str) -> bool: ...

    def insert_user(self, user: User) -> User: ...

    def update_password_hash(
        self, user_id: str, password_hash: str, *, now: datetime
    ) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str, token: str, *, now: datetime) -> bool: ...

    def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_until: datetime,
        now: datetime,
    ) -> Optional[User]: ...

    def record_login_success(self, user_id: str, *, now: datetime) -> Optional[User]: ...


class CredentialVerifier:
    """Password registration, login with lockout, and email verification.

    Argon2 work runs in a worker thread and always finishes before any store
    write, so a cancelled call leaves no partial bookkeeping behind.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        email: Optional[BackgroundEmailDispatch] = None,
        hasher: Optional[PasswordHasher] = None,
        max_failed_logins: int = 5,
        lockout: timedelta = timedelta(minutes=15),
        min_password_length: int = 8,
        verification_ttl: timedelta = timedelta(hours=24),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email = email
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self.max_failed_logins = max_failed_logins
        self.lockout = lockout
        self.min_password_length = min_password_length
        self.verification_ttl = verification_ttl
        self._clock = clock or utcnow
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        store: CredentialStore,
        settings: Settings,
        *,
        email: Optional[BackgroundEmailDispatch] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "CredentialVerifier":
        hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        return cls(
            store,
            email=email,
            hasher=hasher,
            max_failed_logins=settings.max_failed_logins,
            lockout=timedelta(minutes=settings.lockout_minutes),
            min_password_length=settings.min_password_length,
            verification_ttl=timedelta(hours=settings.email_verification_ttl_hours),
            clock=clock,
        )

    def _now(self) -> datetime:
        return self._clock()

    # primitives
    def hash_password(self, plain: str) -> str:
        return self._hasher.hash(plain)

    def validate_password(self, plain: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plain)
        except (InvalidHash, VerificationError):
            return False

    def _burn_verification(self, plain: str) -> None:
        # equalizes timing between unknown users and wrong passwords
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.validate_password(plain, self._dummy_hash)

    def _validate_registration(self, username: str, email: str, password: str) -> None:
        if not (username and username.strip()) or not (email and email.strip()) or not (
            password and password.strip()
        ):
            raise ValidationError("Username, email, and password are required")
        if len(password) < self.min_password_length:
            raise ValidationError(
                f"Password must be at least {self.min_password_length} characters",
                detail={"min_length": self.min_password_length},
            )

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        self._validate_registration(username, email, password)
        if self.store.exists_by_username_or_email(username, email):
            raise DuplicateError("Username or email already exists")

        password_hash = await asyncio.to_thread(self.hash_password, password)
        now = self._now()
        user = User.new(
            username, email, password_hash, first_name=first_name, last_name=last_name
        )
        user.created_at = now
        user.updated_at = now
        user.email_verification_token = secrets.token_urlsafe(32)
        user.email_verification_expires_at = now + self.verification_ttl
        try:
            user = self.store.insert_user(user)
        except ConstraintViolation as exc:
            logger.info("register_conflict", field=exc.field)
            raise DuplicateError("Username or email already exists") from exc

        if self.email is not None:
            self.email.send_verification_email(user.email, user.email_verification_token)
        logger.info("user_registered", user_id=user.id)
        return user

    async def login(self, username: str, password: str) -> User:
        user = self.store.get_user_by_username(username) if username else None
        if user is None:
            await asyncio.to_thread(self._burn_verification, password or "")
            logger.info("login_failed", reason=InvalidCredentialsError.UNKNOWN_USER)
            raise InvalidCredentialsError(reason=InvalidCredentialsError.UNKNOWN_USER)

        now = self._now()
        if user.is_lockout_active(now):
            raise self._locked(user, now)

        valid = await asyncio.to_thread(self.validate_password, password or "", user.password_hash)
        now = self._now()
        if not valid:
            updated = self.store.record_login_failure(
                user.id,
                max_attempts=self.max_failed_logins,
                lockout_until=now + self.lockout,
                now=now,
            )
            if updated is None:
                raise InvalidCredentialsError(reason=InvalidCredentialsError.UNKNOWN_USER)
            locked_until = updated.lockout_until if updated.is_lockout_active(now) else None
            if locked_until:
                logger.warning(
                    "account_locked",
                    user_id=user.id,
                    attempts=updated.failed_login_attempts,
                    locked_until=locked_until.isoformat(),
                )
            else:
                logger.info(
                    "login_failed",
                    reason=InvalidCredentialsError.WRONG_PASSWORD,
                    user_id=user.id,
                    attempts=updated.failed_login_attempts,
                )
            raise InvalidCredentialsError(
                reason=InvalidCredentialsError.WRONG_PASSWORD,
                user_id=user.id,
                locked_until=locked_until,
            )

        new_hash: Optional[str] = None
        if self._hasher.check_needs_rehash(user.password_hash):
            new_hash = await asyncio.to_thread(self.hash_password, password)
        updated = self.store.record_login_success(user.id, now=now)
        if updated is None:
            raise InvalidCredentialsError(reason=InvalidCredentialsError.UNKNOWN_USER)
        if updated.is_lockout_active(now):
            # failures recorded while the password was being checked locked the account
            raise self._locked(updated, now)
        if new_hash:
            updated = self.store.update_password_hash(user.id, new_hash, now=now) or updated
            logger.info("password_rehashed", user_id=user.id)
        logger.info("login_succeeded", user_id=user.id)
        return updated

    @staticmethod
    def _locked(user: User, now: datetime) -> LockedError:
        remaining = math.ceil((user.lockout_until - now).total_seconds() / 60)
        logger.warning("login_locked", user_id=user.id, locked_until=user.lockout_until.isoformat())
        return LockedError(
            f"Account is locked. Try again in {remaining} minute(s).",
            user_id=user.id,
            locked_until=user.lockout_until,
        )

    async def verify_email(self, token: str) -> bool:
        if not token:
            return False
        user = self.store.get_user_by_verification_token(token)
        if user is None:
            logger.info("email_verification_invalid_token")
            return False
        now = self._now()
        expires_at = user.email_verification_expires_at
        if expires_at is None or expires_at < now:
            logger.info("email_verification_expired", user_id=user.id)
            return False
        if not self.store.mark_email_verified(user.id, token, now=now):
            # consumed or reissued since it was looked up
            logger.info("email_verification_invalid_token", user_id=user.id)
            return False
        logger.info("email_verified", user_id=user.id)
        return True
