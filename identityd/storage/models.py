from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC now; every stored timestamp is aware."""
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    is_locked: bool = False
    failed_login_attempts: int = 0
    lockout_until: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            created_at=now,
            updated_at=now,
        )

    def is_lockout_active(self, now: datetime) -> bool:
        return bool(self.is_locked and self.lockout_until and self.lockout_until > now)


@dataclass
class RefreshToken:
    id: str
    user_id: str
    client_id: str
    token: str
    expires_at: datetime
    created_at: datetime
    ip_address: str = ""
    user_agent: str = ""
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None
    rotated_from: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        client_id: str,
        token: str,
        *,
        ttl: timedelta,
        now: datetime,
        ip_address: str = "",
        user_agent: str = "",
        rotated_from: Optional[str] = None,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            client_id=client_id,
            token=token,
            expires_at=now + ttl,
            created_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            rotated_from=rotated_from,
        )

    def is_usable(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class TwoFactorVerification:
    id: str
    user_id: str
    method: str
    code: str
    expires_at: datetime
    created_at: datetime
    is_verified: bool = False
    verified_at: Optional[datetime] = None
    failed_attempts: int = 0

    @classmethod
    def new(
        cls, user_id: str, method: str, code: str, *, ttl: timedelta, now: datetime
    ) -> "TwoFactorVerification":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            method=method,
            code=code,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_pending(self, now: datetime) -> bool:
        return not self.is_verified and self.expires_at > now
