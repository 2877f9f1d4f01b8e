from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Protocol

from identityd.logging import get_logger
from identityd.service.errors import InvalidOrExpiredTokenError, UserNotFoundError
from identityd.service.tokens import AccessTokenIssuer
from identityd.storage.errors import ConstraintViolation
from identityd.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)

DEFAULT_REVOKE_REASON = "Revoked by user"
ROTATION_REVOKE_REASON = "rotated"


class RefreshTokenStore(Protocol):
    def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]: ...

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def update_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def mark_refresh_token_revoked(
        self, token_value: str, *, reason: str, now: datetime
    ) -> Optional[RefreshToken]: ...

    def list_refresh_tokens_for_user(self, user_id: str) -> List[RefreshToken]: ...

    def revoke_all_refresh_tokens_for_user(
        self, user_id: str, *, reason: str, now: datetime
    ) -> int: ...


class UserLookup(Protocol):
    def get_user_by_id(self, user_id: str) -> Optional[User]: ...


@dataclass
class RotationResult:
    user: User
    access_token: str
    client_id: str
    refresh_token: Optional[RefreshToken] = None


class RefreshTokenManager:
    """Opaque refresh tokens: issue, rotate near expiry, revoke.

    By default rotation leaves the presented token untouched, so it stays
    usable until its own expiry. With ``revoke_on_rotation`` the presented
    token is revoked as soon as its replacement is stored.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        users: UserLookup,
        issuer: AccessTokenIssuer,
        *,
        ttl: timedelta = timedelta(days=30),
        rotation_window: timedelta = timedelta(days=7),
        revoke_on_rotation: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.users = users
        self.issuer = issuer
        self.ttl = ttl
        self.rotation_window = rotation_window
        self.revoke_on_rotation = revoke_on_rotation
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _mint(
        self,
        user: User,
        client_id: str,
        ip_address: str,
        user_agent: str,
        *,
        rotated_from: Optional[str] = None,
    ) -> RefreshToken:
        token = RefreshToken.new(
            user.id,
            client_id,
            secrets.token_urlsafe(64),
            ttl=self.ttl,
            now=self._now(),
            ip_address=ip_address or "",
            user_agent=user_agent or "",
            rotated_from=rotated_from,
        )
        try:
            return self.store.insert_refresh_token(token)
        except ConstraintViolation as exc:
            raise UserNotFoundError("User no longer exists") from exc

    async def issue(
        self,
        user: User,
        client_id: str,
        ip_address: str = "",
        user_agent: str = "",
    ) -> RefreshToken:
        token = self._mint(user, client_id, ip_address, user_agent)
        logger.info("refresh_token_issued", user_id=user.id, client_id=client_id)
        return token

    def is_usable(self, token: Optional[RefreshToken]) -> bool:
        return token is not None and token.is_usable(self._now())

    def require_usable(self, token_value: str) -> RefreshToken:
        """Resolve a token value or raise ``InvalidOrExpiredTokenError``."""
        token = self.store.get_refresh_token(token_value) if token_value else None
        if not self.is_usable(token):
            logger.info("refresh_token_unusable", found=token is not None)
            raise InvalidOrExpiredTokenError("Invalid or expired refresh token")
        return token

    async def rotate(
        self,
        token_value: str,
        ip_address: str = "",
        *,
        scopes: Optional[Iterable[str]] = None,
    ) -> RotationResult:
        current = self.require_usable(token_value)
        user = self.users.get_user_by_id(current.user_id)
        if user is None:
            logger.error("refresh_token_orphaned", token_id=current.id, user_id=current.user_id)
            raise UserNotFoundError("User no longer exists")

        access_token = self.issuer.issue_access_token(user, scopes or [], current.client_id)
        result = RotationResult(
            user=user, access_token=access_token, client_id=current.client_id
        )

        remaining = current.expires_at - self._now()
        if remaining < self.rotation_window:
            result.refresh_token = self._mint(
                user, current.client_id, ip_address, "", rotated_from=current.id
            )
            if self.revoke_on_rotation:
                self.store.mark_refresh_token_revoked(
                    current.token, reason=ROTATION_REVOKE_REASON, now=self._now()
                )
            logger.info(
                "refresh_token_rotated",
                user_id=user.id,
                client_id=current.client_id,
                previous_id=current.id,
                previous_revoked=self.revoke_on_rotation,
            )
        return result

    async def revoke(self, token_value: str, reason: str = DEFAULT_REVOKE_REASON) -> bool:
        """Revoke a token; unknown or already revoked tokens are a no-op (False)."""
        return await self.revoke_token(token_value, reason) is not None

    async def revoke_token(
        self, token_value: str, reason: str = DEFAULT_REVOKE_REASON
    ) -> Optional[RefreshToken]:
        """Revoke a token and return the revoked row, or None for a no-op."""
        if not token_value:
            return None
        revoked = self.store.mark_refresh_token_revoked(
            token_value, reason=reason or DEFAULT_REVOKE_REASON, now=self._now()
        )
        if revoked is not None:
            logger.info(
                "refresh_token_revoked",
                user_id=revoked.user_id,
                client_id=revoked.client_id,
                reason=revoked.revoke_reason,
            )
        return revoked

    async def revoke_all_for_user(
        self, user_id: str, reason: str = DEFAULT_REVOKE_REASON
    ) -> int:
        count = self.store.revoke_all_refresh_tokens_for_user(
            user_id, reason=reason or DEFAULT_REVOKE_REASON, now=self._now()
        )
        logger.info("refresh_tokens_revoked_all", user_id=user_id, count=count)
        return count

    async def list_active_for_user(self, user_id: str) -> List[RefreshToken]:
        now = self._now()
        return [t for t in self.store.list_refresh_tokens_for_user(user_id) if t.is_usable(now)]
