from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from identityd.logging import get_logger
from identityd.service import audit
from identityd.service.audit import AuditSink, AuthOutcome, forward_outcome
from identityd.service.credentials import CredentialVerifier
from identityd.service.errors import (
    InvalidCredentialsError,
    LockedError,
    ServiceError,
    UserNotFoundError,
)
from identityd.service.refresh import (
    DEFAULT_REVOKE_REASON,
    RefreshTokenManager,
    RotationResult,
)
from identityd.service.tokens import AccessTokenClaims, AccessTokenIssuer
from identityd.service.two_factor import METHOD_TOTP, TwoFactorChallengeManager
from identityd.storage.models import RefreshToken, User

logger = get_logger(__name__)


@dataclass
class LoginResult:
    """Either a token pair, or a handle for the pending second factor."""

    user: User
    access_token: Optional[str] = None
    refresh_token: Optional[RefreshToken] = None
    two_factor_token: Optional[str] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.two_factor_token is not None


class AuthService:
    """Entry point used by a routing layer.

    Wraps the credential, challenge and token components and forwards one
    audit outcome per call once the call has finished, whether it succeeded
    or raised.
    """

    def __init__(
        self,
        credentials: CredentialVerifier,
        two_factor: TwoFactorChallengeManager,
        access_tokens: AccessTokenIssuer,
        refresh_tokens: RefreshTokenManager,
        *,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self.credentials = credentials
        self.two_factor = two_factor
        self.access_tokens = access_tokens
        self.refresh_tokens = refresh_tokens
        self.audit_sink = audit_sink

    def _audit(
        self,
        action: str,
        resource: str,
        success: bool,
        *,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
        description: Optional[str] = None,
        error: Optional[BaseException] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        forward_outcome(
            self.audit_sink,
            AuthOutcome(
                action=action,
                resource=resource,
                success=success,
                user_id=user_id,
                client_id=client_id,
                description=description,
                error_message=str(error) if error is not None else None,
                ip_address=ip_address,
                user_agent=user_agent,
            ),
        )

    def get_user(self, user_id: str) -> User:
        user = self.credentials.store.get_user_by_id(user_id)
        if user is None:
            logger.error("user_missing", user_id=user_id)
            raise UserNotFoundError("User no longer exists")
        return user

    # registration / login
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        try:
            user = await self.credentials.register(
                username, email, password, first_name=first_name, last_name=last_name
            )
        except ServiceError as exc:
            self._audit(
                audit.USER_REGISTER_FAILED,
                "User",
                False,
                error=exc,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise
        self._audit(
            audit.USER_REGISTERED,
            "User",
            True,
            user_id=user.id,
            description=f"User {user.username} registered",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user

    def _audit_login_failure(
        self,
        exc: ServiceError,
        *,
        client_id: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        user_id = getattr(exc, "user_id", None)
        action = audit.LOGIN_FAILED
        description = None
        if isinstance(exc, LockedError):
            description = "Account locked"
        elif isinstance(exc, InvalidCredentialsError):
            description = exc.reason
            if exc.locked_until is not None:
                action = audit.ACCOUNT_LOCKED
                description = f"Locked until {exc.locked_until.isoformat()}"
        self._audit(
            action,
            "User",
            False,
            user_id=user_id,
            client_id=client_id,
            description=description,
            error=exc,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def login(
        self,
        username: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        try:
            user = await self.credentials.login(username, password)
        except ServiceError as exc:
            self._audit_login_failure(
                exc, client_id=None, ip_address=ip_address, user_agent=user_agent
            )
            raise
        self._audit(
            audit.LOGIN_SUCCESS,
            "User",
            True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user

    async def _issue_pair(
        self,
        user: User,
        client_id: str,
        scopes: Optional[Iterable[str]],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> LoginResult:
        access_token = self.access_tokens.issue_access_token(user, scopes, client_id)
        refresh_token = await self.refresh_tokens.issue(
            user, client_id, ip_address or "", user_agent or ""
        )
        return LoginResult(user=user, access_token=access_token, refresh_token=refresh_token)

    async def authenticate(
        self,
        username: str,
        password: str,
        client_id: str,
        scopes: Optional[Iterable[str]] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Full login: credentials, then either a 2FA handle or a token pair."""
        try:
            user = await self.credentials.login(username, password)
            if user.two_factor_enabled:
                handle = await self.two_factor.initiate(user, METHOD_TOTP)
                result = LoginResult(user=user, two_factor_token=handle)
            else:
                result = await self._issue_pair(
                    user, client_id, scopes, ip_address, user_agent
                )
        except ServiceError as exc:
            self._audit_login_failure(
                exc, client_id=client_id, ip_address=ip_address, user_agent=user_agent
            )
            raise
        self._audit(
            audit.TWO_FACTOR_REQUIRED if result.requires_two_factor else audit.LOGIN_SUCCESS,
            "User",
            True,
            user_id=user.id,
            client_id=client_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return result

    async def complete_two_factor_login(
        self,
        handle: str,
        code: str,
        client_id: str,
        scopes: Optional[Iterable[str]] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        user_id: Optional[str] = None
        try:
            user_id, method = self.two_factor.resolve_handle(handle)
            user = self.get_user(user_id)
            await self.two_factor.verify(user, code, method)
            result = await self._issue_pair(user, client_id, scopes, ip_address, user_agent)
        except ServiceError as exc:
            self._audit(
                audit.TWO_FACTOR_FAILED,
                "User",
                False,
                user_id=user_id,
                client_id=client_id,
                error=exc,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise
        self._audit(
            audit.LOGIN_SUCCESS,
            "User",
            True,
            user_id=user.id,
            client_id=client_id,
            description="Second factor verified",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return result

    async def verify_email(self, token: str) -> bool:
        verified = await self.credentials.verify_email(token)
        self._audit(
            audit.EMAIL_VERIFIED if verified else audit.EMAIL_VERIFY_FAILED,
            "User",
            verified,
        )
        return verified

    # second factor
    async def initiate_two_factor(
        self,
        user: User,
        method: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        try:
            handle = await self.two_factor.initiate(user, method)
        except ServiceError as exc:
            self._audit(
                audit.TWO_FACTOR_INITIATED,
                "TwoFactorVerification",
                False,
                user_id=user.id,
                error=exc,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise
        self._audit(
            audit.TWO_FACTOR_INITIATED,
            "TwoFactorVerification",
            True,
            user_id=user.id,
            description=method,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return handle

    async def verify_two_factor(
        self,
        user: User,
        code: str,
        method: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        try:
            await self.two_factor.verify(user, code, method)
        except ServiceError as exc:
            self._audit(
                audit.TWO_FACTOR_FAILED,
                "TwoFactorVerification",
                False,
                user_id=user.id,
                description=method,
                error=exc,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise
        self._audit(
            audit.TWO_FACTOR_VERIFIED,
            "TwoFactorVerification",
            True,
            user_id=user.id,
            description=method,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return True

    async def setup_persistent_secret(self, user: User) -> Tuple[str, str]:
        try:
            secret, uri = await self.two_factor.setup_persistent_secret(user)
        except ServiceError as exc:
            self._audit(audit.TWO_FACTOR_ENROLLED, "User", False, user_id=user.id, error=exc)
            raise
        self._audit(audit.TWO_FACTOR_ENROLLED, "User", True, user_id=user.id)
        return secret, uri

    # access tokens
    def issue_access_token(
        self, user: User, scopes: Optional[Iterable[str]], client_id: str
    ) -> str:
        token = self.access_tokens.issue_access_token(user, scopes, client_id)
        self._audit(
            audit.ACCESS_TOKEN_ISSUED, "AccessToken", True, user_id=user.id, client_id=client_id
        )
        return token

    def validate_access_token(self, token: str) -> AccessTokenClaims:
        try:
            claims = self.access_tokens.validate_access_token(token)
        except ServiceError as exc:
            self._audit(audit.ACCESS_TOKEN_INVALID, "AccessToken", False, error=exc)
            raise
        self._audit(
            audit.ACCESS_TOKEN_VALIDATED,
            "AccessToken",
            True,
            user_id=claims.user_id,
            client_id=claims.client_id,
        )
        return claims

    # refresh tokens
    async def issue_refresh_token(
        self,
        user: User,
        client_id: str,
        ip_address: str = "",
        user_agent: str = "",
    ) -> RefreshToken:
        try:
            token = await self.refresh_tokens.issue(user, client_id, ip_address, user_agent)
        except ServiceError as exc:
            self._audit(
                audit.REFRESH_TOKEN_ISSUED,
                "RefreshToken",
                False,
                user_id=user.id,
                client_id=client_id,
                error=exc,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise
        self._audit(
            audit.REFRESH_TOKEN_ISSUED,
            "RefreshToken",
            True,
            user_id=user.id,
            client_id=client_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return token

    async def rotate_refresh_token(
        self,
        token_value: str,
        ip_address: str = "",
        *,
        scopes: Optional[Iterable[str]] = None,
        user_agent: Optional[str] = None,
    ) -> RotationResult:
        try:
            result = await self.refresh_tokens.rotate(token_value, ip_address, scopes=scopes)
        except ServiceError as exc:
            self._audit(
                audit.TOKEN_REFRESH_FAILED,
                "RefreshToken",
                False,
                error=exc,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise
        self._audit(
            audit.TOKEN_REFRESHED,
            "RefreshToken",
            True,
            user_id=result.user.id,
            client_id=result.client_id,
            description="rotated" if result.refresh_token else None,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return result

    async def revoke_refresh_token(
        self, token_value: str, reason: str = DEFAULT_REVOKE_REASON
    ) -> bool:
        revoked = await self.refresh_tokens.revoke_token(token_value, reason)
        if revoked is None:
            self._audit(audit.TOKEN_REVOKED, "RefreshToken", True, description="no-op")
            return False
        self._audit(
            audit.TOKEN_REVOKED,
            "RefreshToken",
            True,
            user_id=revoked.user_id,
            client_id=revoked.client_id,
            description=revoked.revoke_reason,
        )
        return True

    async def revoke_all_refresh_tokens(
        self, user_id: str, reason: str = DEFAULT_REVOKE_REASON
    ) -> int:
        count = await self.refresh_tokens.revoke_all_for_user(user_id, reason)
        self._audit(
            audit.TOKENS_REVOKED_ALL,
            "RefreshToken",
            True,
            user_id=user_id,
            description=f"{count} token(s): {reason}",
        )
        return count

    async def list_active_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        return await self.refresh_tokens.list_active_for_user(user_id)
