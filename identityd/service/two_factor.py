from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Tuple
from urllib.parse import quote, urlencode

from identityd.logging import get_logger
from identityd.service.email import BackgroundEmailDispatch
from identityd.service.errors import (
    InvalidCodeError,
    InvalidTokenError,
    NoPendingChallengeError,
    UserNotFoundError,
    ValidationError,
)
from identityd.service.tokens import TokenCodec
from identityd.storage.errors import ConstraintViolation
from identityd.storage.models import TwoFactorVerification, User, utcnow

logger = get_logger(__name__)

METHOD_TOTP = "totp"
METHOD_EMAIL = "email"
SUPPORTED_METHODS = (METHOD_TOTP, METHOD_EMAIL)

TOTP_STEP_SECONDS = 30
TOTP_DIGITS = 6
MAX_CODE_ATTEMPTS = 5


class ChallengeStore(Protocol):
    def insert_challenge(self, challenge: TwoFactorVerification) -> TwoFactorVerification: ...

    def update_challenge(self, challenge: TwoFactorVerification) -> TwoFactorVerification: ...

    def get_most_recent_pending_challenge(
        self, user_id: str, method: str, *, now: datetime
    ) -> Optional[TwoFactorVerification]: ...

    def mark_challenge_verified(self, challenge_id: str, *, now: datetime) -> bool: ...

    def record_challenge_mismatch(
        self, challenge_id: str, *, max_attempts: int, now: datetime
    ) -> int: ...


class SecretStore(Protocol):
    def enroll_two_factor_secret(
        self, user_id: str, secret: str, *, now: datetime
    ) -> Optional[User]: ...


def generate_code() -> str:
    """Six-digit numeric code in 100000..999999."""
    return str(100000 + secrets.randbelow(900000))


def generate_totp(secret: str, timestamp: float, *, step: int = TOTP_STEP_SECONDS) -> str:
    """RFC 6238 code (HMAC-SHA1, six digits) for a base32 secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    key = base64.b32decode(padded, casefold=True)
    counter = int(timestamp // step).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    value = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(value).zfill(TOTP_DIGITS)


def verify_totp(secret: str, code: str, at: datetime, *, window: int = 1) -> bool:
    """Accept the current step and ``window`` adjacent steps either side."""
    if not code or not code.isdigit() or len(code) != TOTP_DIGITS:
        return False
    timestamp = at.timestamp()
    for offset in range(-window, window + 1):
        try:
            expected = generate_totp(secret, timestamp + offset * TOTP_STEP_SECONDS)
        except ValueError:
            logger.warning("totp_secret_invalid")
            return False
        if hmac.compare_digest(expected.encode(), code.encode()):
            return True
    return False


class TwoFactorChallengeManager:
    """Issues and checks short-lived second-factor challenges."""

    HANDLE_TYPE = "2fa"

    def __init__(
        self,
        users: SecretStore,
        challenges: ChallengeStore,
        codec: TokenCodec,
        *,
        email: Optional[BackgroundEmailDispatch] = None,
        code_ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = MAX_CODE_ATTEMPTS,
        totp_issuer: str = "IdentityService",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.users = users
        self.challenges = challenges
        self.codec = codec
        self.email = email
        self.code_ttl = code_ttl
        self.max_attempts = max_attempts
        self.totp_issuer = totp_issuer
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _check_method(method: str) -> str:
        if method not in SUPPORTED_METHODS:
            raise ValidationError(
                f"Unsupported 2FA method: {method!r}",
                detail={"supported": list(SUPPORTED_METHODS)},
            )
        return method

    async def initiate(self, user: User, method: str) -> str:
        """Create a pending challenge and return a handle for the verify step."""
        self._check_method(method)
        now = self._now()
        challenge = TwoFactorVerification.new(
            user.id, method, generate_code(), ttl=self.code_ttl, now=now
        )
        try:
            self.challenges.insert_challenge(challenge)
        except ConstraintViolation as exc:
            raise UserNotFoundError("User no longer exists") from exc
        if method == METHOD_EMAIL and self.email is not None:
            self.email.send_two_factor_code(user.email, challenge.code)
        logger.info("two_factor_initiated", user_id=user.id, method=method)
        return self.codec.encode(
            {"sub": user.id, "method": method},
            ttl=self.code_ttl,
            token_type=self.HANDLE_TYPE,
        )

    def resolve_handle(self, handle: str) -> Tuple[str, str]:
        """Return ``(user_id, method)`` carried by a challenge handle."""
        payload = self.codec.decode(handle, token_type=self.HANDLE_TYPE)
        method = payload.get("method")
        if method not in SUPPORTED_METHODS:
            logger.warning("two_factor_handle_bad_method")
            raise InvalidTokenError("Invalid token")
        return str(payload["sub"]), method

    async def verify(self, user: User, code: str, method: str) -> bool:
        self._check_method(method)
        now = self._now()
        pending = self.challenges.get_most_recent_pending_challenge(
            user.id, method, now=now
        )
        if pending is None:
            logger.info("two_factor_no_pending", user_id=user.id, method=method)
            raise NoPendingChallengeError("No pending verification found")

        supplied = code if isinstance(code, str) else ""
        matched = hmac.compare_digest(pending.code.encode(), supplied.encode())
        if not matched and method == METHOD_TOTP and user.two_factor_secret:
            matched = verify_totp(user.two_factor_secret, supplied, now)
        if not matched:
            attempts = self.challenges.record_challenge_mismatch(
                pending.id, max_attempts=self.max_attempts, now=now
            )
            logger.info(
                "two_factor_code_mismatch",
                user_id=user.id,
                method=method,
                attempts=attempts,
            )
            if attempts >= self.max_attempts:
                logger.warning(
                    "two_factor_challenge_exhausted", user_id=user.id, method=method
                )
            raise InvalidCodeError("Invalid code")

        if not self.challenges.mark_challenge_verified(pending.id, now=now):
            # a concurrent verify consumed it first
            raise NoPendingChallengeError("No pending verification found")
        logger.info("two_factor_verified", user_id=user.id, method=method)
        return True

    async def setup_persistent_secret(self, user: User) -> Tuple[str, str]:
        """Enroll a TOTP secret and enable 2FA; returns (secret, otpauth URI)."""
        secret = base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")
        enrolled = self.users.enroll_two_factor_secret(user.id, secret, now=self._now())
        if enrolled is None:
            raise UserNotFoundError("User no longer exists")
        user.two_factor_secret = secret
        user.two_factor_enabled = True
        logger.info("two_factor_enrolled", user_id=user.id)
        return secret, self.provisioning_uri(user.email, secret)

    def provisioning_uri(self, account: str, secret: str) -> str:
        label = f"{quote(self.totp_issuer, safe='')}:{quote(account, safe='@')}"
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.totp_issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_STEP_SECONDS,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"
