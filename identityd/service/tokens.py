from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Optional

from identityd.logging import get_logger
from identityd.service.errors import InvalidTokenError
from identityd.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class SigningKey:
    """Process-wide HMAC key, built once at startup and shared read-only."""

    secret: bytes = field(repr=False)
    issuer: str
    audience: str

    @classmethod
    def from_secret(cls, secret: str, *, issuer: str, audience: str) -> "SigningKey":
        if len(secret) < 32:
            raise ValueError("signing secret must be at least 32 characters")
        return cls(secret=secret.encode(), issuer=issuer, audience=audience)


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: str
    client_id: str
    scopes: List[str]
    username: Optional[str]
    email: Optional[str]
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None


class _TokenRejected(Exception):
    """Internal reason for a rejected token; never surfaces to callers."""


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def normalize_scopes(scopes: Optional[Iterable[str]]) -> List[str]:
    """Ordered, de-duplicated scope names with blanks dropped."""
    seen: dict[str, None] = {}
    for scope in scopes or ():
        if scope and scope not in seen:
            seen[scope] = None
    return list(seen)


class TokenCodec:
    """Compact HS256 tokens (header.claims.signature) signed with one key."""

    def __init__(
        self, key: SigningKey, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.key = key
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self.key.secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, claims: dict[str, Any], *, ttl: timedelta, token_type: str) -> str:
        now = self._now()
        payload = {
            **claims,
            "iss": self.key.issuer,
            "aud": self.key.audience,
            "iat": int(now.timestamp()),
            "nbf": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str, token_type: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise _TokenRejected("malformed")
        # nothing is parsed until the signature over the raw segments holds
        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            raise _TokenRejected("signature")
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, RecursionError):
            raise _TokenRejected("header_undecodable")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise _TokenRejected("algorithm")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, RecursionError):
            raise _TokenRejected("payload_undecodable")
        if not isinstance(payload, dict):
            raise _TokenRejected("payload_shape")
        if payload.get("iss") != self.key.issuer:
            raise _TokenRejected("issuer")
        aud = payload.get("aud")
        if not (aud == self.key.audience or (isinstance(aud, list) and self.key.audience in aud)):
            raise _TokenRejected("audience")
        if payload.get("token_type") != token_type:
            raise _TokenRejected("token_type")
        try:
            exp = float(payload["exp"])
            nbf = float(payload.get("nbf", payload.get("iat", 0)))
        except (KeyError, TypeError, ValueError):
            raise _TokenRejected("timestamps")
        now = self._now().timestamp()
        # no clock-skew allowance in either direction
        if exp <= now:
            raise _TokenRejected("expired")
        if nbf > now:
            raise _TokenRejected("not_yet_valid")
        if not payload.get("sub"):
            raise _TokenRejected("subject")
        return payload

    def decode(self, token: str, *, token_type: str) -> dict[str, Any]:
        """Verify and decode; any failure raises the same ``InvalidTokenError``."""
        try:
            return self._decode(token, token_type)
        except _TokenRejected as exc:
            logger.warning("token_invalid", token_type=token_type, reason=str(exc))
            raise InvalidTokenError("Invalid token") from None


class AccessTokenIssuer:
    """Mints and validates stateless access tokens."""

    TOKEN_TYPE = "access"

    def __init__(self, codec: TokenCodec, *, ttl: timedelta = timedelta(hours=1)) -> None:
        self.codec = codec
        self.ttl = ttl

    def issue_access_token(
        self, user: User, scopes: Optional[Iterable[str]], client_id: str
    ) -> str:
        claims: dict[str, Any] = {
            "sub": user.id,
            "username": user.username,
            "email": user.email,
            "client_id": client_id,
        }
        scope_list = normalize_scopes(scopes)
        if scope_list:
            claims["scope"] = scope_list
        token = self.codec.encode(claims, ttl=self.ttl, token_type=self.TOKEN_TYPE)
        logger.debug(
            "access_token_issued", user_id=user.id, client_id=client_id, scopes=scope_list
        )
        return token

    def validate_access_token(self, token: str) -> AccessTokenClaims:
        payload = self.codec.decode(token, token_type=self.TOKEN_TYPE)
        raw_scope = payload.get("scope")
        if isinstance(raw_scope, str):
            scopes = normalize_scopes(raw_scope.split())
        elif isinstance(raw_scope, list):
            scopes = normalize_scopes(str(s) for s in raw_scope)
        else:
            scopes = []
        return AccessTokenClaims(
            user_id=str(payload["sub"]),
            client_id=str(payload.get("client_id") or ""),
            scopes=scopes,
            username=payload.get("username"),
            email=payload.get("email"),
            issued_at=datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            token_id=payload.get("jti"),
        )
