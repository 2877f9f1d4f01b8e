from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from redis import Redis
from redis.exceptions import WatchError

from identityd.logging import get_logger
from identityd.storage.common import deserialize_datetime, serialize_datetime
from identityd.storage.models import TwoFactorVerification


class RedisChallengeStore:
    """Pending second-factor challenges kept in Redis.

    Each challenge is a JSON string under ``twofactor:challenge:{id}`` that
    expires with the challenge itself. A sorted set per (user, method), scored
    by creation time, indexes the challenges so the newest pending one can be
    found without scanning.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.redis_url = redis_url
        self._client = client
        self.logger = get_logger(__name__)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before routing challenges here."""
        self._client.ping()

    @staticmethod
    def _challenge_key(challenge_id: str) -> str:
        return f"twofactor:challenge:{challenge_id}"

    @staticmethod
    def _index_key(user_id: str, method: str) -> str:
        return f"twofactor:pending:{user_id}:{method}"

    @staticmethod
    def _ttl_seconds(challenge: TwoFactorVerification) -> int:
        return max(1, int((challenge.expires_at - challenge.created_at).total_seconds()))

    @staticmethod
    def _dump(challenge: TwoFactorVerification) -> str:
        return json.dumps(
            {
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
        )

    @staticmethod
    def _load(raw: str) -> TwoFactorVerification:
        data = json.loads(raw)
        return TwoFactorVerification(
            id=data["id"],
            user_id=data["user_id"],
            method=data["method"],
            code=data["code"],
            expires_at=deserialize_datetime(data["expires_at"]),
            created_at=deserialize_datetime(data["created_at"]),
            is_verified=bool(data.get("is_verified", False)),
            verified_at=deserialize_datetime(data.get("verified_at")),
            failed_attempts=int(data.get("failed_attempts", 0)),
        )

    def insert_challenge(self, challenge: TwoFactorVerification) -> TwoFactorVerification:
        ttl = self._ttl_seconds(challenge)
        index_key = self._index_key(challenge.user_id, challenge.method)
        pipe = self._client.pipeline()
        pipe.set(self._challenge_key(challenge.id), self._dump(challenge), ex=ttl)
        pipe.zadd(index_key, {challenge.id: challenge.created_at.timestamp()})
        pipe.expire(index_key, ttl)
        pipe.execute()
        return challenge

    def update_challenge(self, challenge: TwoFactorVerification) -> TwoFactorVerification:
        self._client.set(
            self._challenge_key(challenge.id), self._dump(challenge), keepttl=True
        )
        return challenge

    def get_most_recent_pending_challenge(
        self, user_id: str, method: str, *, now: datetime
    ) -> Optional[TwoFactorVerification]:
        index_key = self._index_key(user_id, method)
        for challenge_id in self._client.zrevrange(index_key, 0, -1):
            raw = self._client.get(self._challenge_key(challenge_id))
            if raw is None:
                # expired in Redis; drop the dangling index entry
                self._client.zrem(index_key, challenge_id)
                continue
            challenge = self._load(raw)
            if challenge.is_pending(now):
                return challenge
        return None

    def mark_challenge_verified(self, challenge_id: str, *, now: datetime) -> bool:
        key = self._challenge_key(challenge_id)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        pipe.unwatch()
                        return False
                    challenge = self._load(raw)
                    if challenge.is_verified:
                        pipe.unwatch()
                        return False
                    challenge.is_verified = True
                    challenge.verified_at = now
                    pipe.multi()
                    pipe.set(key, self._dump(challenge), keepttl=True)
                    pipe.zrem(
                        self._index_key(challenge.user_id, challenge.method), challenge_id
                    )
                    pipe.execute()
                    return True
                except WatchError:
                    self.logger.debug("challenge_verify_retry", challenge_id=challenge_id)
                    continue

    def record_challenge_mismatch(
        self, challenge_id: str, *, max_attempts: int, now: datetime
    ) -> int:
        """Count a wrong code; the challenge expires once ``max_attempts`` is reached."""
        key = self._challenge_key(challenge_id)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        pipe.unwatch()
                        return 0
                    challenge = self._load(raw)
                    challenge.failed_attempts += 1
                    exhausted = challenge.failed_attempts >= max_attempts
                    if exhausted and challenge.expires_at > now:
                        challenge.expires_at = now
                    pipe.multi()
                    pipe.set(key, self._dump(challenge), keepttl=True)
                    if exhausted:
                        pipe.zrem(
                            self._index_key(challenge.user_id, challenge.method),
                            challenge_id,
                        )
                    pipe.execute()
                    return challenge.failed_attempts
                except WatchError:
                    self.logger.debug("challenge_mismatch_retry", challenge_id=challenge_id)
                    continue
