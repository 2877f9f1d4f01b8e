from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from identityd.config import Settings, get_settings, reset_settings_cache
from identityd.logging import get_logger
from identityd.service.audit import AuditSink, LoggingAuditSink
from identityd.service.auth import AuthService
from identityd.service.credentials import CredentialVerifier
from identityd.service.email import BackgroundEmailDispatch, EmailService
from identityd.service.refresh import RefreshTokenManager
from identityd.service.tokens import AccessTokenIssuer, SigningKey, TokenCodec
from identityd.service.two_factor import TwoFactorChallengeManager
from identityd.storage.memory import MemoryStore
from identityd.storage.postgres import PostgresStore
from identityd.storage.redis_cache import RedisChallengeStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password part of a connection URL with ``***``."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Builds the store, token key and services once per process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    secret_encryption_key=self.settings.encryption_key_material,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    secret_encryption_key=self.settings.encryption_key_material,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.challenge_store: Union[MemoryStore, PostgresStore, RedisChallengeStore]
        self.challenge_store = self.store
        if self.settings.redis_url:
            redis_store = RedisChallengeStore(self.settings.redis_url)
            try:
                redis_store.verify_connection()
            except Exception as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; unset it to keep "
                        "challenges in the primary store"
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
            else:
                self.challenge_store = redis_store
                logger.info(
                    "runtime_redis_initialized",
                    redis_url=_mask_url_password(self.settings.redis_url),
                )

        self.signing_key = SigningKey.from_secret(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.codec = TokenCodec(self.signing_key)

        self.email_service = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            verification_ttl_hours=self.settings.email_verification_ttl_hours,
            code_ttl_minutes=self.settings.two_factor_code_ttl_minutes,
        )
        self.email = BackgroundEmailDispatch(self.email_service)

        self.credentials = CredentialVerifier.from_settings(
            self.store, self.settings, email=self.email
        )
        self.two_factor = TwoFactorChallengeManager(
            self.store,
            self.challenge_store,
            self.codec,
            email=self.email,
            code_ttl=timedelta(minutes=self.settings.two_factor_code_ttl_minutes),
            max_attempts=self.settings.two_factor_max_attempts,
            totp_issuer=self.settings.totp_issuer,
        )
        self.access_tokens = AccessTokenIssuer(
            self.codec, ttl=timedelta(minutes=self.settings.access_token_ttl_minutes)
        )
        self.refresh_tokens = RefreshTokenManager(
            self.store,
            self.store,
            self.access_tokens,
            ttl=timedelta(days=self.settings.refresh_token_ttl_days),
            rotation_window=timedelta(days=self.settings.refresh_rotation_window_days),
            revoke_on_rotation=self.settings.revoke_on_rotation,
        )
        self.auth = AuthService(
            self.credentials,
            self.two_factor,
            self.access_tokens,
            self.refresh_tokens,
            audit_sink=audit_sink or LoggingAuditSink(),
        )
        logger.info("runtime_init_completed")

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton; double-checked under a lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
