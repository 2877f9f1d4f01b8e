from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from identityd.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session lifecycle engine."""

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("identityservice", "JWT_ISSUER")
    jwt_audience: str = env_field("identityservice-api", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    refresh_rotation_window_days: int = env_field(
        7,
        "REFRESH_ROTATION_WINDOW_DAYS",
        ge=0,
        description="Issue a new refresh token when the presented one has less than this left",
    )
    revoke_on_rotation: bool = env_field(
        False,
        "REVOKE_ON_ROTATION",
        description="Revoke the presented refresh token when rotation mints a new one",
    )

    # Credential policy
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS", gt=0)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", gt=0)
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH", gt=0)
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", gt=0)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", gt=0)
    argon2_memory_cost: int = env_field(
        65536, "ARGON2_MEMORY_COST", gt=7, description="KiB of memory per hash"
    )
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", gt=0)

    # Second factor
    two_factor_code_ttl_minutes: int = env_field(10, "TWO_FACTOR_CODE_TTL_MINUTES", gt=0)
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS", gt=0)
    totp_issuer: str = env_field("IdentityService", "TOTP_ISSUER")
    secret_encryption_key: str | None = env_field(
        None,
        "SECRET_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET",
    )

    # Storage
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/identityd", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Optional Redis for pending 2FA challenges",
    )
    shared_fs_root: str = env_field("/srv/identityd", "SHARED_FS_ROOT")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("IdentityService", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-process fallbacks used by the test suite",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def encryption_key_material(self) -> str:
        return self.secret_encryption_key or self.jwt_secret

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters")
            return value
        return load_or_create_signing_secret(
            Path(os.getenv("SHARED_FS_ROOT", "/srv/identityd"))
        )


def load_or_create_signing_secret(fs_root: Path) -> str:
    """Return the signing secret kept at ``fs_root/.jwt_secret``, creating it once.

    Tokens issued before a restart stay valid because the generated secret is
    written with mode 0600 and reused. A symlinked or truncated file is ignored
    and replaced.
    """
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except OSError as exc:
        # chmod fails on directories owned by another user
        logger.warning("signing_secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("signing_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= MIN_SECRET_LENGTH:
                return persisted

    generated = secrets.token_urlsafe(64)
    tmp_name: str | None = None
    try:
        fd, tmp_name = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        if tmp_name:
            Path(tmp_name).unlink(missing_ok=True)
        logger.error("signing_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist the signing secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("signing_secret_generated", path=str(secret_path))
    return generated


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""
    global _settings_cache
    _settings_cache = None
