"""Helpers shared between the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


class SecretCipher:
    """Fernet wrapper for TOTP secrets stored at rest.

    The Fernet key is derived from arbitrary key material with SHA-256 so any
    sufficiently long configured secret can be used.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("secret encryption key material is empty")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as exc:
            raise RuntimeError("unable to decrypt stored secret") from exc


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps coming back from a driver as UTC."""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)
