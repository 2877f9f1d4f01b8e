from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule of the store rejected a write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        """Name of the conflicting column, when the store reported one."""
        value = self.detail.get("field")
        return str(value) if value is not None else None


__all__ = ["ConstraintViolation"]
