from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional, Protocol

from identityd.logging import get_logger
from identityd.storage.models import utcnow

logger = get_logger(__name__)

# action names recorded by the auth facade
USER_REGISTERED = "USER_REGISTERED"
USER_REGISTER_FAILED = "USER_REGISTER_FAILED"
LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGIN_FAILED = "LOGIN_FAILED"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
TWO_FACTOR_REQUIRED = "2FA_REQUIRED"
TWO_FACTOR_INITIATED = "2FA_INITIATED"
TWO_FACTOR_VERIFIED = "2FA_VERIFIED"
TWO_FACTOR_FAILED = "2FA_FAILED"
TWO_FACTOR_ENROLLED = "2FA_ENROLLED"
EMAIL_VERIFIED = "EMAIL_VERIFIED"
EMAIL_VERIFY_FAILED = "EMAIL_VERIFY_FAILED"
ACCESS_TOKEN_ISSUED = "ACCESS_TOKEN_ISSUED"
ACCESS_TOKEN_VALIDATED = "ACCESS_TOKEN_VALIDATED"
ACCESS_TOKEN_INVALID = "ACCESS_TOKEN_INVALID"
REFRESH_TOKEN_ISSUED = "REFRESH_TOKEN_ISSUED"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
TOKEN_REVOKED = "TOKEN_REVOKED"
TOKENS_REVOKED_ALL = "TOKENS_REVOKED_ALL"


@dataclass
class AuthOutcome:
    """Structured result of one security-relevant operation."""

    action: str
    resource: str
    success: bool
    user_id: Optional[str] = None
    client_id: Optional[str] = None
    description: Optional[str] = None
    error_message: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class AuditSink(Protocol):
    def record(self, outcome: AuthOutcome) -> None: ...


class LoggingAuditSink:
    """Default sink: one structured log line per outcome."""

    def record(self, outcome: AuthOutcome) -> None:
        data = outcome.as_dict()
        action = data.pop("action")
        log = logger.info if outcome.success else logger.warning
        log("audit", audit_action=action, **data)


def forward_outcome(sink: Optional[AuditSink], outcome: AuthOutcome) -> None:
    """Hand an outcome to the sink; a failing sink is logged, not raised."""
    if sink is None:
        return
    try:
        sink.record(outcome)
    except Exception as exc:
        logger.error(
            "audit_sink_failed",
            audit_action=outcome.action,
            error_type=type(exc).__name__,
            error=str(exc),
        )
