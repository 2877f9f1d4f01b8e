from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

# Values under these keys never reach a log line in clear text
_SECRET_KEYS = ("password", "secret", "authorization", "refresh_token", "access_token")
# Keys named like these keep a short prefix so operators can correlate
_PARTIAL_KEYS = ("token", "handle")


def bind_auth_context(
    *,
    correlation_id: Optional[str] = None,
    client_id: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> str:
    """Attach request identifiers to every log line emitted in this context.

    Returns the correlation id, generating one when none is supplied.
    """
    cid = correlation_id or str(uuid.uuid4())
    values: Dict[str, Any] = {"correlation_id": cid}
    if client_id:
        values["client_id"] = client_id
    if ip_address:
        values["ip_address"] = ip_address
    structlog.contextvars.bind_contextvars(**values)
    return cid


def clear_auth_context() -> None:
    structlog.contextvars.clear_contextvars()


def redact_email(email: str) -> str:
    """Keep the domain and two characters of the local part."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential material and email addresses before rendering."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = "***"
        elif lower_key in _PARTIAL_KEYS or lower_key.endswith(("_token", "_handle")):
            event_dict[key] = value[:4] + "***" if len(value) > 8 else "***"
        elif "email" in lower_key and "@" in value:
            event_dict[key] = redact_email(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_credentials,
    ]

    if development_mode or not json_output:
        renderer = structlog.dev.ConsoleRenderer(colors=development_mode)
        processors = shared_processors + [renderer]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
