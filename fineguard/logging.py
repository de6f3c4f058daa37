from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request-scoped id shared by every log line of one portal request
_request_id: ContextVar[Optional[str]] = ContextVar("fineguard_request_id", default=None)

_SENSITIVE_FRAGMENTS = ("password", "secret", "token", "code", "hash", "authorization")
# Keys that look sensitive but carry only derived or non-secret values
_SAFE_KEYS = frozenset({"email_hash", "error_code", "status_code", "token_kind", "token_type"})
_EMAIL_KEYS = ("email", "to_email", "recipient_email")


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    value = correlation_id or str(uuid.uuid4())
    _request_id.set(value)
    return value


def hash_email(email: str) -> str:
    """Stable, non-reversible identifier for an email address in log lines."""
    return hashlib.sha256(
        email.strip().lower().encode("utf-8", "surrogatepass")
    ).hexdigest()[:16]


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def _hash_emails(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Swap raw email addresses for their ``email_hash``."""
    for key in _EMAIL_KEYS:
        value = event_dict.pop(key, None)
        if isinstance(value, str) and value:
            event_dict.setdefault("email_hash", hash_email(value))
    return event_dict


def _mask(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential material: passwords, tokens, TOTP codes and secrets."""
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in _SAFE_KEYS:
            continue
        if any(fragment in lowered for fragment in _SENSITIVE_FRAGMENTS):
            event_dict[key] = _mask(event_dict[key])
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """(Re)configure structlog for the security services.

    ``dev_mode`` or ``json_output=False`` switches to the colored console
    renderer; otherwise every event is emitted as one JSON line.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _hash_emails,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
