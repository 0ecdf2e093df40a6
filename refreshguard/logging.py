from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating one when absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Refresh bearers are "<uuid>.<secret>"; the id half is safe to log
_REFRESH_BEARER_RE = re.compile(
    r"^([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})\.[A-Za-z0-9_-]+$"
)
_REDACTED_MARKERS = ("password", "secret", "token", "authorization", "email")
_SAFE_KEYS = {"token_id", "token_type", "key_fingerprint", "secret_variable"}
REDACTED = "***"


def _mask(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    bearer = _REFRESH_BEARER_RE.match(value)
    if bearer:
        return f"{bearer.group(1)}.{REDACTED}"
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}{REDACTED}@{domain}"
    return REDACTED


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask signing secrets, bearer tokens and email addresses.

    Token ids and key fingerprints pass through so incidents can still be
    traced across log lines.
    """
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS:
            continue
        if any(marker in lower_key for marker in _REDACTED_MARKERS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    processors = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_MAX_CLIENT_MESSAGE = 300

# Fragments that must never be echoed back in an error response
_SENSITIVE_PATTERNS = [
    re.compile(p)
    for p in (
        r"eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*",
        r"[0-9a-fA-F-]{36}\.[A-Za-z0-9_-]{20,}",
        r"(?i)(select|insert|update|delete)\s+.{0,50}",
        r"(?i)(password|secret|token|key)\s*[:=]\s*\S+",
        r"(?i)postgres(ql)?://\S+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip tokens, SQL fragments, DSNs and credentials from an error message.

    Used when a non-production error response echoes exception text.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_CLIENT_MESSAGE:
        result = result[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return result
