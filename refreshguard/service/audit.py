from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol

from refreshguard.logging import get_logger

logger = get_logger(__name__)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


TOKEN_REFRESHED = "token_refreshed"
TOKEN_EXPIRED = "token_expired"
TOKEN_VALIDATION_FAILED = "token_validation_failed"
TOKEN_REUSE_DETECTED = "token_reuse_detected"
TOKEN_REVOKED = "token_revoked"
SESSION_EXPIRED = "session_expired"
SESSION_STARTED = "session_started"
USER_TOKENS_REVOKED = "user_tokens_revoked"

EVENT_SEVERITY: Dict[str, Severity] = {
    TOKEN_REFRESHED: Severity.INFO,
    TOKEN_EXPIRED: Severity.WARNING,
    TOKEN_VALIDATION_FAILED: Severity.ERROR,
    TOKEN_REUSE_DETECTED: Severity.CRITICAL,
    TOKEN_REVOKED: Severity.INFO,
    SESSION_EXPIRED: Severity.WARNING,
    SESSION_STARTED: Severity.INFO,
    USER_TOKENS_REVOKED: Severity.WARNING,
}


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    severity: Severity
    context: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    def emit(self, event_type: str, severity: Severity, context: Mapping[str, Any]) -> None: ...


class StructlogAuditSink:
    """Writes audit events through the application logger under ``audit``."""

    _LEVELS = {
        Severity.INFO: "info",
        Severity.WARNING: "warning",
        Severity.ERROR: "error",
        Severity.CRITICAL: "critical",
    }

    def __init__(self) -> None:
        self.logger = get_logger("refreshguard.audit")

    def emit(self, event_type: str, severity: Severity, context: Mapping[str, Any]) -> None:
        log = getattr(self.logger, self._LEVELS[Severity(severity)])
        log(event_type, audit=True, severity=Severity(severity).value, **dict(context))


class MemoryAuditSink:
    """Collects events in memory; handy for tests and local debugging."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def emit(self, event_type: str, severity: Severity, context: Mapping[str, Any]) -> None:
        with self._lock:
            self.events.append(
                AuditEvent(event_type=event_type, severity=Severity(severity), context=dict(context))
            )

    def of_type(self, event_type: str) -> List[AuditEvent]:
        with self._lock:
            return [event for event in self.events if event.event_type == event_type]


def emit_event(
    sink: Optional[AuditSink],
    event_type: str,
    context: Mapping[str, Any],
    *,
    severity: Optional[Severity] = None,
) -> None:
    """Emit through ``sink``; a failing sink never fails the token operation."""

    if sink is None:
        return
    level = severity or EVENT_SEVERITY.get(event_type, Severity.INFO)
    try:
        sink.emit(event_type, level, context)
    except Exception as exc:
        logger.warning(
            "audit_emit_failed",
            event_type=event_type,
            error_type=type(exc).__name__,
        )
