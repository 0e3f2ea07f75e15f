"""
Security event log for the credential lifecycle.

Records refresh failures, circuit-breaker trips, fallback credentials and
monitoring alerts. Each event is written to the ``credlife.security`` logger
and kept in a bounded in-memory history. Free-text details are redacted
before they are stored or logged.

Usage:
    from core.security_events import SecurityEventLog

    events = SecurityEventLog()
    events.record("token_refresh_failure", instance_id="tab-1", error="timeout")
    recent = events.get_events(limit=10)
"""

import logging
import re
from collections import deque
from typing import Any, Callable, Optional

from core.timestamps import from_epoch, isonow

logger = logging.getLogger("credlife.security")

MAX_EVENTS = 500
MAX_REDACTION_LENGTH = 10240  # Skip redaction on strings > 10KB

# Order matters - more specific first
REDACTION_PATTERNS = [
    (re.compile(r'\b(secret|api[_-]?key|auth[_-]?token|refresh[_-]?token|access[_-]?token)\s*[=:]\s*\S+',
                re.IGNORECASE), r'\1=***REDACTED***'),
    (re.compile(r'(Bearer\s+)[A-Za-z0-9\-_\.]{20,}', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(["\'](?:password|secret|token|key|code)["\'])\s*:\s*["\'][^"\']+["\']', re.IGNORECASE),
     r'\1: "***REDACTED***"'),
    # Bare JWTs
    (re.compile(r'\beyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+'), '***REDACTED***'),
]


def redact_sensitive(text: str) -> str:
    """Remove credentials from free text."""
    if not text or len(text) > MAX_REDACTION_LENGTH:
        return text

    result = text
    for pattern, replacement in REDACTION_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


class SecurityEventLog:
    """Bounded security event history owned by one manager."""

    def __init__(self, max_events: int = MAX_EVENTS, clock: Optional[Callable[[], float]] = None):
        self._events: deque = deque(maxlen=max_events)
        self._clock = clock

    def _timestamp(self) -> str:
        if self._clock is None:
            return isonow()
        return from_epoch(self._clock()).isoformat()

    def record(self, event_type: str, severity: str = "warning", **details: Any) -> dict:
        """
        Record a security event.

        Args:
            event_type: Short identifier (e.g., "high_failure_rate")
            severity: "info", "warning" or "critical"
            **details: Extra context; string values are redacted

        Returns:
            The stored event
        """
        clean = {
            key: redact_sensitive(value) if isinstance(value, str) else value
            for key, value in details.items()
        }
        event = {
            "timestamp": self._timestamp(),
            "event_type": event_type,
            "severity": severity,
            "details": clean,
        }
        self._events.append(event)

        level = logging.CRITICAL if severity == "critical" else (
            logging.INFO if severity == "info" else logging.WARNING
        )
        logger.log(
            level,
            f"Security event: {event_type} {clean}",
            extra={"event_type": event_type, "instance_id": clean.get("instance_id")},
        )
        return event

    def get_events(self, limit: Optional[int] = None, event_type: Optional[str] = None) -> list:
        """Most recent events first."""
        events = [e for e in reversed(self._events)
                  if event_type is None or e["event_type"] == event_type]
        return events[:limit] if limit else events

    def count(self, event_type: Optional[str] = None) -> int:
        if event_type is None:
            return len(self._events)
        return sum(1 for e in self._events if e["event_type"] == event_type)

    def clear(self) -> None:
        self._events.clear()
