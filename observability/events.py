"""
Structured JSON event emission shared by the pipeline and the server.

Every event is one JSON line on stdout with a fixed envelope
(ts, session_id, component, event_type, severity, correlation_id, pii)
followed by event-specific fields. Events are also kept in the
in-memory event store so the sessions API can query them.
"""

from __future__ import annotations

import json
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event-emitting components."""

    SERVER = "server"
    PIPELINE = "pipeline"
    TOTEM = "totem"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}

_LATENCY_PATTERN = re.compile(r'("latency_ms"\s*:\s*)(\d+)')


def pii_fields(fields: Iterable[str], handling: str = "raw") -> Dict[str, Any]:
    """Build the pii envelope for events that carry user text."""
    return {"contains_pii": True, "fields": list(fields), "handling": handling}


class EventEmitter:
    """Emits structured JSON events."""

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        """
        Emit one event.

        Args:
            event_type: Stable dotted name (e.g. "turn.started")
            session_id: Opaque session identifier
            severity: Event severity
            correlation_id: Turn or request id; defaults to session_id
            pii: PII envelope, see pii_fields()
            **kwargs: Event-specific fields
        """
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or DEFAULT_PII,
        }
        event.update(kwargs)

        json_output = json.dumps(event, ensure_ascii=False, default=str)

        if kwargs.get("latency_ms") is not None:
            no_color = os.environ.get("NO_COLOR", "").lower() in ("1", "true", "yes")
            if no_color:
                replacement = r'\1\2 ms'
            else:
                replacement = rf'\1{self.ORANGE}\2 ms{self.RESET}'
            json_output = _LATENCY_PATTERN.sub(replacement, json_output)

        sys.stdout.write(json_output)
        sys.stdout.write("\n")
        sys.stdout.flush()

        # The store keeps the plain dict, not the console rendering
        event_store.store(event)

    def provider_event(
        self,
        session_id: str,
        category: str,
        provider_name: Optional[str] = None,
        detail: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Emit provider.event for a classified provider failure."""
        self.emit(
            "provider.event",
            session_id,
            severity=Severity.ERROR,
            correlation_id=correlation_id,
            category=category,
            provider=provider_name,
            detail=detail,
        )
