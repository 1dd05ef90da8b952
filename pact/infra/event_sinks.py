# pact/infra/event_sinks.py
"""
Event sinks for dispatch lifecycle events.

Delivery transports (push, SMS, e-mail) are out of scope here; the
default sink records every event on the audit logger so the UI /
notification service can tail it.
"""
from __future__ import annotations

from typing import Any

from pact.core.dispatch.events import event_to_dict
from pact.infra.audit_log import audit_event
from pact.infra.logging_config import get_logger

logger = get_logger(__name__)


class LoggingEventSink:
    """Writes each event to the ``audit`` logger as ``event.<Name>``."""

    async def publish(self, event: Any) -> None:
        data = event_to_dict(event)
        audit_event(
            f"event.{event.name}",
            entry_id=data.get("entry_id"),
            actor_id=data.get("collector_id") or data.get("actor_id") or data.get("dispatched_by"),
            extra={"event": data},
        )


class RecordingEventSink:
    """Keeps published events in memory (local runs and tests)."""

    def __init__(self) -> None:
        self.events: list[Any] = []

    async def publish(self, event: Any) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [e.name for e in self.events]
