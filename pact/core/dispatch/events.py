# pact/core/dispatch/events.py
"""
Lifecycle events emitted for the surrounding UI / notification layer.

Publishing is fire-and-forget: a failing sink is logged and counted,
never allowed to undo or mask the state transition that produced it.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pact.core.dispatch.domain import utcnow
from pact.core.dispatch.ports import EventSink
from pact.infra.logging_config import get_logger
from pact.infra.metrics import AppMetrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class SitesDispatched:
    entry_ids: tuple[str, ...]
    mode: str
    dispatched_by: str
    target_collector: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)
    name: str = field(default="SitesDispatched", init=False)


@dataclass(frozen=True)
class SiteClaimed:
    entry_id: str
    collector_id: str
    cost: Decimal
    occurred_at: datetime = field(default_factory=utcnow)
    name: str = field(default="SiteClaimed", init=False)


@dataclass(frozen=True)
class CostAcknowledged:
    entry_id: str
    collector_id: str
    cost: Decimal
    occurred_at: datetime = field(default_factory=utcnow)
    name: str = field(default="CostAcknowledged", init=False)


@dataclass(frozen=True)
class SiteSentBack:
    entry_id: str
    actor_id: str
    comments: str
    notify_user_id: Optional[str]  # original dispatcher
    previous_holder: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)
    name: str = field(default="SiteSentBack", init=False)


@dataclass(frozen=True)
class VisitStarted:
    entry_id: str
    collector_id: str
    occurred_at: datetime = field(default_factory=utcnow)
    name: str = field(default="VisitStarted", init=False)


@dataclass(frozen=True)
class VisitCompleted:
    entry_id: str
    collector_id: str
    report_id: Optional[str]
    occurred_at: datetime = field(default_factory=utcnow)
    name: str = field(default="VisitCompleted", init=False)


@dataclass(frozen=True)
class PaymentSettled:
    entry_id: str
    collector_id: str
    amount: Decimal
    ledger_entry_id: str
    occurred_at: datetime = field(default_factory=utcnow)
    name: str = field(default="PaymentSettled", init=False)


def event_to_dict(event: Any) -> dict[str, Any]:
    """Flatten an event into JSON-friendly primitives."""
    data = asdict(event)
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = str(value)
        elif isinstance(value, datetime):
            data[key] = value.isoformat()
        elif isinstance(value, tuple):
            data[key] = list(value)
    return data


async def publish_quietly(sink: EventSink | None, event: Any) -> None:
    """Hand ``event`` to ``sink``; failures are logged, never raised."""
    if sink is None:
        return
    try:
        await sink.publish(event)
    except Exception:
        logger.warning(
            f"Event sink failed for {event.name} (entry={getattr(event, 'entry_id', '-')})",
            exc_info=True,
        )
        AppMetrics.event_publish_failed(event.name)
