# pact/transport/schemas.py
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from pact.core.dispatch.domain import DispatchTarget, GeoPoint, LedgerEntry, SiteEntry
from pact.core.dispatch.results import DispatchResult


# ============================================================================
# REQUEST BODIES
# ============================================================================

class GeoPointIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy_meters: float | None = Field(default=None, ge=0)

    def to_domain(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude, self.accuracy_meters)


class DispatchIn(BaseModel):
    entry_ids: list[str] = Field(default_factory=list, max_length=1000)
    mode: str = Field(min_length=1, max_length=32)
    dispatched_by: str = Field(min_length=1, max_length=128)
    state: str | None = Field(default=None, max_length=128)
    locality: str | None = Field(default=None, max_length=128)
    collector_id: str | None = Field(default=None, max_length=128)

    def target(self) -> DispatchTarget | None:
        if self.state is None and self.locality is None and self.collector_id is None:
            return None
        return DispatchTarget(state=self.state, locality=self.locality, collector_id=self.collector_id)


class WithdrawIn(BaseModel):
    entry_ids: list[str] = Field(default_factory=list, max_length=1000)
    actor_id: str = Field(min_length=1, max_length=128)


class FeesIn(BaseModel):
    enumerator_fee: Decimal
    transport_fee: Decimal
    cost: Decimal | None = None
    actor_id: str | None = Field(default=None, max_length=128)


class CollectorIn(BaseModel):
    collector_id: str = Field(min_length=1, max_length=128)


class SendBackIn(BaseModel):
    actor_id: str = Field(min_length=1, max_length=128)
    comments: str = Field(default="", max_length=4000)


class StartVisitIn(BaseModel):
    collector_id: str = Field(min_length=1, max_length=128)
    location: GeoPointIn | None = None


class CompleteVisitIn(BaseModel):
    collector_id: str = Field(min_length=1, max_length=128)
    report_id: str | None = Field(default=None, max_length=128)
    final_location: GeoPointIn | None = None


class SettleSweepIn(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=10000)


# ============================================================================
# RESPONSE SERIALIZERS
# ============================================================================

def _plain(value: Any) -> Any:
    """Money as strings (no float rounding), enums as values, datetimes as ISO."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def entry_out(entry: SiteEntry) -> dict[str, Any]:
    data = _plain(asdict(entry))
    data["fees_locked"] = entry.fees_locked
    data["is_actionable"] = entry.is_actionable
    return data


def ledger_out(entry: LedgerEntry) -> dict[str, Any]:
    return _plain(asdict(entry))


def dispatch_out(result: DispatchResult) -> dict[str, Any]:
    return {
        "dispatched": [entry_out(e) for e in result.dispatched],
        "failures": [
            {"entry_id": f.entry_id, "error": f.error.value, "message": f.message}
            for f in result.failures
        ],
    }
