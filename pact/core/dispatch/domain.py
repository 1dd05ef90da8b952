# pact/core/dispatch/domain.py
from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# STATUS / MODE ENUMS
# ============================================================================

def _fold(value: str) -> str:
    """Collapse case, whitespace, underscores and hyphens for lookups."""
    return re.sub(r"[\s_\-]+", "", value).casefold()


class SiteStatus(str, Enum):
    """
    Canonical site entry status.

    Rows written by older clients carry free-form casing ("dispatched",
    "In Progress", "approved_and_costed"); ``parse()`` maps all of them to
    one member so comparisons never happen on raw strings.
    """
    DRAFT = "Draft"
    VERIFIED = "Verified"
    APPROVED_AND_COSTED = "ApprovedAndCosted"
    DISPATCHED = "Dispatched"
    ASSIGNED = "Assigned"
    ACCEPTED = "Accepted"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    REJECTED = "Rejected"

    @classmethod
    def parse(cls, raw: "str | SiteStatus") -> "SiteStatus":
        if isinstance(raw, SiteStatus):
            return raw
        member = _STATUS_LOOKUP.get(_fold(str(raw)))
        if member is None:
            raise ValueError(f"Unknown site status: {raw!r}")
        return member


_STATUS_LOOKUP: dict[str, SiteStatus] = {_fold(s.value): s for s in SiteStatus}


class DispatchMode(str, Enum):
    OPEN = "Open"
    STATE = "State"
    LOCALITY = "Locality"
    INDIVIDUAL = "Individual"

    @classmethod
    def parse(cls, raw: "str | DispatchMode") -> "DispatchMode":
        if isinstance(raw, DispatchMode):
            return raw
        for member in cls:
            if _fold(member.value) == _fold(str(raw)):
                return member
        raise ValueError(f"Unknown dispatch mode: {raw!r}")


# Statuses in which exactly one collector holds the site.
HELD_STATUSES = frozenset({
    SiteStatus.ASSIGNED,
    SiteStatus.ACCEPTED,
    SiteStatus.IN_PROGRESS,
    SiteStatus.COMPLETED,
})

# Statuses that show up under a collector's "my sites".
ACTIVE_STATUSES = frozenset({
    SiteStatus.ASSIGNED,
    SiteStatus.ACCEPTED,
    SiteStatus.IN_PROGRESS,
})

# Statuses an entry may be dispatched from (Rejected = re-dispatch, same id).
DISPATCHABLE_STATUSES = frozenset({
    SiteStatus.APPROVED_AND_COSTED,
    SiteStatus.REJECTED,
})

FEE_FIELDS = frozenset({"enumerator_fee", "transport_fee", "cost", "cost_overridden"})


class _LockCost:
    """Patch value for ``cost``: the row's derived cost at the moment the store applies the write."""

    def __repr__(self) -> str:
        return "LOCK_COST"


LOCK_COST = _LockCost()


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class GeoPoint:
    """GPS fix captured on the collector's device."""
    latitude: float
    longitude: float
    accuracy_meters: Optional[float] = None

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy_meters": self.accuracy_meters,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> Optional["GeoPoint"]:
        if not raw:
            return None
        return cls(
            latitude=float(raw["latitude"]),
            longitude=float(raw["longitude"]),
            accuracy_meters=raw.get("accuracy_meters"),
        )


@dataclass(frozen=True)
class CollectorProfile:
    """Field collector as supplied by the identity/roles provider."""
    collector_id: str
    state: Optional[str] = None
    locality: Optional[str] = None
    display_name: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class DispatchTarget:
    """Who a dispatch is aimed at; which fields matter depends on the mode."""
    state: Optional[str] = None
    locality: Optional[str] = None
    collector_id: Optional[str] = None


def to_money(value: Any) -> Decimal:
    """Coerce a fee value to Decimal (floats go through str to avoid binary noise)."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value if value is not None else 0)


def same_place(a: Optional[str], b: Optional[str]) -> bool:
    """Case/whitespace-insensitive location match; blanks never match."""
    if not a or not b:
        return False
    return " ".join(a.split()).casefold() == " ".join(b.split()).casefold()


# ============================================================================
# SITE ENTRY
# ============================================================================

@dataclass
class SiteEntry:
    """
    One site scheduled for monitoring under a plan.

    Mutated only through the site entry store; services treat instances as
    snapshots and never write to them directly.
    """
    id: str
    plan_id: str
    site_code: str
    site_name: str
    state: str = ""
    locality: str = ""
    status: SiteStatus = SiteStatus.DRAFT

    # Fees
    enumerator_fee: Decimal = Decimal("0")
    transport_fee: Decimal = Decimal("0")
    cost: Decimal = Decimal("0")
    cost_overridden: bool = False
    fees_locked_at: Optional[datetime] = None

    # Dispatch
    dispatch_mode: Optional[DispatchMode] = None
    dispatched_at: Optional[datetime] = None
    dispatched_by: Optional[str] = None
    dispatch_target_state: Optional[str] = None
    dispatch_target_locality: Optional[str] = None
    dispatch_target_collector: Optional[str] = None

    # Claim
    accepted_by: Optional[str] = None
    accepted_at: Optional[datetime] = None
    cost_acknowledged: bool = False
    cost_acknowledged_at: Optional[datetime] = None

    # Visit
    visit_started_at: Optional[datetime] = None
    visit_started_by: Optional[str] = None
    visit_start_location: Optional[GeoPoint] = None
    visit_completed_at: Optional[datetime] = None
    visit_completed_by: Optional[str] = None
    final_location: Optional[GeoPoint] = None
    report_id: Optional[str] = None

    # Settlement
    payment_credited_at: Optional[datetime] = None

    # Send-back
    rejection_comments: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None

    updated_at: Optional[datetime] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.status = SiteStatus.parse(self.status)
        if self.dispatch_mode is not None:
            self.dispatch_mode = DispatchMode.parse(self.dispatch_mode)
        self.enumerator_fee = to_money(self.enumerator_fee)
        self.transport_fee = to_money(self.transport_fee)
        self.cost = to_money(self.cost)

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def derived_cost(self) -> Decimal:
        """Cost the entry would lock right now."""
        if self.cost_overridden:
            return self.cost
        return self.enumerator_fee + self.transport_fee

    @property
    def fees_locked(self) -> bool:
        return self.fees_locked_at is not None

    @property
    def is_settled(self) -> bool:
        return self.payment_credited_at is not None

    @property
    def is_actionable(self) -> bool:
        """Whether the holder can go and do the visit now."""
        return self.status in (SiteStatus.ACCEPTED, SiteStatus.IN_PROGRESS) and self.cost_acknowledged

    def holder_invariant_ok(self) -> bool:
        """accepted_by is set iff the status is one of the held statuses."""
        return (self.accepted_by is not None) == (self.status in HELD_STATUSES)

    def with_patch(self, patch: dict[str, Any]) -> "SiteEntry":
        """Copy with ``patch`` applied (unknown keys rejected, LOCK_COST resolved against this row)."""
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown site entry fields: {sorted(unknown)}")
        if patch.get("cost") is LOCK_COST:
            patch = {**patch, "cost": self.derived_cost}
        return replace(self, **patch)


PATCHABLE_FIELDS = frozenset(f.name for f in fields(SiteEntry)) - {"id"}


def compute_cost(
    enumerator_fee: Decimal,
    transport_fee: Decimal,
    override: Optional[Decimal] = None,
) -> tuple[Decimal, bool]:
    """Return ``(cost, overridden)`` for a fee edit."""
    if override is not None:
        return to_money(override), True
    return to_money(enumerator_fee) + to_money(transport_fee), False


# ============================================================================
# WALLET LEDGER
# ============================================================================

@dataclass(frozen=True)
class LedgerEntry:
    """Append-only wallet credit, one per settled site entry."""
    id: str
    user_id: str
    amount: Decimal
    currency: str
    reference_entry_id: str
    balance_before: Decimal
    balance_after: Decimal
    created_at: datetime
    created: bool = True  # False when credit() returned an existing row for the reference


# ============================================================================
# QUERY FILTER
# ============================================================================

@dataclass(frozen=True)
class SiteEntryFilter:
    """Filter for ``AsyncSiteEntryStore.query``; unset fields match everything."""
    statuses: Optional[frozenset[SiteStatus]] = None
    plan_id: Optional[str] = None
    state: Optional[str] = None
    locality: Optional[str] = None
    accepted_by: Optional[str] = None
    dispatch_mode: Optional[DispatchMode] = None
    dispatch_target_collector: Optional[str] = None
    unsettled_only: bool = False

    def matches(self, entry: SiteEntry) -> bool:
        if self.statuses is not None and entry.status not in self.statuses:
            return False
        if self.plan_id is not None and entry.plan_id != self.plan_id:
            return False
        if self.state is not None and not same_place(entry.state, self.state):
            return False
        if self.locality is not None and not same_place(entry.locality, self.locality):
            return False
        if self.accepted_by is not None and entry.accepted_by != self.accepted_by:
            return False
        if self.dispatch_mode is not None and entry.dispatch_mode != self.dispatch_mode:
            return False
        if (
            self.dispatch_target_collector is not None
            and entry.dispatch_target_collector != self.dispatch_target_collector
        ):
            return False
        if self.unsettled_only and entry.payment_credited_at is not None:
            return False
        return True
