# pact/core/dispatch/dispatcher.py
"""
Dispatch Engine: publishes approved-and-costed site entries for claiming.

Open / State / Locality dispatch make an entry claimable by every
eligible collector.  Individual dispatch is itself the claim, made on
behalf of the named collector: the entry goes straight to Assigned with
its fees locked, waiting for the collector to acknowledge the cost.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from pact.core.dispatch.domain import (
    DISPATCHABLE_STATUSES,
    LOCK_COST,
    CollectorProfile,
    DispatchMode,
    DispatchTarget,
    SiteEntry,
    SiteStatus,
    compute_cost,
    same_place,
    to_money,
    utcnow,
)
from pact.core.dispatch.events import SitesDispatched, publish_quietly
from pact.core.dispatch.ports import (
    AsyncCollectorDirectory,
    AsyncSiteEntryStore,
    EventSink,
    FeesLockedError,
    SiteEntryConflictError,
    SiteEntryNotFoundError,
)
from pact.core.dispatch.results import DispatchResult, ErrorCode, OpResult
from pact.infra.audit_log import audit_event
from pact.infra.logging_config import get_logger
from pact.infra.metrics import AppMetrics

logger = get_logger(__name__)


def eligible_for(collector: CollectorProfile, entry: SiteEntry) -> bool:
    """Whether ``collector`` may see and claim ``entry`` under its dispatch mode."""
    mode = entry.dispatch_mode
    if mode == DispatchMode.OPEN:
        return True
    if mode == DispatchMode.STATE:
        return same_place(collector.state, entry.state)
    if mode == DispatchMode.LOCALITY:
        return same_place(collector.state, entry.state) and same_place(collector.locality, entry.locality)
    if mode == DispatchMode.INDIVIDUAL:
        return entry.accepted_by is not None and collector.collector_id == entry.accepted_by
    return False


def _target_problem(mode: DispatchMode, target: Optional[DispatchTarget]) -> Optional[str]:
    if mode == DispatchMode.OPEN:
        return None
    if target is None:
        return f"{mode.value} dispatch requires a target"
    if mode == DispatchMode.STATE and not (target.state or "").strip():
        return "State dispatch requires a target state"
    if mode == DispatchMode.LOCALITY and not (
        (target.state or "").strip() and (target.locality or "").strip()
    ):
        return "Locality dispatch requires a target state and locality"
    if mode == DispatchMode.INDIVIDUAL and not (target.collector_id or "").strip():
        return "Individual dispatch requires a target collector"
    return None


class DispatchEngine:
    """Moves ApprovedAndCosted entries into a claimable state."""

    def __init__(
        self,
        store: AsyncSiteEntryStore,
        directory: AsyncCollectorDirectory,
        *,
        events: EventSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.directory = directory
        self.events = events
        self.clock = clock

    eligible_for = staticmethod(eligible_for)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        entry_ids: Iterable[str],
        mode: DispatchMode | str,
        target: Optional[DispatchTarget] = None,
        *,
        dispatched_by: str,
    ) -> DispatchResult:
        """
        Dispatch a batch of entries.

        Bad mode/target or an empty batch rejects the whole call.  Per-entry
        problems (not costed yet, outside the target area, lost a race) are
        collected in ``failures`` and the rest of the batch still goes out.
        """
        result = DispatchResult()
        ids = list(dict.fromkeys(entry_ids))

        try:
            mode = DispatchMode.parse(mode)
        except ValueError as exc:
            result.error = ErrorCode.INVALID_MODE_TARGET
            result.message = str(exc)
            return result

        if not ids:
            result.error = ErrorCode.EMPTY_BATCH
            result.message = "No site entries were selected."
            return result

        problem = _target_problem(mode, target)
        if problem is None and mode == DispatchMode.INDIVIDUAL:
            problem = await self._collector_problem(target.collector_id)
        if problem:
            result.error = ErrorCode.INVALID_MODE_TARGET
            result.message = problem
            AppMetrics.dispatch_rejected(result.error.value)
            return result

        now = self.clock()
        for entry_id in ids:
            entry = await self.store.get(entry_id)
            if entry is None:
                result.fail(entry_id, ErrorCode.NOT_FOUND)
                continue

            if entry.status not in DISPATCHABLE_STATUSES:
                result.fail(
                    entry_id,
                    ErrorCode.ENTRY_NOT_COSTED_YET,
                    f"Site {entry.site_code} is {entry.status.value}, not ApprovedAndCosted.",
                )
                continue

            if mode == DispatchMode.STATE and not same_place(entry.state, target.state):
                result.fail(
                    entry_id,
                    ErrorCode.LOCATION_MISMATCH,
                    f"Site {entry.site_code} is in {entry.state or 'unknown state'}, not {target.state}.",
                )
                continue

            if mode == DispatchMode.LOCALITY and not (
                same_place(entry.state, target.state) and same_place(entry.locality, target.locality)
            ):
                result.fail(
                    entry_id,
                    ErrorCode.LOCATION_MISMATCH,
                    f"Site {entry.site_code} is in {entry.locality or '?'}/{entry.state or '?'}, "
                    f"not {target.locality}/{target.state}.",
                )
                continue

            patch = self._dispatch_patch(mode, target, dispatched_by, now)
            try:
                updated = await self.store.conditional_update(entry.id, entry.status, None, patch)
            except SiteEntryConflictError:
                result.fail(entry_id, ErrorCode.CONFLICT)
                continue
            except SiteEntryNotFoundError:
                result.fail(entry_id, ErrorCode.NOT_FOUND)
                continue

            result.dispatched.append(updated)
            audit_event(
                "site.dispatch",
                entry_id=entry.id,
                actor_id=dispatched_by,
                detail=f"mode={mode.value} status={updated.status.value}",
            )

        for failure in result.failures:
            AppMetrics.dispatch_rejected(failure.error.value)

        if result.dispatched:
            AppMetrics.sites_dispatched(mode.value, len(result.dispatched))
            await publish_quietly(
                self.events,
                SitesDispatched(
                    entry_ids=tuple(e.id for e in result.dispatched),
                    mode=mode.value,
                    dispatched_by=dispatched_by,
                    target_collector=target.collector_id if mode == DispatchMode.INDIVIDUAL else None,
                ),
            )

        logger.info(
            f"Dispatch {mode.value}: {len(result.dispatched)} dispatched, "
            f"{len(result.failures)} skipped (by={dispatched_by})"
        )
        return result

    async def _collector_problem(self, collector_id: str) -> Optional[str]:
        """An Individual dispatch claims on the collector's behalf, so they must be able to claim."""
        collector = await self.directory.get_profile(collector_id)
        if collector is None:
            return f"Unknown collector {collector_id}"
        if not collector.is_active:
            return f"Collector {collector_id} is inactive"
        return None

    @staticmethod
    def _dispatch_patch(
        mode: DispatchMode,
        target: Optional[DispatchTarget],
        dispatched_by: str,
        now: datetime,
    ) -> dict[str, Any]:
        patch: dict[str, Any] = {
            "dispatch_mode": mode,
            "dispatched_at": now,
            "dispatched_by": dispatched_by,
            "dispatch_target_state": None,
            "dispatch_target_locality": None,
            "dispatch_target_collector": None,
            "cost_acknowledged": False,
            "cost_acknowledged_at": None,
            "rejection_comments": None,
            "rejected_by": None,
            "rejected_at": None,
        }
        if mode in (DispatchMode.STATE, DispatchMode.LOCALITY):
            patch["dispatch_target_state"] = target.state
        if mode == DispatchMode.LOCALITY:
            patch["dispatch_target_locality"] = target.locality

        if mode == DispatchMode.INDIVIDUAL:
            patch.update({
                "status": SiteStatus.ASSIGNED,
                "dispatch_target_collector": target.collector_id,
                "accepted_by": target.collector_id,
                "accepted_at": now,
                "cost": LOCK_COST,
                "fees_locked_at": now,
            })
        else:
            patch.update({
                "status": SiteStatus.DISPATCHED,
                "accepted_by": None,
                "accepted_at": None,
            })
        return patch

    # ------------------------------------------------------------------
    # Withdraw (pull unclaimed entries back before anyone claims them)
    # ------------------------------------------------------------------

    async def withdraw(self, entry_ids: Iterable[str], *, actor_id: str) -> DispatchResult:
        """
        Return still-unclaimed Dispatched entries to ApprovedAndCosted.

        Goes through the same compare-and-set as ``claim`` so it can never
        undo a claim that landed first.
        """
        result = DispatchResult()
        ids = list(dict.fromkeys(entry_ids))
        if not ids:
            result.error = ErrorCode.EMPTY_BATCH
            result.message = "No site entries were selected."
            return result

        for entry_id in ids:
            entry = await self.store.get(entry_id)
            if entry is None:
                result.fail(entry_id, ErrorCode.NOT_FOUND)
                continue
            if entry.accepted_by is not None:
                result.fail(entry_id, ErrorCode.ALREADY_CLAIMED)
                continue
            if entry.status != SiteStatus.DISPATCHED:
                result.fail(entry_id, ErrorCode.NOT_DISPATCHED)
                continue

            try:
                updated = await self.store.conditional_update(
                    entry.id,
                    SiteStatus.DISPATCHED,
                    None,
                    {
                        "status": SiteStatus.APPROVED_AND_COSTED,
                        "dispatch_mode": None,
                        "dispatched_at": None,
                        "dispatched_by": None,
                        "dispatch_target_state": None,
                        "dispatch_target_locality": None,
                        "dispatch_target_collector": None,
                    },
                )
            except SiteEntryConflictError:
                result.fail(entry_id, ErrorCode.ALREADY_CLAIMED)
                continue

            result.dispatched.append(updated)
            audit_event("site.withdraw", entry_id=entry.id, actor_id=actor_id)

        logger.info(
            f"Withdraw: {len(result.dispatched)} withdrawn, {len(result.failures)} skipped (by={actor_id})"
        )
        return result

    # ------------------------------------------------------------------
    # Fees (pre-acceptance edits only)
    # ------------------------------------------------------------------

    async def update_fees(
        self,
        entry_id: str,
        enumerator_fee: Decimal | float | str,
        transport_fee: Decimal | float | str,
        *,
        cost: Decimal | float | str | None = None,
        actor_id: str | None = None,
    ) -> OpResult[SiteEntry]:
        """Edit fees before the entry is accepted; locked fees are refused."""
        try:
            enumerator = to_money(enumerator_fee)
            transport = to_money(transport_fee)
            override = to_money(cost) if cost is not None else None
        except (InvalidOperation, TypeError, ValueError):
            return OpResult.failure(ErrorCode.INVALID_FEES)

        amounts = [enumerator, transport] + ([override] if override is not None else [])
        if any(not a.is_finite() or a < 0 for a in amounts):
            return OpResult.failure(ErrorCode.INVALID_FEES)

        entry = await self.store.get(entry_id)
        if entry is None:
            return OpResult.failure(ErrorCode.NOT_FOUND)
        if entry.fees_locked:
            return OpResult.failure(ErrorCode.FEES_LOCKED)

        new_cost, overridden = compute_cost(enumerator, transport, override)
        try:
            updated = await self.store.update(entry_id, {
                "enumerator_fee": enumerator,
                "transport_fee": transport,
                "cost": new_cost,
                "cost_overridden": overridden,
            })
        except FeesLockedError:
            return OpResult.failure(ErrorCode.FEES_LOCKED)
        except SiteEntryNotFoundError:
            return OpResult.failure(ErrorCode.NOT_FOUND)

        audit_event(
            "site.fees",
            entry_id=entry_id,
            actor_id=actor_id,
            detail=f"enumerator={enumerator} transport={transport} cost={new_cost}",
        )
        return OpResult.success(updated)
