# pact/core/dispatch/claims.py
"""
Claim / acceptance coordinator.

At most one collector may claim a dispatched site.  The guarantee rests
entirely on the store's single-row compare-and-set: every transition
here goes through ``conditional_update`` and a lost compare is reported
to the caller, never retried.  Retrying blindly could hand the caller a
different site than the one they picked, so the UI re-queries instead.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from pact.core.dispatch.dispatcher import eligible_for
from pact.core.dispatch.domain import LOCK_COST, SiteEntry, SiteStatus, utcnow
from pact.core.dispatch.events import CostAcknowledged, SiteClaimed, SiteSentBack, publish_quietly
from pact.core.dispatch.ports import (
    AsyncCollectorDirectory,
    AsyncSiteEntryStore,
    EventSink,
    SiteEntryConflictError,
    SiteEntryNotFoundError,
)
from pact.core.dispatch.results import ErrorCode, OpResult
from pact.infra.audit_log import audit_event
from pact.infra.logging_config import LogContext, get_logger
from pact.infra.metrics import AppMetrics

logger = get_logger(__name__)

# Send-back is allowed from these states only.
_SEND_BACK_FROM = (SiteStatus.ACCEPTED, SiteStatus.ASSIGNED)


class ClaimCoordinator:
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

    async def claim(self, entry_id: str, collector_id: str) -> OpResult[SiteEntry]:
        """
        First-come, first-served claim of a Dispatched entry.

        The winning write moves the entry to Accepted and locks the fees,
        taking the cost from the fees as they stand when the write lands.
        Claimers see the cost before claiming, so the claim itself counts
        as acknowledgement.
        """
        log = LogContext(logger, entry_id=entry_id, collector_id=collector_id)

        entry = await self.store.get(entry_id)
        if entry is None:
            return OpResult.failure(ErrorCode.NOT_FOUND)
        if entry.accepted_by is not None:
            AppMetrics.claim_lost()
            log.info("Claim refused: entry already held")
            return OpResult.failure(ErrorCode.ALREADY_CLAIMED)
        if entry.status != SiteStatus.DISPATCHED:
            return OpResult.failure(ErrorCode.NOT_DISPATCHED)

        collector = await self.directory.get_profile(collector_id)
        if collector is None or not collector.is_active:
            return OpResult.failure(ErrorCode.NOT_ELIGIBLE, "Unknown or inactive collector.")
        if not eligible_for(collector, entry):
            return OpResult.failure(ErrorCode.NOT_ELIGIBLE)

        now = self.clock()
        try:
            claimed = await self.store.conditional_update(
                entry_id,
                SiteStatus.DISPATCHED,
                None,
                {
                    "status": SiteStatus.ACCEPTED,
                    "accepted_by": collector_id,
                    "accepted_at": now,
                    "cost": LOCK_COST,
                    "fees_locked_at": now,
                    "cost_acknowledged": True,
                    "cost_acknowledged_at": now,
                },
            )
        except SiteEntryConflictError:
            # Another claim (or a withdraw) landed first
            AppMetrics.claim_lost()
            log.info("Claim lost the race")
            return OpResult.failure(ErrorCode.ALREADY_CLAIMED)
        except SiteEntryNotFoundError:
            return OpResult.failure(ErrorCode.NOT_FOUND)

        cost = claimed.cost
        AppMetrics.claim_won()
        AppMetrics.transition(SiteStatus.ACCEPTED.value)
        audit_event("site.claim", entry_id=entry_id, actor_id=collector_id, detail=f"cost={cost}")
        log.info(f"Site {entry.site_code} claimed, cost locked at {cost}")

        await publish_quietly(
            self.events, SiteClaimed(entry_id=entry_id, collector_id=collector_id, cost=cost)
        )
        return OpResult.success(claimed)

    async def acknowledge_cost(self, entry_id: str, collector_id: str) -> OpResult[SiteEntry]:
        """Collector accepts the fees of an individually assigned site."""
        entry = await self.store.get(entry_id)
        if entry is None:
            return OpResult.failure(ErrorCode.NOT_FOUND)
        if entry.accepted_by != collector_id:
            return OpResult.failure(ErrorCode.NOT_ASSIGNED_TO_YOU)
        if entry.cost_acknowledged:
            return OpResult.failure(ErrorCode.ALREADY_ACKNOWLEDGED)
        if entry.status != SiteStatus.ASSIGNED:
            return OpResult.failure(ErrorCode.WRONG_STATE)

        now = self.clock()
        try:
            updated = await self.store.conditional_update(
                entry_id,
                SiteStatus.ASSIGNED,
                collector_id,
                {
                    "status": SiteStatus.ACCEPTED,
                    "cost_acknowledged": True,
                    "cost_acknowledged_at": now,
                },
            )
        except SiteEntryConflictError:
            logger.info(f"Acknowledge lost a race: entry={entry_id}, collector={collector_id}")
            return OpResult.failure(ErrorCode.CONFLICT)
        except SiteEntryNotFoundError:
            return OpResult.failure(ErrorCode.NOT_FOUND)

        AppMetrics.transition(SiteStatus.ACCEPTED.value)
        audit_event(
            "site.acknowledge_cost", entry_id=entry_id, actor_id=collector_id, detail=f"cost={updated.cost}"
        )
        await publish_quietly(
            self.events, CostAcknowledged(entry_id=entry_id, collector_id=collector_id, cost=updated.cost)
        )
        return OpResult.success(updated)

    async def send_back(self, entry_id: str, actor_id: str, comments: str) -> OpResult[SiteEntry]:
        """
        Reject a held site back to the dispatcher's queue.

        Clears the holder and the fee lock so the same entry can be
        re-costed and re-dispatched.
        """
        comments = (comments or "").strip()
        if not comments:
            return OpResult.failure(ErrorCode.INVALID_COMMENTS)

        entry = await self.store.get(entry_id)
        if entry is None:
            return OpResult.failure(ErrorCode.NOT_FOUND)
        if entry.status not in _SEND_BACK_FROM:
            return OpResult.failure(
                ErrorCode.WRONG_STATE, f"Only Accepted or Assigned sites can be sent back (is {entry.status.value})."
            )

        now = self.clock()
        try:
            updated = await self.store.conditional_update(
                entry_id,
                entry.status,
                entry.accepted_by,
                {
                    "status": SiteStatus.REJECTED,
                    "rejection_comments": comments,
                    "rejected_by": actor_id,
                    "rejected_at": now,
                    "accepted_by": None,
                    "accepted_at": None,
                    "fees_locked_at": None,
                    "cost_acknowledged": False,
                    "cost_acknowledged_at": None,
                },
            )
        except SiteEntryConflictError:
            logger.info(f"Send-back lost a race: entry={entry_id}, actor={actor_id}")
            return OpResult.failure(ErrorCode.CONFLICT)
        except SiteEntryNotFoundError:
            return OpResult.failure(ErrorCode.NOT_FOUND)

        AppMetrics.transition(SiteStatus.REJECTED.value)
        audit_event(
            "site.send_back",
            entry_id=entry_id,
            actor_id=actor_id,
            detail=f"previous_holder={entry.accepted_by}",
            extra={"comments": comments},
        )
        await publish_quietly(
            self.events,
            SiteSentBack(
                entry_id=entry_id,
                actor_id=actor_id,
                comments=comments,
                notify_user_id=entry.dispatched_by,
                previous_holder=entry.accepted_by,
            ),
        )
        return OpResult.success(updated)
