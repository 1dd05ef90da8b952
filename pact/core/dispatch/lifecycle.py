# pact/core/dispatch/lifecycle.py
"""
Visit lifecycle and settlement.

    Accepted --start_visit--> InProgress --complete_visit--> Completed --settle--> (credited)

Completion is authoritative: once the Completed write lands, a failing
wallet ledger never undoes it.  The credit is retried later (job queue
or ``settle_pending`` sweep) and ``settle`` stays idempotent through
``payment_credited_at`` plus the ledger's per-reference uniqueness.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from pact.core.dispatch.domain import GeoPoint, LedgerEntry, SiteEntry, SiteEntryFilter, SiteStatus, utcnow
from pact.core.dispatch.events import PaymentSettled, VisitCompleted, VisitStarted, publish_quietly
from pact.core.dispatch.ports import (
    AsyncSiteEntryStore,
    AsyncWalletLedger,
    EventSink,
    LedgerUnavailableError,
    SettlementRetryQueue,
    SiteEntryConflictError,
    SiteEntryNotFoundError,
)
from pact.core.dispatch.results import ErrorCode, OpResult
from pact.infra.audit_log import audit_event
from pact.infra.logging_config import LogContext, get_logger, mask_coordinates
from pact.infra.metrics import AppMetrics

logger = get_logger(__name__)

SETTLEMENT_PENDING = "settlement_pending"


@dataclass
class SettlementSweep:
    """Outcome counts of one ``settle_pending`` pass."""
    attempted: int = 0
    settled: int = 0
    already_settled: int = 0
    failed: int = 0


class VisitLifecycle:
    def __init__(
        self,
        store: AsyncSiteEntryStore,
        ledger: AsyncWalletLedger,
        *,
        events: EventSink | None = None,
        retry_queue: SettlementRetryQueue | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.events = events
        self.retry_queue = retry_queue
        self.clock = clock

    # ------------------------------------------------------------------
    # Visit
    # ------------------------------------------------------------------

    async def start_visit(
        self,
        entry_id: str,
        collector_id: str,
        location: Optional[GeoPoint] = None,
    ) -> OpResult[SiteEntry]:
        entry = await self.store.get(entry_id)
        if entry is None:
            return OpResult.failure(ErrorCode.NOT_FOUND)
        if entry.status != SiteStatus.ACCEPTED:
            return OpResult.failure(
                ErrorCode.WRONG_STATE, f"Visit can only start from Accepted (is {entry.status.value})."
            )
        if entry.accepted_by != collector_id:
            return OpResult.failure(ErrorCode.WRONG_COLLECTOR)

        now = self.clock()
        try:
            updated = await self.store.conditional_update(
                entry_id,
                SiteStatus.ACCEPTED,
                collector_id,
                {
                    "status": SiteStatus.IN_PROGRESS,
                    "visit_started_at": now,
                    "visit_started_by": collector_id,
                    "visit_start_location": location,
                },
            )
        except SiteEntryConflictError:
            return OpResult.failure(ErrorCode.CONFLICT)
        except SiteEntryNotFoundError:
            return OpResult.failure(ErrorCode.NOT_FOUND)

        AppMetrics.transition(SiteStatus.IN_PROGRESS.value)
        where = mask_coordinates(location.latitude, location.longitude) if location else "-"
        audit_event("site.visit_start", entry_id=entry_id, actor_id=collector_id, detail=f"at={where}")
        await publish_quietly(self.events, VisitStarted(entry_id=entry_id, collector_id=collector_id))
        return OpResult.success(updated)

    async def complete_visit(
        self,
        entry_id: str,
        collector_id: str,
        report_id: Optional[str] = None,
        final_location: Optional[GeoPoint] = None,
    ) -> OpResult[SiteEntry]:
        """
        Mark the visit Completed, then settle.

        A settlement failure still returns Ok (the visit is recorded) with
        a ``settlement_pending`` warning, and a retry is queued.
        """
        log = LogContext(logger, entry_id=entry_id, collector_id=collector_id)

        entry = await self.store.get(entry_id)
        if entry is None:
            return OpResult.failure(ErrorCode.NOT_FOUND)
        if entry.status != SiteStatus.IN_PROGRESS:
            return OpResult.failure(
                ErrorCode.WRONG_STATE, f"Visit can only complete from InProgress (is {entry.status.value})."
            )
        if entry.accepted_by != collector_id:
            return OpResult.failure(ErrorCode.WRONG_COLLECTOR)

        now = self.clock()
        try:
            completed = await self.store.conditional_update(
                entry_id,
                SiteStatus.IN_PROGRESS,
                collector_id,
                {
                    "status": SiteStatus.COMPLETED,
                    "visit_completed_at": now,
                    "visit_completed_by": collector_id,
                    "final_location": final_location,
                    "report_id": report_id,
                },
            )
        except SiteEntryConflictError:
            return OpResult.failure(ErrorCode.CONFLICT)
        except SiteEntryNotFoundError:
            return OpResult.failure(ErrorCode.NOT_FOUND)

        AppMetrics.transition(SiteStatus.COMPLETED.value)
        audit_event("site.visit_complete", entry_id=entry_id, actor_id=collector_id, detail=f"report={report_id}")
        await publish_quietly(
            self.events, VisitCompleted(entry_id=entry_id, collector_id=collector_id, report_id=report_id)
        )

        settlement = await self.settle(entry_id)
        if settlement.ok:
            current = await self.store.get(entry_id)
            return OpResult.success(current or completed)
        if settlement.error == ErrorCode.ALREADY_SETTLED:
            return OpResult.success(completed)

        log.warning(f"Visit completed but settlement pending: {settlement.error.value}")
        await self._schedule_retry(entry_id, settlement.error.value)
        return OpResult.success(completed, warnings=(SETTLEMENT_PENDING,))

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle(self, entry_id: str) -> OpResult[LedgerEntry]:
        """
        Credit the holder's wallet with the locked cost, exactly once.

        The ledger credit is keyed by the entry id, so a crash between the
        credit and the ``payment_credited_at`` write is healed by the next
        call: the ledger hands back the existing row and only the mark is
        written.  Of two concurrent callers only one lands the mark; the
        other gets ALREADY_SETTLED.
        """
        entry = await self.store.get(entry_id)
        if entry is None:
            return OpResult.failure(ErrorCode.NOT_FOUND)
        if entry.is_settled:
            return OpResult.failure(ErrorCode.ALREADY_SETTLED)
        if entry.accepted_by is None:
            return OpResult.failure(ErrorCode.NO_RECIPIENT)
        if entry.status != SiteStatus.COMPLETED:
            return OpResult.failure(
                ErrorCode.WRONG_STATE, f"Only Completed sites are settled (is {entry.status.value})."
            )

        collector_id = entry.accepted_by
        try:
            with AppMetrics.track_operation_time("wallet_credit"):
                ledger_entry = await self.ledger.credit(collector_id, entry.cost, entry_id)
        except LedgerUnavailableError as e:
            AppMetrics.settlement_failed()
            logger.warning(f"Wallet credit failed for entry={entry_id}, collector={collector_id}: {e}")
            return OpResult.failure(ErrorCode.LEDGER_UNAVAILABLE)

        try:
            await self.store.conditional_update(
                entry_id,
                SiteStatus.COMPLETED,
                collector_id,
                {"payment_credited_at": self.clock()},
                expect_unsettled=True,
            )
        except SiteEntryConflictError:
            return OpResult.failure(ErrorCode.ALREADY_SETTLED)
        except SiteEntryNotFoundError:
            return OpResult.failure(ErrorCode.NOT_FOUND)

        AppMetrics.settlement_credited()
        audit_event(
            "site.settle",
            entry_id=entry_id,
            actor_id=collector_id,
            detail=f"amount={ledger_entry.amount} ledger={ledger_entry.id}",
            extra={"ledger_created": ledger_entry.created},
        )
        await publish_quietly(
            self.events,
            PaymentSettled(
                entry_id=entry_id,
                collector_id=collector_id,
                amount=ledger_entry.amount,
                ledger_entry_id=ledger_entry.id,
            ),
        )
        return OpResult.success(ledger_entry)

    async def settle_pending(self, limit: Optional[int] = None) -> SettlementSweep:
        """Settle every Completed entry whose credit has not landed yet."""
        pending: list[str] = []
        async for entry in self.store.query(
            SiteEntryFilter(statuses=frozenset({SiteStatus.COMPLETED}), unsettled_only=True)
        ):
            pending.append(entry.id)
            if limit is not None and len(pending) >= limit:
                break

        sweep = SettlementSweep()
        for entry_id in pending:
            sweep.attempted += 1
            result = await self.settle(entry_id)
            if result.ok:
                sweep.settled += 1
            elif result.error == ErrorCode.ALREADY_SETTLED:
                sweep.already_settled += 1
            else:
                sweep.failed += 1

        if sweep.attempted:
            logger.info(
                f"Settlement sweep: attempted={sweep.attempted}, settled={sweep.settled}, "
                f"already={sweep.already_settled}, failed={sweep.failed}"
            )
        return sweep

    async def _schedule_retry(self, entry_id: str, reason: str) -> None:
        if self.retry_queue is None:
            return
        try:
            await self.retry_queue.schedule(entry_id, reason)
        except Exception:
            # The settle_pending sweep still finds the entry
            logger.warning(f"Could not queue settlement retry for entry={entry_id}", exc_info=True)
