# tests/test_lifecycle.py
"""Tests for VisitLifecycle: start, complete, settle and the settlement sweep"""
import asyncio
from decimal import Decimal

import pytest

from pact.core.dispatch.domain import GeoPoint, SiteStatus
from pact.core.dispatch.lifecycle import SETTLEMENT_PENDING
from pact.core.dispatch.results import ErrorCode
from pact.core.dispatch.services import build_services
from conftest import FlakyLedger, accepted_entry as _accepted, make_entry


class TestStartVisit:
    @pytest.mark.asyncio
    async def test_start(self, services, store, events):
        entry_id = await _accepted(services, store)

        result = await services.lifecycle.start_visit(entry_id, "col-ahmed", GeoPoint(15.6, 32.5, 8.0))

        assert result.ok
        stored = await store.get(entry_id)
        assert stored.status is SiteStatus.IN_PROGRESS
        assert stored.visit_started_by == "col-ahmed"
        assert stored.visit_start_location == GeoPoint(15.6, 32.5, 8.0)
        assert events.names()[-1] == "VisitStarted"

    @pytest.mark.asyncio
    async def test_wrong_collector(self, services, store):
        entry_id = await _accepted(services, store)
        result = await services.lifecycle.start_visit(entry_id, "col-sara")
        assert result.error is ErrorCode.WRONG_COLLECTOR
        assert (await store.get(entry_id)).status is SiteStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_not_accepted(self, services, store):
        entry = await store.insert(make_entry())
        result = await services.lifecycle.start_visit(entry.id, "col-ahmed")
        assert result.error is ErrorCode.WRONG_STATE

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, services, store):
        entry_id = await _accepted(services, store)
        await services.lifecycle.start_visit(entry_id, "col-ahmed")
        result = await services.lifecycle.start_visit(entry_id, "col-ahmed")
        assert result.error is ErrorCode.WRONG_STATE


class TestCompleteVisit:
    @pytest.mark.asyncio
    async def test_khartoum_happy_path(self, services, store, ledger, events):
        """Dispatch by state, claim, visit, complete: wallet is credited the locked 30 SDG once."""
        entry_id = await _accepted(services, store)
        await services.lifecycle.start_visit(entry_id, "col-ahmed")

        result = await services.lifecycle.complete_visit(
            entry_id, "col-ahmed", report_id="rep-1", final_location=GeoPoint(15.61, 32.53)
        )

        assert result.ok
        assert result.warnings == ()
        assert result.value.status is SiteStatus.COMPLETED
        assert result.value.is_settled
        assert result.value.report_id == "rep-1"

        assert ledger.balance("col-ahmed") == Decimal("30")
        assert len(ledger.entries) == 1
        assert ledger.entries[0].reference_entry_id == entry_id
        assert ledger.entries[0].currency == "SDG"
        assert events.names()[-2:] == ["VisitCompleted", "PaymentSettled"]

    @pytest.mark.asyncio
    async def test_wrong_collector(self, services, store):
        entry_id = await _accepted(services, store)
        await services.lifecycle.start_visit(entry_id, "col-ahmed")
        result = await services.lifecycle.complete_visit(entry_id, "col-sara")
        assert result.error is ErrorCode.WRONG_COLLECTOR

    @pytest.mark.asyncio
    async def test_must_start_first(self, services, store):
        entry_id = await _accepted(services, store)
        result = await services.lifecycle.complete_visit(entry_id, "col-ahmed")
        assert result.error is ErrorCode.WRONG_STATE

    @pytest.mark.asyncio
    async def test_completed_is_terminal(self, services, store):
        entry_id = await _accepted(services, store)
        await services.lifecycle.start_visit(entry_id, "col-ahmed")
        await services.lifecycle.complete_visit(entry_id, "col-ahmed")

        assert (await services.lifecycle.start_visit(entry_id, "col-ahmed")).error is ErrorCode.WRONG_STATE
        assert (await services.claims.send_back(entry_id, "coord-1", "redo")).error is ErrorCode.WRONG_STATE
        assert (await services.lifecycle.complete_visit(entry_id, "col-ahmed")).error is ErrorCode.WRONG_STATE

    @pytest.mark.asyncio
    async def test_ledger_outage_keeps_completion_and_queues_retry(self, store, directory, events, retry_queue):
        ledger = FlakyLedger(failures=1)
        services = build_services(store, directory, ledger, events=events, retry_queue=retry_queue)
        entry_id = await _accepted(services, store)
        await services.lifecycle.start_visit(entry_id, "col-ahmed")

        result = await services.lifecycle.complete_visit(entry_id, "col-ahmed")

        assert result.ok
        assert result.warnings == (SETTLEMENT_PENDING,)
        stored = await store.get(entry_id)
        assert stored.status is SiteStatus.COMPLETED
        assert not stored.is_settled
        assert retry_queue.scheduled == [(entry_id, ErrorCode.LEDGER_UNAVAILABLE.value)]

        # Retry succeeds and credits exactly once
        settled = await services.lifecycle.settle(entry_id)
        assert settled.ok
        assert ledger.balance("col-ahmed") == Decimal("30")
        assert (await services.lifecycle.settle(entry_id)).error is ErrorCode.ALREADY_SETTLED
        assert len(ledger.entries) == 1

    @pytest.mark.asyncio
    async def test_failing_retry_queue_does_not_fail_completion(self, store, directory):
        class BrokenQueue:
            async def schedule(self, entry_id, reason):
                raise RuntimeError("queue down")

        services = build_services(store, directory, FlakyLedger(failures=5), retry_queue=BrokenQueue())
        entry_id = await _accepted(services, store)
        await services.lifecycle.start_visit(entry_id, "col-ahmed")

        result = await services.lifecycle.complete_visit(entry_id, "col-ahmed")

        assert result.ok
        assert result.warnings == (SETTLEMENT_PENDING,)

    @pytest.mark.asyncio
    async def test_failing_event_sink_is_ignored(self, store, directory, ledger):
        class BrokenSink:
            async def publish(self, event):
                raise RuntimeError("sink down")

        services = build_services(store, directory, ledger, events=BrokenSink())
        entry_id = await _accepted(services, store)
        await services.lifecycle.start_visit(entry_id, "col-ahmed")

        result = await services.lifecycle.complete_visit(entry_id, "col-ahmed")

        assert result.ok
        assert ledger.balance("col-ahmed") == Decimal("30")


class TestSettle:
    async def _completed(self, services, store):
        entry_id = await _accepted(services, store)
        await services.lifecycle.start_visit(entry_id, "col-ahmed")
        return entry_id

    @pytest.mark.asyncio
    async def test_settle_is_idempotent(self, services, store, ledger):
        entry_id = await self._completed(services, store)
        await services.lifecycle.complete_visit(entry_id, "col-ahmed")

        for _ in range(3):
            result = await services.lifecycle.settle(entry_id)
            assert result.error is ErrorCode.ALREADY_SETTLED

        assert ledger.balance("col-ahmed") == Decimal("30")
        assert len(ledger.entries) == 1

    @pytest.mark.asyncio
    async def test_concurrent_settles_credit_once(self, store, directory, events):
        ledger = FlakyLedger(failures=1)
        services = build_services(store, directory, ledger, events=events)
        entry_id = await self._completed(services, store)
        await services.lifecycle.complete_visit(entry_id, "col-ahmed")

        results = await asyncio.gather(*(services.lifecycle.settle(entry_id) for _ in range(5)))

        assert sum(1 for r in results if r.ok) == 1
        assert all(r.error is ErrorCode.ALREADY_SETTLED for r in results if not r.ok)
        assert ledger.balance("col-ahmed") == Decimal("30")
        assert len(ledger.entries) == 1

    @pytest.mark.asyncio
    async def test_credit_landed_but_mark_missing_heals(self, services, store, ledger):
        """A crash between the ledger write and the mark must not double-credit."""
        entry_id = await self._completed(services, store)
        await services.lifecycle.complete_visit(entry_id, "col-ahmed")
        await store.update(entry_id, {"payment_credited_at": None})

        result = await services.lifecycle.settle(entry_id)

        assert result.ok
        assert result.value.created is False
        assert ledger.balance("col-ahmed") == Decimal("30")
        assert (await store.get(entry_id)).is_settled

    @pytest.mark.asyncio
    async def test_not_completed(self, services, store):
        entry_id = await _accepted(services, store)
        assert (await services.lifecycle.settle(entry_id)).error is ErrorCode.WRONG_STATE

    @pytest.mark.asyncio
    async def test_no_recipient(self, services, store):
        entry = await store.insert(make_entry(status=SiteStatus.DISPATCHED))
        assert (await services.lifecycle.settle(entry.id)).error is ErrorCode.NO_RECIPIENT

    @pytest.mark.asyncio
    async def test_not_found(self, services):
        assert (await services.lifecycle.settle("missing")).error is ErrorCode.NOT_FOUND


class TestSettlePending:
    @pytest.mark.asyncio
    async def test_sweep_settles_outstanding(self, store, directory, events):
        ledger = FlakyLedger(failures=2)
        services = build_services(store, directory, ledger, events=events)

        ids = []
        for collector in ("col-ahmed", "col-sara"):
            entry_id = await _accepted(services, store, collector=collector)
            await services.lifecycle.start_visit(entry_id, collector)
            result = await services.lifecycle.complete_visit(entry_id, collector)
            assert result.warnings == (SETTLEMENT_PENDING,)
            ids.append(entry_id)

        sweep = await services.lifecycle.settle_pending()

        assert (sweep.attempted, sweep.settled, sweep.failed) == (2, 2, 0)
        assert ledger.balance("col-ahmed") == Decimal("30")
        assert ledger.balance("col-sara") == Decimal("30")

        again = await services.lifecycle.settle_pending()
        assert again.attempted == 0

    @pytest.mark.asyncio
    async def test_sweep_limit_and_failures(self, store, directory):
        ledger = FlakyLedger(failures=100)
        services = build_services(store, directory, ledger)
        for _ in range(3):
            entry_id = await _accepted(services, store)
            await services.lifecycle.start_visit(entry_id, "col-ahmed")
            await services.lifecycle.complete_visit(entry_id, "col-ahmed")

        sweep = await services.lifecycle.settle_pending(limit=2)

        assert sweep.attempted == 2
        assert sweep.failed == 2
        assert sweep.settled == 0
