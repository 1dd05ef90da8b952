# tests/conftest.py
"""Pytest configuration and fixtures"""
import itertools
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from pact.core.dispatch.domain import CollectorProfile, SiteEntry, SiteStatus  # noqa: E402
from pact.core.dispatch.ports import LedgerUnavailableError  # noqa: E402
from pact.core.dispatch.services import build_services  # noqa: E402
from pact.infra.event_sinks import RecordingEventSink  # noqa: E402
from pact.infra.memory_store import (  # noqa: E402
    InMemoryCollectorDirectory,
    InMemorySettlementRetryQueue,
    InMemorySiteEntryStore,
    InMemoryWalletLedger,
)

_ids = itertools.count(1)


def make_entry(**overrides) -> SiteEntry:
    """An ApprovedAndCosted Khartoum site (20 + 10 fees) unless overridden."""
    n = next(_ids)
    data = dict(
        id=f"entry-{n:04d}",
        plan_id="plan-1",
        site_code=f"KRT-{n:03d}",
        site_name=f"Site {n}",
        state="Khartoum",
        locality="Bahri",
        status=SiteStatus.APPROVED_AND_COSTED,
        enumerator_fee=Decimal("20"),
        transport_fee=Decimal("10"),
        cost=Decimal("30"),
    )
    data.update(overrides)
    return SiteEntry(**data)


@pytest.fixture
def entry_factory():
    """Factory for fresh site entries"""
    return make_entry


@pytest.fixture
def store():
    return InMemorySiteEntryStore()


@pytest.fixture
def directory():
    return InMemoryCollectorDirectory([
        CollectorProfile("col-ahmed", state="Khartoum", locality="Bahri", display_name="Ahmed"),
        CollectorProfile("col-sara", state="Khartoum", locality="Omdurman", display_name="Sara"),
        CollectorProfile("col-omer", state="Kassala", locality="Kassala", display_name="Omer"),
        CollectorProfile("col-gone", state="Khartoum", locality="Bahri", is_active=False),
    ])


@pytest.fixture
def ledger():
    return InMemoryWalletLedger(currency="SDG")


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def retry_queue():
    return InMemorySettlementRetryQueue()


@pytest.fixture
def services(store, directory, ledger, events, retry_queue):
    """Dispatch services over the in-memory adapters"""
    return build_services(store, directory, ledger, events=events, retry_queue=retry_queue)


class FlakyLedger(InMemoryWalletLedger):
    """Fails the first ``failures`` credits, then behaves."""

    def __init__(self, failures: int = 1):
        super().__init__(currency="SDG")
        self.failures = failures
        self.calls = 0

    async def credit(self, user_id, amount, reference_id):
        self.calls += 1
        if self.calls <= self.failures:
            raise LedgerUnavailableError("wallet service down")
        return await super().credit(user_id, amount, reference_id)


async def accepted_entry(services, store, collector="col-ahmed", **overrides) -> str:
    """Insert, Open-dispatch and claim a site; returns its id."""
    entry = await store.insert(make_entry(**overrides))
    await services.dispatcher.dispatch([entry.id], "Open", dispatched_by="coord-1")
    assert (await services.claims.claim(entry.id, collector)).ok
    return entry.id
