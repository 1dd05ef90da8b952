# pact/core/dispatch/services.py
"""
Wiring for the dispatch command/query services.

Transport code (HTTP routes, CLI scripts, job handlers) receives one
``DispatchServices`` bundle and never builds the services itself.
"""
from __future__ import annotations

from dataclasses import dataclass

from pact.core.dispatch.claims import ClaimCoordinator
from pact.core.dispatch.dispatcher import DispatchEngine
from pact.core.dispatch.lifecycle import VisitLifecycle
from pact.core.dispatch.ports import (
    AsyncCollectorDirectory,
    AsyncSiteEntryStore,
    AsyncWalletLedger,
    EventSink,
    SettlementRetryQueue,
)
from pact.core.dispatch.queries import SiteQueries


@dataclass
class DispatchServices:
    store: AsyncSiteEntryStore
    dispatcher: DispatchEngine
    claims: ClaimCoordinator
    lifecycle: VisitLifecycle
    queries: SiteQueries


def build_services(
    store: AsyncSiteEntryStore,
    directory: AsyncCollectorDirectory,
    ledger: AsyncWalletLedger,
    *,
    events: EventSink | None = None,
    retry_queue: SettlementRetryQueue | None = None,
) -> DispatchServices:
    return DispatchServices(
        store=store,
        dispatcher=DispatchEngine(store, directory, events=events),
        claims=ClaimCoordinator(store, directory, events=events),
        lifecycle=VisitLifecycle(store, ledger, events=events, retry_queue=retry_queue),
        queries=SiteQueries(store, directory),
    )
