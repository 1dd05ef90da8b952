# pact/core/dispatch/queries.py
"""Read-side views for the collector and coordinator pages."""
from __future__ import annotations

from collections import Counter
from typing import Optional

from pact.core.dispatch.dispatcher import eligible_for
from pact.core.dispatch.domain import (
    ACTIVE_STATUSES,
    DispatchMode,
    SiteEntry,
    SiteEntryFilter,
    SiteStatus,
)
from pact.core.dispatch.ports import AsyncCollectorDirectory, AsyncSiteEntryStore


class SiteQueries:
    """
    Every call reads the store afresh.  Counts are derived on each call and
    never cached, so they cannot drift from ``status`` / ``accepted_by``.
    """

    def __init__(self, store: AsyncSiteEntryStore, directory: AsyncCollectorDirectory) -> None:
        self.store = store
        self.directory = directory

    async def available_for(self, collector_id: str) -> list[SiteEntry]:
        """Dispatched, unclaimed entries the collector may claim."""
        collector = await self.directory.get_profile(collector_id)
        if collector is None or not collector.is_active:
            return []

        available = []
        async for entry in self.store.query(SiteEntryFilter(statuses=frozenset({SiteStatus.DISPATCHED}))):
            if entry.accepted_by is None and eligible_for(collector, entry):
                available.append(entry)
        return available

    async def my_sites(self, collector_id: str) -> list[SiteEntry]:
        return await self._collect(SiteEntryFilter(statuses=ACTIVE_STATUSES, accepted_by=collector_id))

    async def completed_sites(self, collector_id: Optional[str] = None) -> list[SiteEntry]:
        return await self._collect(
            SiteEntryFilter(statuses=frozenset({SiteStatus.COMPLETED}), accepted_by=collector_id)
        )

    async def pending_acknowledgement(self, collector_id: str) -> list[SiteEntry]:
        """Individually assigned sites the collector has not yet accepted the fees for."""
        sites = await self._collect(
            SiteEntryFilter(
                statuses=frozenset({SiteStatus.ASSIGNED}),
                accepted_by=collector_id,
                dispatch_mode=DispatchMode.INDIVIDUAL,
            )
        )
        return [s for s in sites if not s.cost_acknowledged]

    async def counts_by_status(self, filter: Optional[SiteEntryFilter] = None) -> dict[str, int]:
        counts: Counter[str] = Counter({s.value: 0 for s in SiteStatus})
        async for entry in self.store.query(filter or SiteEntryFilter()):
            counts[entry.status.value] += 1
        return dict(counts)

    async def _collect(self, filter: SiteEntryFilter) -> list[SiteEntry]:
        return [entry async for entry in self.store.query(filter)]
