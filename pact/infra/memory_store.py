# pact/infra/memory_store.py
"""
Process-local adapters for the dispatch ports.

Used for local runs (``STORE_BACKEND=memory``) and tests.  Each
compare-and-set runs under one ``asyncio.Lock`` so concurrent claims on
the same event loop resolve with exactly one winner, mirroring the
single conditional UPDATE the Postgres store issues.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import replace
from decimal import Decimal
from typing import Any, AsyncIterator, Iterable, Optional

from pact.core.dispatch.domain import (
    FEE_FIELDS,
    CollectorProfile,
    LedgerEntry,
    SiteEntry,
    SiteEntryFilter,
    SiteStatus,
    compute_cost,
    utcnow,
)
from pact.core.dispatch.ports import (
    FeesLockedError,
    SiteEntryConflictError,
    SiteEntryNotFoundError,
)
from pact.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemorySiteEntryStore:
    """Dict-backed site entry store with atomic compare-and-set."""

    def __init__(self, entries: Iterable[SiteEntry] = ()) -> None:
        self._rows: dict[str, SiteEntry] = {e.id: replace(e) for e in entries}
        self._lock = asyncio.Lock()

    async def get(self, entry_id: str) -> Optional[SiteEntry]:
        row = self._rows.get(entry_id)
        return replace(row) if row is not None else None

    async def query(self, filter: SiteEntryFilter) -> AsyncIterator[SiteEntry]:
        for entry_id in sorted(self._rows):
            row = self._rows.get(entry_id)
            if row is not None and filter.matches(row):
                yield replace(row)

    async def conditional_update(
        self,
        entry_id: str,
        expected_status: SiteStatus,
        expected_accepted_by: Optional[str],
        patch: dict[str, Any],
        *,
        expect_unsettled: bool = False,
    ) -> SiteEntry:
        expected_status = SiteStatus.parse(expected_status)
        async with self._lock:
            row = self._rows.get(entry_id)
            if row is None:
                raise SiteEntryNotFoundError(entry_id)
            if (
                row.status != expected_status
                or row.accepted_by != expected_accepted_by
                or (expect_unsettled and row.payment_credited_at is not None)
            ):
                raise SiteEntryConflictError(
                    f"entry {entry_id}: expected status={expected_status.value} "
                    f"accepted_by={expected_accepted_by}, found status={row.status.value} "
                    f"accepted_by={row.accepted_by}"
                )
            new_row = self._apply(row, patch)
            self._rows[entry_id] = new_row
            return replace(new_row)

    async def update(self, entry_id: str, patch: dict[str, Any]) -> SiteEntry:
        async with self._lock:
            row = self._rows.get(entry_id)
            if row is None:
                raise SiteEntryNotFoundError(entry_id)
            if row.fees_locked and FEE_FIELDS & set(patch):
                raise FeesLockedError(entry_id)
            new_row = self._apply(row, patch)
            self._rows[entry_id] = new_row
            return replace(new_row)

    async def insert(self, entry: SiteEntry) -> SiteEntry:
        async with self._lock:
            if entry.id in self._rows:
                raise SiteEntryConflictError(f"entry {entry.id} already exists")
            row = replace(entry, updated_at=utcnow())
            self._rows[entry.id] = row
            return replace(row)

    @staticmethod
    def _apply(row: SiteEntry, patch: dict[str, Any]) -> SiteEntry:
        new_row = row.with_patch({**patch, "updated_at": utcnow()})
        if not new_row.holder_invariant_ok():
            raise ValueError(
                f"entry {row.id}: status {new_row.status.value} with accepted_by={new_row.accepted_by}"
            )
        return new_row


class InMemoryCollectorDirectory:
    """Collector profiles keyed by id."""

    def __init__(self, profiles: Iterable[CollectorProfile] = ()) -> None:
        self._profiles = {p.collector_id: p for p in profiles}

    async def get_profile(self, collector_id: str) -> Optional[CollectorProfile]:
        return self._profiles.get(collector_id)


class InMemoryWalletLedger:
    """Append-only wallet ledger, idempotent per reference entry id."""

    def __init__(self, currency: str = "SDG") -> None:
        self.currency = currency
        self._entries: list[LedgerEntry] = []
        self._by_reference: dict[str, LedgerEntry] = {}
        self._balances: dict[str, Decimal] = {}
        self._lock = asyncio.Lock()

    @property
    def entries(self) -> list[LedgerEntry]:
        return list(self._entries)

    def balance(self, user_id: str) -> Decimal:
        return self._balances.get(user_id, Decimal("0"))

    async def credit(self, user_id: str, amount: Decimal, reference_id: str) -> LedgerEntry:
        async with self._lock:
            existing = self._by_reference.get(reference_id)
            if existing is not None:
                return replace(existing, created=False)

            before = self._balances.get(user_id, Decimal("0"))
            after = before + amount
            entry = LedgerEntry(
                id=str(uuid.uuid4()),
                user_id=user_id,
                amount=amount,
                currency=self.currency,
                reference_entry_id=reference_id,
                balance_before=before,
                balance_after=after,
                created_at=utcnow(),
            )
            self._balances[user_id] = after
            self._entries.append(entry)
            self._by_reference[reference_id] = entry
            logger.debug(f"Wallet credited: user={user_id}, amount={amount}, ref={reference_id[:8]}")
            return entry


class InMemorySettlementRetryQueue:
    """Records requested settlement retries; drained by the ``settle_pending`` sweep."""

    def __init__(self) -> None:
        self.scheduled: list[tuple[str, str]] = []

    async def schedule(self, entry_id: str, reason: str) -> None:
        self.scheduled.append((entry_id, reason))
        logger.info(f"Settlement retry recorded: entry={entry_id}, reason={reason}")


_SEED_ENTRY_FIELDS = frozenset(
    {"id", "plan_id", "site_code", "site_name", "state", "locality", "status", "enumerator_fee", "transport_fee", "cost"}
)


def load_seed(path: str) -> tuple[list[SiteEntry], list[CollectorProfile]]:
    """
    Read site entries and collector profiles from a JSON fixture file.

    Layout::

        {"collectors": [{"collector_id": "col-1", "state": "Kassala", ...}],
         "entries": [{"id": "e-1", "plan_id": "p-1", "site_code": "S1",
                      "site_name": "...", "status": "ApprovedAndCosted",
                      "enumerator_fee": "20", "transport_fee": "10"}]}

    An entry's cost is the fee sum unless ``cost`` is given, which marks
    it as an override.
    """
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)

    collectors = [CollectorProfile(**raw) for raw in data.get("collectors", [])]

    entries = []
    for raw in data.get("entries", []):
        unknown = set(raw) - _SEED_ENTRY_FIELDS
        if unknown:
            raise ValueError(f"Unknown seed entry fields: {sorted(unknown)}")
        values = dict(raw)
        values["status"] = SiteStatus.parse(values.get("status", SiteStatus.DRAFT))
        cost, overridden = compute_cost(
            values.get("enumerator_fee", "0"),
            values.get("transport_fee", "0"),
            values.pop("cost", None),
        )
        entries.append(SiteEntry(**values, cost=cost, cost_overridden=overridden))

    logger.info(f"Loaded seed {path}: {len(entries)} entries, {len(collectors)} collectors")
    return entries, collectors
