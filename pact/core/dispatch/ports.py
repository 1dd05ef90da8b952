# pact/core/dispatch/ports.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, AsyncIterator, Optional, Protocol

from pact.core.dispatch.domain import (
    CollectorProfile,
    LedgerEntry,
    SiteEntry,
    SiteEntryFilter,
    SiteStatus,
)


# ============================================================================
# STORE ERRORS (raised by adapters, translated to OpResult by services)
# ============================================================================

class SiteEntryNotFoundError(Exception):
    """Raised when a site entry id does not exist."""


class SiteEntryConflictError(Exception):
    """Raised when a conditional update's expectations no longer hold."""


class FeesLockedError(Exception):
    """Raised when a plain update touches fee fields of a fee-locked entry."""


class LedgerUnavailableError(Exception):
    """Raised when the wallet ledger write could not be completed."""


# ============================================================================
# ASYNC PROTOCOLS
# ============================================================================

class AsyncSiteEntryStore(Protocol):
    async def get(self, entry_id: str) -> Optional[SiteEntry]: ...

    def query(self, filter: SiteEntryFilter) -> AsyncIterator[SiteEntry]:
        """Lazy, finite iteration; every call starts from the beginning."""
        ...

    async def conditional_update(
        self,
        entry_id: str,
        expected_status: SiteStatus,
        expected_accepted_by: Optional[str],
        patch: dict[str, Any],
        *,
        expect_unsettled: bool = False,
    ) -> SiteEntry:
        """
        Apply ``patch`` only if the row still has ``expected_status`` and
        ``expected_accepted_by`` (and no payment credit when
        ``expect_unsettled``).  Atomic at the storage layer.

        Raises SiteEntryConflictError / SiteEntryNotFoundError.
        """
        ...

    async def update(self, entry_id: str, patch: dict[str, Any]) -> SiteEntry: ...

    async def insert(self, entry: SiteEntry) -> SiteEntry: ...


class AsyncCollectorDirectory(Protocol):
    async def get_profile(self, collector_id: str) -> Optional[CollectorProfile]: ...


class AsyncWalletLedger(Protocol):
    async def credit(self, user_id: str, amount: Decimal, reference_id: str) -> LedgerEntry:
        """
        Credit ``amount`` to ``user_id``.  Idempotent per ``reference_id``:
        a repeated call returns the existing entry with ``created=False``.

        Raises LedgerUnavailableError.
        """
        ...


class EventSink(Protocol):
    async def publish(self, event: Any) -> None: ...


class SettlementRetryQueue(Protocol):
    async def schedule(self, entry_id: str, reason: str) -> None: ...
