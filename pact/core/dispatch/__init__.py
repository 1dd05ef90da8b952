# pact/core/dispatch/__init__.py
"""
First-claim dispatch & acceptance.

This package holds the site-entry workflow core:
- ``domain``: SiteEntry, statuses, dispatch modes, value objects
- ``ports``: store / directory / ledger / event protocols and store errors
- ``dispatcher``: DispatchEngine (dispatch, withdraw, fee edits, eligibility)
- ``claims``: ClaimCoordinator (claim, acknowledge cost, send back)
- ``lifecycle``: VisitLifecycle (start, complete, settle)
- ``queries``: SiteQueries (available / my sites / completed / counts)
- ``jobs``: job handlers for settlement retries

Services reach storage only through ``ports``; concrete adapters live in
``pact.infra``.
"""
from pact.core.dispatch.domain import (
    CollectorProfile,
    DispatchMode,
    DispatchTarget,
    GeoPoint,
    LedgerEntry,
    SiteEntry,
    SiteEntryFilter,
    SiteStatus,
)
from pact.core.dispatch.results import DispatchResult, ErrorCategory, ErrorCode, OpResult
from pact.core.dispatch.services import DispatchServices, build_services

__all__ = [
    "CollectorProfile",
    "DispatchMode",
    "DispatchResult",
    "DispatchServices",
    "DispatchTarget",
    "ErrorCategory",
    "ErrorCode",
    "GeoPoint",
    "LedgerEntry",
    "OpResult",
    "SiteEntry",
    "SiteEntryFilter",
    "SiteStatus",
    "build_services",
]
