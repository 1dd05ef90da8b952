# pact/core/dispatch/results.py
"""
Typed results for dispatch commands.

Every command returns an ``OpResult``: either a value or a named
``ErrorCode``.  Each code carries its category and the HTTP status the
transport layer maps it to, so route handlers stay free of business
logic and the UI can render code-specific messaging.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCategory(str, Enum):
    CONTENTION = "contention"      # lost a race; re-query, do not retry blindly
    PRECONDITION = "precondition"  # stale UI or caller error; refetch then retry
    VALIDATION = "validation"      # bad input for this one operation / entry
    DEPENDENT = "dependent"        # downstream system failed; state was kept, effect queued
    NOT_FOUND = "not_found"


class ErrorCode(str, Enum):
    # Contention
    ALREADY_CLAIMED = "already_claimed"
    CONFLICT = "conflict"
    # Precondition
    NOT_ELIGIBLE = "not_eligible"
    NOT_DISPATCHED = "not_dispatched"
    WRONG_COLLECTOR = "wrong_collector"
    WRONG_STATE = "wrong_state"
    NOT_ASSIGNED_TO_YOU = "not_assigned_to_you"
    ALREADY_ACKNOWLEDGED = "already_acknowledged"
    ALREADY_SETTLED = "already_settled"
    NO_RECIPIENT = "no_recipient"
    FEES_LOCKED = "fees_locked"
    # Validation
    INVALID_MODE_TARGET = "invalid_mode_target"
    INVALID_COMMENTS = "invalid_comments"
    ENTRY_NOT_COSTED_YET = "entry_not_costed_yet"
    LOCATION_MISMATCH = "location_mismatch"
    INVALID_FEES = "invalid_fees"
    EMPTY_BATCH = "empty_batch"
    # Dependent systems
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    # Lookup
    NOT_FOUND = "not_found"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.category]


_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.ALREADY_CLAIMED: ErrorCategory.CONTENTION,
    ErrorCode.CONFLICT: ErrorCategory.CONTENTION,
    ErrorCode.NOT_ELIGIBLE: ErrorCategory.PRECONDITION,
    ErrorCode.NOT_DISPATCHED: ErrorCategory.PRECONDITION,
    ErrorCode.WRONG_COLLECTOR: ErrorCategory.PRECONDITION,
    ErrorCode.WRONG_STATE: ErrorCategory.PRECONDITION,
    ErrorCode.NOT_ASSIGNED_TO_YOU: ErrorCategory.PRECONDITION,
    ErrorCode.ALREADY_ACKNOWLEDGED: ErrorCategory.PRECONDITION,
    ErrorCode.ALREADY_SETTLED: ErrorCategory.PRECONDITION,
    ErrorCode.NO_RECIPIENT: ErrorCategory.PRECONDITION,
    ErrorCode.FEES_LOCKED: ErrorCategory.PRECONDITION,
    ErrorCode.INVALID_MODE_TARGET: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_COMMENTS: ErrorCategory.VALIDATION,
    ErrorCode.ENTRY_NOT_COSTED_YET: ErrorCategory.VALIDATION,
    ErrorCode.LOCATION_MISMATCH: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_FEES: ErrorCategory.VALIDATION,
    ErrorCode.EMPTY_BATCH: ErrorCategory.VALIDATION,
    ErrorCode.LEDGER_UNAVAILABLE: ErrorCategory.DEPENDENT,
    ErrorCode.NOT_FOUND: ErrorCategory.NOT_FOUND,
}

_HTTP_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.CONTENTION: 409,
    ErrorCategory.PRECONDITION: 409,
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.DEPENDENT: 503,
    ErrorCategory.NOT_FOUND: 404,
}

# Default user-facing messages; services may pass a more specific one.
DEFAULT_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.ALREADY_CLAIMED: "Site already claimed. Try a different site.",
    ErrorCode.CONFLICT: "The site changed while you were working on it. Refresh and try again.",
    ErrorCode.NOT_ELIGIBLE: "You are not eligible to claim this site.",
    ErrorCode.NOT_DISPATCHED: "This site is not available for claiming.",
    ErrorCode.WRONG_COLLECTOR: "This site is held by another collector.",
    ErrorCode.WRONG_STATE: "This site is not in the right state for that action.",
    ErrorCode.NOT_ASSIGNED_TO_YOU: "This site is not assigned to you.",
    ErrorCode.ALREADY_ACKNOWLEDGED: "Fees for this site were already acknowledged.",
    ErrorCode.ALREADY_SETTLED: "Payment for this site was already credited.",
    ErrorCode.NO_RECIPIENT: "No collector holds this site, nothing to credit.",
    ErrorCode.FEES_LOCKED: "Fees are locked once a site has been accepted.",
    ErrorCode.INVALID_MODE_TARGET: "This dispatch mode needs a target.",
    ErrorCode.INVALID_COMMENTS: "Comments are required when sending a site back.",
    ErrorCode.ENTRY_NOT_COSTED_YET: "Site must be approved and costed before dispatch.",
    ErrorCode.LOCATION_MISMATCH: "Site is outside the dispatch target area.",
    ErrorCode.INVALID_FEES: "Fees must be non-negative numbers.",
    ErrorCode.EMPTY_BATCH: "No site entries were selected.",
    ErrorCode.LEDGER_UNAVAILABLE: "Wallet is temporarily unavailable; payment will be retried.",
    ErrorCode.NOT_FOUND: "Site entry not found.",
}


@dataclass(frozen=True)
class OpResult(Generic[T]):
    """Success value or named error; ``warnings`` carry non-fatal notes."""
    value: Optional[T] = None
    error: Optional[ErrorCode] = None
    message: str = ""
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, *, warnings: tuple[str, ...] = ()) -> "OpResult[T]":
        return cls(value=value, warnings=warnings)

    @classmethod
    def failure(cls, error: ErrorCode, message: str | None = None) -> "OpResult[T]":
        return cls(error=error, message=message or DEFAULT_MESSAGES[error])


@dataclass(frozen=True)
class EntryFailure:
    entry_id: str
    error: ErrorCode
    message: str


@dataclass
class DispatchResult:
    """Per-id outcome of a batch dispatch / withdraw."""
    dispatched: list = field(default_factory=list)
    failures: list[EntryFailure] = field(default_factory=list)
    error: Optional[ErrorCode] = None  # whole-batch rejection (bad mode/target, empty batch)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    def fail(self, entry_id: str, error: ErrorCode, message: str | None = None) -> None:
        self.failures.append(EntryFailure(entry_id, error, message or DEFAULT_MESSAGES[error]))
