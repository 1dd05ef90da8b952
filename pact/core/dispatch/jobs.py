# pact/core/dispatch/jobs.py
"""
Settlement retry jobs.

A failed wallet credit after ``complete_visit`` is queued as a
``settle_site_entry`` job; the worker re-runs ``settle`` with
exponential backoff until the ledger accepts it.  ``settle`` is
idempotent, so a duplicate or late job is harmless.
"""
from __future__ import annotations

from typing import Awaitable, Callable

from pact.core.dispatch.lifecycle import VisitLifecycle
from pact.core.dispatch.results import ErrorCode
from pact.infra.logging_config import get_logger
from pact.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job

logger = get_logger(__name__)

SETTLE_JOB_TYPE = "settle_site_entry"

# Outcomes after which retrying cannot change anything.
_FINAL_ERRORS = frozenset({
    ErrorCode.ALREADY_SETTLED,
    ErrorCode.NO_RECIPIENT,
    ErrorCode.NOT_FOUND,
    ErrorCode.WRONG_STATE,
})


def make_settle_handler(lifecycle: VisitLifecycle) -> Callable[[Job], Awaitable[None]]:
    """Build the ``settle_site_entry`` job handler bound to ``lifecycle``."""

    async def handle_settle_site_entry(job: Job) -> None:
        entry_id = job.payload["entry_id"]
        result = await lifecycle.settle(entry_id)

        if result.ok:
            logger.info(
                f"Deferred settlement credited: entry={entry_id}, attempt={job.attempts + 1}",
                extra={"job_id": job.id, "entry_id": entry_id},
            )
            return

        if result.error in _FINAL_ERRORS:
            logger.info(
                f"Deferred settlement dropped: entry={entry_id}, reason={result.error.value}",
                extra={"job_id": job.id, "entry_id": entry_id},
            )
            return

        # Raising lets the worker reschedule with backoff
        raise RuntimeError(f"Settlement still pending for entry {entry_id}: {result.error.value}")

    return handle_settle_site_entry


class JobQueueSettlementRetry:
    """``SettlementRetryQueue`` backed by the jobs table."""

    def __init__(
        self,
        repo: AsyncPostgresJobRepository,
        *,
        max_attempts: int = 8,
        first_delay: float = 30.0,
    ) -> None:
        self.repo = repo
        self.max_attempts = max_attempts
        self.first_delay = first_delay

    async def schedule(self, entry_id: str, reason: str) -> None:
        job_id = await self.repo.enqueue(
            SETTLE_JOB_TYPE,
            {"entry_id": entry_id, "reason": reason},
            max_attempts=self.max_attempts,
            delay_seconds=self.first_delay,
            dedupe_key=f"settle:{entry_id}",
        )
        if job_id:
            logger.info(
                f"Settlement retry queued: entry={entry_id}, reason={reason}",
                extra={"job_id": job_id, "entry_id": entry_id},
            )
