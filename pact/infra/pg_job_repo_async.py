# pact/infra/pg_job_repo_async.py
"""
Jobs table access (asyncpg).

Carries deferred work, today only settlement retries.  Jobs run in due
order; several worker processes can share the table because claiming
uses FOR UPDATE SKIP LOCKED.  A ``dedupe_key`` keeps at most one live
(pending or running) job per key, so a site entry never has two
settlement retries queued at once.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pact.infra.db_resilience_async import safe_db_conn
from pact.infra.logging_config import get_logger
from pact.infra.metrics import inc_counter

logger = get_logger(__name__)


@dataclass
class Job:
    id: str
    job_type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime
    created_at: datetime
    dedupe_key: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts + 1 >= self.max_attempts


def _row_to_job(row) -> Job:
    payload = row["payload"]
    # asyncpg returns jsonb as text unless a codec is registered
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=str(row["id"]),
        job_type=row["job_type"],
        payload=payload,
        status=row["status"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
        dedupe_key=row.get("dedupe_key"),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


class AsyncPostgresJobRepository:
    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        max_attempts: int = 5,
        delay_seconds: float = 0,
        dedupe_key: str | None = None,
    ) -> str | None:
        """
        Queue a job to run ``delay_seconds`` from now.

        Returns the new job id, or None when a live job already holds
        ``dedupe_key`` (the existing job will do the same work).
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO jobs (job_type, payload, max_attempts, scheduled_at, dedupe_key)
                VALUES ($1, $2::jsonb, $3, now() + make_interval(secs => $4), $5)
                ON CONFLICT (dedupe_key) WHERE status IN ('pending', 'running') DO NOTHING
                RETURNING id
                """,
                job_type,
                json.dumps(payload),
                max_attempts,
                float(delay_seconds),
                dedupe_key,
            )
        if row is None:
            logger.debug(f"Live job exists for key={dedupe_key}, not queuing {job_type}")
            return None

        job_id = str(row["id"])
        inc_counter("jobs_total", job_type=job_type, outcome="enqueued")
        return job_id

    async def claim_batch(self, batch_size: int = 5) -> list[Job]:
        """Move up to ``batch_size`` due jobs to running and return them, oldest due first."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                UPDATE jobs
                SET status = 'running', started_at = now()
                WHERE id IN (
                    SELECT id FROM jobs
                    WHERE status = 'pending' AND scheduled_at <= now()
                    ORDER BY scheduled_at, created_at
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                batch_size,
            )
        return [_row_to_job(row) for row in rows]

    async def complete(self, job_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE jobs SET status = 'completed', completed_at = now() WHERE id = $1",
                job_id,
            )

    async def fail(
        self,
        job_id: str,
        error_message: str,
        *,
        base_delay: float = 5.0,
    ) -> None:
        """
        Count a failed attempt.

        The job goes back to pending after ``base_delay * 2**attempts``
        seconds, or to failed once ``max_attempts`` is used up.
        """
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET
                  attempts = attempts + 1,
                  error_message = $2,
                  status = CASE WHEN attempts + 1 < max_attempts THEN 'pending' ELSE 'failed' END,
                  scheduled_at = CASE
                    WHEN attempts + 1 < max_attempts
                      THEN now() + make_interval(secs => $3 * power(2, attempts))
                    ELSE scheduled_at
                  END,
                  completed_at = CASE WHEN attempts + 1 < max_attempts THEN NULL ELSE now() END
                WHERE id = $1
                """,
                job_id,
                error_message[:2000],
                base_delay,
            )

    async def count_by_status(self, job_type: str | None = None) -> dict[str, int]:
        """Jobs per status, optionally for one job type."""
        query = "SELECT status, count(*)::int AS n FROM jobs"
        args: list[Any] = []
        if job_type:
            query += " WHERE job_type = $1"
            args.append(job_type)
        query += " GROUP BY status"

        async with safe_db_conn() as conn:
            rows = await conn.fetch(query, *args)
        return {row["status"]: row["n"] for row in rows}

    async def cleanup_completed(self, ttl_days: int = 7) -> int:
        """Delete completed jobs older than ``ttl_days``. Failed jobs are kept."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                DELETE FROM jobs
                WHERE status = 'completed'
                  AND completed_at < now() - make_interval(days => $1)
                """,
                ttl_days,
            )
        deleted = _affected(result)
        if deleted:
            logger.info(f"Deleted {deleted} completed jobs older than {ttl_days}d")
        return deleted

    async def reset_stale_running(self, timeout_seconds: int = 300) -> int:
        """Requeue jobs left running by a worker that died mid-job."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET status = 'pending', scheduled_at = now()
                WHERE status = 'running'
                  AND started_at < now() - make_interval(secs => $1)
                """,
                timeout_seconds,
            )
        reset = _affected(result)
        if reset:
            logger.warning(f"Requeued {reset} jobs running longer than {timeout_seconds}s")
            inc_counter("jobs_total", reset, outcome="stale_reset")
        return reset


def _affected(status: str | None) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 3``."""
    return int(status.split()[-1]) if status else 0


_job_repo: AsyncPostgresJobRepository | None = None


def get_job_repo() -> AsyncPostgresJobRepository:
    global _job_repo
    if _job_repo is None:
        _job_repo = AsyncPostgresJobRepository()
    return _job_repo
