# tests/test_job_queue.py
"""
Tests for the DB-backed job queue and settlement retries:
- Job dataclass
- Job repository (pg_job_repo_async.py)
- Job worker dispatch logic (job_worker.py)
- Settlement retry handler and queue adapter (core/dispatch/jobs.py)
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from pact.core.dispatch.jobs import SETTLE_JOB_TYPE, JobQueueSettlementRetry, make_settle_handler
from pact.core.dispatch.results import ErrorCode, OpResult
from pact.core.dispatch.services import build_services
from pact.infra.job_worker import JobWorker
from pact.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job, _row_to_job
from conftest import FlakyLedger, accepted_entry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_job(
    *,
    job_type: str = SETTLE_JOB_TYPE,
    payload: dict | None = None,
    status: str = "running",
    attempts: int = 0,
    max_attempts: int = 8,
) -> Job:
    """Create a test Job instance."""
    return Job(
        id="aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee",
        job_type=job_type,
        payload=payload if payload is not None else {"entry_id": "entry-0001"},
        status=status,
        attempts=attempts,
        max_attempts=max_attempts,
        error_message=None,
        scheduled_at=datetime.now(timezone.utc),
        created_at=datetime.now(timezone.utc),
        dedupe_key="settle:entry-0001",
        started_at=datetime.now(timezone.utc),
    )


def _make_row(overrides: dict | None = None) -> dict:
    """Create a dict that mimics an asyncpg Record for _row_to_job."""
    now = datetime.now(timezone.utc)
    row = {
        "id": "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee",
        "job_type": SETTLE_JOB_TYPE,
        "payload": '{"entry_id": "entry-0001", "reason": "ledger_unavailable"}',
        "status": "pending",
        "attempts": 0,
        "max_attempts": 8,
        "error_message": None,
        "scheduled_at": now,
        "created_at": now,
        "dedupe_key": "settle:entry-0001",
        "started_at": None,
        "completed_at": None,
    }
    if overrides:
        row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Job Dataclass
# ---------------------------------------------------------------------------

class TestJobDataclass:
    def test_row_to_job_parses_json_string(self):
        job = _row_to_job(_make_row())
        assert job.payload == {"entry_id": "entry-0001", "reason": "ledger_unavailable"}
        assert job.status == "pending"
        assert job.dedupe_key == "settle:entry-0001"

    def test_row_to_job_handles_dict_payload(self):
        """When asyncpg auto-parses JSONB, payload is already a dict."""
        job = _row_to_job(_make_row({"payload": {"entry_id": "x"}}))
        assert job.payload == {"entry_id": "x"}


# ---------------------------------------------------------------------------
# Job Repository
# ---------------------------------------------------------------------------

class TestJobRepository:
    @pytest.mark.asyncio
    async def test_enqueue_returns_uuid(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={"id": "some-uuid-1234"})

        with patch("pact.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            result = await repo.enqueue(
                SETTLE_JOB_TYPE,
                {"entry_id": "entry-0001"},
                max_attempts=8,
                delay_seconds=30,
                dedupe_key="settle:entry-0001",
            )

        assert result == "some-uuid-1234"
        sql_arg = mock_conn.fetchrow.call_args[0][0]
        assert "INSERT INTO jobs" in sql_arg
        assert "ON CONFLICT (dedupe_key)" in sql_arg
        args = mock_conn.fetchrow.call_args[0]
        assert json.loads(args[2]) == {"entry_id": "entry-0001"}
        assert args[4] == 30.0
        assert args[5] == "settle:entry-0001"

    @pytest.mark.asyncio
    async def test_enqueue_duplicate_returns_none(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)

        with patch("pact.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            result = await repo.enqueue(SETTLE_JOB_TYPE, {"entry_id": "e"}, dedupe_key="settle:e")

        assert result is None

    @pytest.mark.asyncio
    async def test_claim_batch_returns_jobs(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[_make_row({"status": "running"})])

        with patch("pact.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            jobs = await repo.claim_batch(batch_size=5)

        assert len(jobs) == 1
        assert jobs[0].status == "running"
        assert "FOR UPDATE SKIP LOCKED" in mock_conn.fetch.call_args[0][0]

    @pytest.mark.asyncio
    async def test_fail_with_retry(self):
        """When attempts < max_attempts, job should be rescheduled."""
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(return_value="UPDATE 1")

        with patch("pact.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            await repo.fail("job-id-123", "Ledger unavailable", base_delay=30.0)

        sql_arg = mock_conn.execute.call_args[0][0]
        assert "CASE" in sql_arg
        assert "pending" in sql_arg
        assert "failed" in sql_arg
        assert mock_conn.execute.call_args[0][2] == "Ledger unavailable"

    @pytest.mark.asyncio
    async def test_reset_stale_running(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(return_value="UPDATE 2")

        with patch("pact.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            count = await repo.reset_stale_running(timeout_seconds=300)

        assert count == 2

    @pytest.mark.asyncio
    async def test_count_by_status_for_type(self):
        repo = AsyncPostgresJobRepository()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[
            {"status": "pending", "n": 3},
            {"status": "failed", "n": 1},
        ])

        with patch("pact.infra.pg_job_repo_async.safe_db_conn") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            counts = await repo.count_by_status(SETTLE_JOB_TYPE)

        assert counts == {"pending": 3, "failed": 1}
        assert mock_conn.fetch.call_args[0][1] == SETTLE_JOB_TYPE


# ---------------------------------------------------------------------------
# Job Worker
# ---------------------------------------------------------------------------

class TestJobWorker:
    @pytest.mark.asyncio
    async def test_worker_dispatches_to_handler(self):
        """Worker calls the right handler and marks the job complete."""
        mock_repo = AsyncMock(spec=AsyncPostgresJobRepository)
        job = _make_job()

        mock_handler = AsyncMock()
        worker = JobWorker(repo=mock_repo)
        worker.register(SETTLE_JOB_TYPE, mock_handler)

        await worker._execute(job)

        mock_handler.assert_called_once_with(job)
        mock_repo.complete.assert_called_once_with(job.id)

    @pytest.mark.asyncio
    async def test_worker_uses_per_type_retry_delay(self):
        mock_repo = AsyncMock(spec=AsyncPostgresJobRepository)
        job = _make_job()

        worker = JobWorker(repo=mock_repo, base_retry_delay=5.0)
        worker.register(SETTLE_JOB_TYPE, AsyncMock(side_effect=RuntimeError("still pending")), base_retry_delay=30.0)

        await worker._execute(job)

        mock_repo.fail.assert_called_once()
        assert "RuntimeError" in mock_repo.fail.call_args[0][1]
        assert mock_repo.fail.call_args[1]["base_delay"] == 30.0
        mock_repo.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_last_attempt_counts_as_failed(self):
        from pact.infra.metrics import get_metrics_collector

        mock_repo = AsyncMock(spec=AsyncPostgresJobRepository)
        worker = JobWorker(repo=mock_repo)
        worker.register(SETTLE_JOB_TYPE, AsyncMock(side_effect=RuntimeError("ledger down")))

        collector = get_metrics_collector()
        before = collector.get_counter("jobs_total", job_type=SETTLE_JOB_TYPE, outcome="failed")
        await worker._execute(_make_job(attempts=7, max_attempts=8))

        assert collector.get_counter(
            "jobs_total", job_type=SETTLE_JOB_TYPE, outcome="failed"
        ) == before + 1
        mock_repo.fail.assert_called_once()

    @pytest.mark.asyncio
    async def test_worker_unknown_job_type(self):
        """Unknown job_type fails the job with descriptive error."""
        mock_repo = AsyncMock(spec=AsyncPostgresJobRepository)
        job = _make_job(job_type="unknown_type")

        worker = JobWorker(repo=mock_repo)

        await worker._execute(job)

        error_msg = mock_repo.fail.call_args[0][1]
        assert "No handler registered" in error_msg
        assert "unknown_type" in error_msg

    @pytest.mark.asyncio
    async def test_worker_start_stop(self):
        """Worker starts and stops cleanly."""
        mock_repo = AsyncMock(spec=AsyncPostgresJobRepository)
        mock_repo.claim_batch = AsyncMock(return_value=[])

        worker = JobWorker(repo=mock_repo, poll_interval=0.05)
        await worker.start()

        assert worker._running is True
        await asyncio.sleep(0.1)

        await worker.stop()
        assert worker._running is False
        mock_repo.claim_batch.assert_called()


# ---------------------------------------------------------------------------
# Settlement retry
# ---------------------------------------------------------------------------

class TestSettleHandler:
    @pytest.mark.asyncio
    async def test_success(self):
        lifecycle = AsyncMock()
        lifecycle.settle = AsyncMock(return_value=OpResult.success(object()))

        await make_settle_handler(lifecycle)(_make_job())

        lifecycle.settle.assert_called_once_with("entry-0001")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [
        ErrorCode.ALREADY_SETTLED,
        ErrorCode.NO_RECIPIENT,
        ErrorCode.NOT_FOUND,
        ErrorCode.WRONG_STATE,
    ])
    async def test_final_outcomes_complete_the_job(self, code):
        lifecycle = AsyncMock()
        lifecycle.settle = AsyncMock(return_value=OpResult.failure(code))

        await make_settle_handler(lifecycle)(_make_job())

    @pytest.mark.asyncio
    async def test_ledger_outage_raises_for_backoff(self):
        lifecycle = AsyncMock()
        lifecycle.settle = AsyncMock(return_value=OpResult.failure(ErrorCode.LEDGER_UNAVAILABLE))

        with pytest.raises(RuntimeError, match="ledger_unavailable"):
            await make_settle_handler(lifecycle)(_make_job())

    @pytest.mark.asyncio
    async def test_end_to_end_with_memory_services(self, store, directory, events):
        """Worker-driven retry credits the wallet once the ledger is back."""
        ledger = FlakyLedger(failures=1)
        services = build_services(store, directory, ledger, events=events)
        entry_id = await accepted_entry(services, store)
        await services.lifecycle.start_visit(entry_id, "col-ahmed")
        await services.lifecycle.complete_visit(entry_id, "col-ahmed")

        mock_repo = AsyncMock(spec=AsyncPostgresJobRepository)
        worker = JobWorker(repo=mock_repo)
        worker.register(SETTLE_JOB_TYPE, make_settle_handler(services.lifecycle))

        await worker._execute(_make_job(payload={"entry_id": entry_id}))

        mock_repo.complete.assert_called_once()
        assert ledger.balance("col-ahmed") == Decimal("30")


class TestJobQueueSettlementRetry:
    @pytest.mark.asyncio
    async def test_schedule_enqueues_deduped_job(self):
        repo = AsyncMock(spec=AsyncPostgresJobRepository)
        repo.enqueue = AsyncMock(return_value="job-1")
        queue = JobQueueSettlementRetry(repo, max_attempts=4, first_delay=10.0)

        await queue.schedule("entry-0001", "ledger_unavailable")

        repo.enqueue.assert_called_once_with(
            SETTLE_JOB_TYPE,
            {"entry_id": "entry-0001", "reason": "ledger_unavailable"},
            max_attempts=4,
            delay_seconds=10.0,
            dedupe_key="settle:entry-0001",
        )
