# pact/infra/job_worker.py
"""
In-process worker for the jobs table.

Runs inside the web process (``RUN_MODE=all``) or on its own
(``RUN_MODE=worker``).  Each poll claims a batch of due jobs and runs
them concurrently through the handler registered for their type; a
handler that raises has its job rescheduled with backoff.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from pact.infra.logging_config import get_logger
from pact.infra.metrics import inc_counter
from pact.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]

# Housekeeping cadence, in poll loops
_STALE_RESET_EVERY = 60
_CLEANUP_EVERY = 3600


class JobWorker:
    """
    Usage:
        worker = JobWorker(repo=get_job_repo())
        worker.register(SETTLE_JOB_TYPE, make_settle_handler(services.lifecycle))
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: AsyncPostgresJobRepository,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
    ):
        self._repo = repo
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._stale_timeout = stale_timeout
        self._handlers: dict[str, tuple[JobHandler, float]] = {}
        self._task: asyncio.Task | None = None
        self._running = False
        self._loops = 0

    def register(
        self,
        job_type: str,
        handler: JobHandler,
        *,
        base_retry_delay: float | None = None,
    ) -> None:
        delay = self._base_retry_delay if base_retry_delay is None else base_retry_delay
        self._handlers[job_type] = (handler, delay)

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="job_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Job worker started: types={sorted(self._handlers)}, "
            f"poll={self._poll_interval}s, batch={self._batch_size}"
        )

    async def stop(self) -> None:
        """Stop polling; an in-flight batch is cancelled and its jobs are requeued by the stale reset."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job worker stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                self._loops += 1
                await self._housekeeping()

                jobs = await self._repo.claim_batch(self._batch_size)
                if not jobs:
                    await asyncio.sleep(self._poll_interval)
                    continue

                await asyncio.gather(*(self._execute(job) for job in jobs), return_exceptions=True)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Job worker loop error: {exc}", exc_info=True)
                inc_counter("job_worker_loop_errors_total")
                await asyncio.sleep(self._poll_interval * 2)

    async def _housekeeping(self) -> None:
        if self._loops % _STALE_RESET_EVERY == 0:
            try:
                await self._repo.reset_stale_running(self._stale_timeout)
            except Exception as exc:
                logger.warning(f"Stale job reset failed: {exc}")
        if self._loops % _CLEANUP_EVERY == 0:
            try:
                await self._repo.cleanup_completed()
            except Exception as exc:
                logger.warning(f"Completed job cleanup failed: {exc}")

    async def _execute(self, job: Job) -> None:
        registered = self._handlers.get(job.job_type)
        if registered is None:
            error = f"No handler registered for job_type={job.job_type}"
            logger.error(error, extra={"job_id": job.id})
            await self._repo.fail(job.id, error, base_delay=self._base_retry_delay)
            inc_counter("jobs_total", job_type=job.job_type, outcome="unknown_type")
            return

        handler, base_delay = registered
        try:
            await handler(job)
        except Exception as exc:
            error = f"{exc.__class__.__name__}: {exc}"[:500]
            await self._repo.fail(job.id, error, base_delay=base_delay)
            outcome = "failed" if job.is_last_attempt else "retrying"
            inc_counter("jobs_total", job_type=job.job_type, outcome=outcome)
            log = logger.error if job.is_last_attempt else logger.warning
            log(
                f"Job {outcome}: type={job.job_type}, attempt={job.attempts + 1}/{job.max_attempts}, "
                f"error={error[:100]}",
                extra={"job_id": job.id},
            )
            return

        await self._repo.complete(job.id)
        inc_counter("jobs_total", job_type=job.job_type, outcome="completed")
        logger.info(
            f"Job completed: type={job.job_type}, attempt={job.attempts + 1}",
            extra={"job_id": job.id},
        )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Job worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
