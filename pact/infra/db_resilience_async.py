# pact/infra/db_resilience_async.py
"""
Async database resilience utilities.
Transient-error detection and retry for asyncpg.
"""
from __future__ import annotations
import asyncio
from typing import Callable
from contextlib import AsyncExitStack, asynccontextmanager
from functools import wraps

import asyncpg
from pact.infra.db_async import db_conn
from pact.infra.logging_config import get_logger

logger = get_logger(__name__)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock / serialization failure
    """
    if isinstance(exc, (asyncpg.PostgresConnectionError, asyncpg.TooManyConnectionsError)):
        return True

    if isinstance(exc, (asyncpg.DeadlockDetectedError, asyncpg.SerializationError)):
        return True

    if isinstance(exc, (ConnectionError, asyncio.TimeoutError, OSError)):
        return True

    # Constraint / syntax errors are never transient, whatever the message says
    if isinstance(exc, asyncpg.PostgresError):
        return False

    error_message = str(exc).lower()
    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "too many connections",
        "server closed",
        "connection reset",
    ]
    return any(pattern in error_message for pattern in transient_patterns)


def _delays(max_retries: int, initial_delay: float, backoff_factor: float, max_delay: float):
    """Sleep before each retry: initial_delay, then multiplied by backoff_factor up to max_delay."""
    delay = initial_delay
    for _ in range(max_retries):
        yield delay
        delay = min(delay * backoff_factor, max_delay)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Retry an async function on transient database errors.

    Only wrap operations that are safe to repeat (reads, or writes that are
    idempotent by key such as the wallet credit).

    Example:
        @retry_on_transient_error(max_retries=3)
        async def load(entry_id: str):
            async with db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM site_entries WHERE id = $1", entry_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delays = _delays(max_retries, initial_delay, backoff_factor, max_delay)
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise
                    delay = next(delays, None)
                    if delay is None:
                        logger.error(f"{func.__name__} still failing after {attempt} attempts", exc_info=True)
                        raise
                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt}/{max_retries + 1}): {exc}; "
                        f"retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Pool connection whose acquire is retried on transient errors.

    Usage:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM site_entries WHERE id = $1", entry_id)

    Only the acquire is retried.  Errors raised inside the block propagate
    unchanged: the caller's statements may already have taken effect.
    """
    delays = _delays(3, 0.1, 2.0, 5.0)

    async with AsyncExitStack() as stack:
        while True:
            try:
                conn = await stack.enter_async_context(db_conn(autocommit=autocommit))
                break
            except Exception as exc:
                if not is_transient_error(exc):
                    raise
                delay = next(delays, None)
                if delay is None:
                    logger.error("Giving up acquiring a database connection")
                    raise
                logger.warning(f"Transient error acquiring connection: {exc}; retrying in {delay:.2f}s")
                await asyncio.sleep(delay)

        yield conn
