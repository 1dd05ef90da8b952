#!/usr/bin/env python3
"""
Retry wallet credits for Completed site entries that were never settled.

Safe to run at any time (and concurrently with the app): settlement is
idempotent per site entry.

Usage:
    python scripts/settle_pending.py               # Settle everything pending
    python scripts/settle_pending.py --limit 50    # At most 50 entries
    python scripts/settle_pending.py --dry-run     # List pending entries only

Environment:
    DATABASE_URL (or PGHOST/PGUSER/...): the PACT database
"""
import argparse
import asyncio
import sys

from pact.config import settings
from pact.core.dispatch.domain import SiteEntryFilter, SiteStatus
from pact.core.dispatch.jobs import SETTLE_JOB_TYPE
from pact.core.dispatch.services import build_services
from pact.infra.db_async import close_pool, init_pool
from pact.infra.event_sinks import LoggingEventSink
from pact.infra.logging_config import get_logger, setup_logging
from pact.infra.pg_collector_directory_async import PostgresCollectorDirectory
from pact.infra.pg_job_repo_async import get_job_repo
from pact.infra.pg_site_entry_store_async import PostgresSiteEntryStore
from pact.infra.pg_wallet_ledger_async import PostgresWalletLedger

setup_logging(level=settings.log_level, use_json=False)
logger = get_logger("settle_pending")


async def run(limit: int | None, dry_run: bool) -> int:
    await init_pool()
    try:
        store = PostgresSiteEntryStore()
        if dry_run:
            count = 0
            async for entry in store.query(
                SiteEntryFilter(statuses=frozenset({SiteStatus.COMPLETED}), unsettled_only=True)
            ):
                count += 1
                print(f"{entry.id}\t{entry.site_code}\t{entry.accepted_by}\t{entry.cost}")
                if limit is not None and count >= limit:
                    break
            print(f"{count} entr{'y' if count == 1 else 'ies'} pending settlement")
            queued = await get_job_repo().count_by_status(SETTLE_JOB_TYPE)
            if queued:
                summary = ", ".join(f"{status}={n}" for status, n in sorted(queued.items()))
                print(f"settlement retry jobs: {summary}")
            return 0

        services = build_services(
            store,
            PostgresCollectorDirectory(),
            PostgresWalletLedger(),
            events=LoggingEventSink(),
        )
        sweep = await services.lifecycle.settle_pending(limit=limit)
        logger.info(
            f"Settlement sweep finished: attempted={sweep.attempted} settled={sweep.settled} "
            f"already_settled={sweep.already_settled} failed={sweep.failed}"
        )
        return 1 if sweep.failed else 0
    finally:
        await close_pool()


def main():
    parser = argparse.ArgumentParser(
        description="Retry pending wallet credits for completed site visits",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--limit", "-n", type=int, default=None, help="Maximum entries to settle")
    parser.add_argument("--dry-run", action="store_true", help="Only list pending entries")
    args = parser.parse_args()

    if args.limit is not None and args.limit < 1:
        parser.error("--limit must be positive")

    sys.exit(asyncio.run(run(args.limit, args.dry_run)))


if __name__ == "__main__":
    main()
