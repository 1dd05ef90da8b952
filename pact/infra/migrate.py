#!/usr/bin/env python3
# pact/infra/migrate.py
"""
Apply PACT database migrations.

The app only checks the schema version at startup; run this first
(CI/CD step, migrate container, or by hand):

    python -m pact.infra.migrate          # apply pending migrations
    python -m pact.infra.migrate --list   # show pending migrations only
"""
import argparse
import asyncio
import sys

from pact.config import settings
from pact.infra.db_async import close_pool, init_pool
from pact.infra.logging_config import get_logger, setup_logging
from pact.infra.migrations_async import apply_migrations, pending_migrations

setup_logging(level="INFO", use_json=False)
logger = get_logger(__name__)


async def run(list_only: bool) -> int:
    logger.info(
        f"Migrating {settings.pghost}:{settings.pgport}/{settings.pgdatabase} (env={settings.app_env})"
    )
    await init_pool()
    try:
        if list_only:
            pending = await pending_migrations()
            for name in pending:
                print(name)
            logger.info(f"{len(pending)} pending migration(s)")
            return 0

        result = await apply_migrations()
        for name in result["applied"]:
            logger.info(f"  applied {name}")
        if not result["applied"]:
            logger.info("Schema already up to date")
        return 0 if result["ok"] else 1
    except Exception as exc:
        logger.critical(f"Migration failed: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()


def main():
    parser = argparse.ArgumentParser(description="Apply PACT database migrations")
    parser.add_argument("--list", action="store_true", help="Only list pending migrations")
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args.list)))


if __name__ == "__main__":
    main()
