# pact/infra/schema_validator.py
"""
Schema version validator for production deployments.

The application does NOT run migrations itself:
1. Migrations run separately (CI/CD, migrate job, manual script)
2. The application checks the latest applied migration at startup
3. The application refuses to start against an incompatible schema
"""
from __future__ import annotations
from pact.config import settings
from pact.infra.db_async import db_conn
from pact.infra.logging_config import get_logger

logger = get_logger(__name__)


async def validate_schema_version() -> dict:
    """
    Validate that the latest applied migration matches ``settings.expected_schema_version``.

    Returns:
        dict with keys ok / current_version / expected_version

    Raises:
        RuntimeError: If the schema is missing or at another version
    """
    async with db_conn() as conn:
        table_exists = await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_schema = 'public'
                AND table_name = 'schema_migrations'
            )
            """
        )

        if not table_exists:
            error = (
                "Schema migrations table not found. "
                "Run migrations first: python -m pact.infra.migrate"
            )
            logger.critical(error)
            raise RuntimeError(error)

        current_version = await conn.fetchval("SELECT max(version) FROM schema_migrations")

    if current_version is None:
        error = "No migrations have been applied. Run migrations first: python -m pact.infra.migrate"
        logger.critical(error)
        raise RuntimeError(error)

    if current_version != settings.expected_schema_version:
        error = (
            f"Schema version mismatch! "
            f"Expected: {settings.expected_schema_version}, Found: {current_version}. "
            f"Run migrations to update schema: python -m pact.infra.migrate"
        )
        logger.critical(error)
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": settings.expected_schema_version,
    }
