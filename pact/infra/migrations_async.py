# pact/infra/migrations_async.py
"""
SQL migrations for the PACT schema.

Files in ``pact/infra/sql`` run in name order (``001_init.sql``,
``002_...``), each in its own transaction together with its
``schema_migrations`` row, so a failed file leaves earlier ones applied
and itself not recorded.  A session advisory lock keeps two runners
(e.g. two deploy jobs) from applying the same file twice.
"""
from __future__ import annotations

from pathlib import Path

from pact.infra.db_async import db_conn
from pact.infra.logging_config import get_logger

logger = get_logger(__name__)

SQL_DIR = Path(__file__).resolve().parent / "sql"

# Arbitrary constant shared by every migration runner
_MIGRATION_LOCK_ID = 0x7AC7_0001

_CREATE_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations(
  version text PRIMARY KEY,
  applied_at timestamptz NOT NULL DEFAULT now()
)
"""


def migration_files(sql_dir: Path = SQL_DIR) -> list[Path]:
    return sorted(p for p in sql_dir.glob("*.sql") if p.is_file())


async def pending_migrations(sql_dir: Path = SQL_DIR) -> list[str]:
    """Names of migration files not yet recorded in schema_migrations."""
    async with db_conn() as conn:
        await conn.execute(_CREATE_TRACKING_TABLE)
        rows = await conn.fetch("SELECT version FROM schema_migrations")
    applied = {row["version"] for row in rows}
    return [p.name for p in migration_files(sql_dir) if p.name not in applied]


async def apply_migrations(sql_dir: Path = SQL_DIR) -> dict:
    """
    Apply every pending migration.

    Returns:
        dict with ``ok``, ``applied`` (file names applied by this run) and ``count``
    """
    applied_now: list[str] = []

    async with db_conn() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", _MIGRATION_LOCK_ID)
        try:
            await conn.execute(_CREATE_TRACKING_TABLE)
            rows = await conn.fetch("SELECT version FROM schema_migrations")
            done = {row["version"] for row in rows}

            for path in migration_files(sql_dir):
                if path.name in done:
                    continue
                logger.info(f"Applying migration {path.name}")
                async with conn.transaction():
                    await conn.execute(path.read_text(encoding="utf-8"))
                    await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)
                applied_now.append(path.name)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", _MIGRATION_LOCK_ID)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
