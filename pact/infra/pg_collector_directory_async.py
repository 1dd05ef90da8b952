# pact/infra/pg_collector_directory_async.py
"""
Collector profiles as synced from the identity/roles provider.

The dispatch core trusts these rows as given (home state / locality
drive eligibility); nothing here authenticates anyone.
"""
from __future__ import annotations

from typing import Optional

from pact.core.dispatch.domain import CollectorProfile
from pact.infra.db_resilience_async import safe_db_conn

def _row_to_profile(row) -> CollectorProfile:
    return CollectorProfile(
        collector_id=str(row["collector_id"]),
        state=row["state"],
        locality=row["locality"],
        display_name=row["display_name"] or "",
        is_active=row["is_active"],
    )


class PostgresCollectorDirectory:
    async def get_profile(self, collector_id: str) -> Optional[CollectorProfile]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT collector_id, state, locality, display_name, is_active
                FROM collector_profiles
                WHERE collector_id = $1
                """,
                collector_id,
            )
            return _row_to_profile(row) if row else None
