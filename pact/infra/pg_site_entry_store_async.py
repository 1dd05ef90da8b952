# pact/infra/pg_site_entry_store_async.py
"""
Async PostgreSQL site entry store (asyncpg).

Every claim-relevant transition is one conditional UPDATE:

    UPDATE site_entries SET ... WHERE id = $1 AND status = $2
      AND accepted_by IS NOT DISTINCT FROM $3 RETURNING *

Zero rows back means the row moved on (conflict) or never existed
(not found); a follow-up SELECT tells the two apart.  Postgres row
locking gives the single-winner guarantee, no advisory locks needed.
"""
from __future__ import annotations

import json
from dataclasses import fields
from enum import Enum
from typing import Any, AsyncIterator, Optional

from pact.config import settings
from pact.core.dispatch.domain import (
    FEE_FIELDS,
    LOCK_COST,
    PATCHABLE_FIELDS,
    GeoPoint,
    SiteEntry,
    SiteEntryFilter,
    SiteStatus,
)
from pact.core.dispatch.ports import (
    FeesLockedError,
    SiteEntryConflictError,
    SiteEntryNotFoundError,
)
from pact.infra.db_resilience_async import safe_db_conn
from pact.infra.logging_config import get_logger
from pact.infra.metrics import AppMetrics

logger = get_logger(__name__)

_COLUMNS = [f.name for f in fields(SiteEntry)]
_JSONB_COLUMNS = frozenset({"visit_start_location", "final_location"})
# SET expressions read the pre-update row, so this is the cost the fees give at write time
_DERIVED_COST_SQL = "cost = CASE WHEN cost_overridden THEN cost ELSE enumerator_fee + transport_fee END"


def _to_db(column: str, value: Any) -> Any:
    """Python value -> asyncpg parameter."""
    if isinstance(value, Enum):
        return value.value
    if column in _JSONB_COLUMNS:
        return json.dumps(value.to_dict()) if value is not None else None
    return value


def _placeholder(column: str, idx: int) -> str:
    return f"${idx}::jsonb" if column in _JSONB_COLUMNS else f"${idx}"


def _geo(raw: Any) -> Optional[GeoPoint]:
    if isinstance(raw, str):
        raw = json.loads(raw)
    return GeoPoint.from_dict(raw)


def _row_to_entry(row) -> SiteEntry:
    """Convert an asyncpg Record to a SiteEntry (status normalized to the canonical value)."""
    data = {col: row[col] for col in _COLUMNS if col in row.keys()}
    data["id"] = str(data["id"])
    data["status"] = SiteStatus.parse(data["status"])
    for col in _JSONB_COLUMNS:
        if col in data:
            data[col] = _geo(data[col])
    for col in ("enumerator_fee", "transport_fee", "cost"):
        if data.get(col) is None:
            data.pop(col, None)
    return SiteEntry(**data)


def _set_clause(patch: dict[str, Any], start_idx: int) -> tuple[str, list[Any]]:
    """Build ``col = $n, ...`` for a patch; returns the clause and its params."""
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown site entry fields: {sorted(unknown)}")

    assignments = []
    params: list[Any] = []
    idx = start_idx
    for column, value in patch.items():
        if column == "updated_at":
            continue
        if column == "cost" and value is LOCK_COST:
            assignments.append(_DERIVED_COST_SQL)
            continue
        assignments.append(f"{column} = {_placeholder(column, idx)}")
        params.append(_to_db(column, value))
        idx += 1
    assignments.append("updated_at = now()")
    return ", ".join(assignments), params


def _normalize_place(value: str) -> str:
    return " ".join(value.split()).casefold()


def _where_clause(filter: SiteEntryFilter, start_idx: int) -> tuple[list[str], list[Any]]:
    conditions: list[str] = []
    params: list[Any] = []
    idx = start_idx

    if filter.statuses is not None:
        conditions.append(f"status = ANY(${idx}::text[])")
        params.append(sorted(s.value for s in filter.statuses))
        idx += 1
    if filter.plan_id is not None:
        conditions.append(f"plan_id = ${idx}")
        params.append(filter.plan_id)
        idx += 1
    if filter.state is not None:
        conditions.append(f"lower(regexp_replace(btrim(state), '\\s+', ' ', 'g')) = ${idx}")
        params.append(_normalize_place(filter.state))
        idx += 1
    if filter.locality is not None:
        conditions.append(f"lower(regexp_replace(btrim(locality), '\\s+', ' ', 'g')) = ${idx}")
        params.append(_normalize_place(filter.locality))
        idx += 1
    if filter.accepted_by is not None:
        conditions.append(f"accepted_by = ${idx}")
        params.append(filter.accepted_by)
        idx += 1
    if filter.dispatch_mode is not None:
        conditions.append(f"dispatch_mode = ${idx}")
        params.append(filter.dispatch_mode.value)
        idx += 1
    if filter.dispatch_target_collector is not None:
        conditions.append(f"dispatch_target_collector = ${idx}")
        params.append(filter.dispatch_target_collector)
        idx += 1
    if filter.unsettled_only:
        conditions.append("payment_credited_at IS NULL")

    return conditions, params


class PostgresSiteEntryStore:
    """Site entry rows in the ``site_entries`` table."""

    def __init__(self, page_size: int | None = None) -> None:
        self.page_size = max(1, page_size or settings.site_query_page_size)

    async def get(self, entry_id: str) -> Optional[SiteEntry]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM site_entries WHERE id = $1", entry_id)
            return _row_to_entry(row) if row else None

    async def query(self, filter: SiteEntryFilter) -> AsyncIterator[SiteEntry]:
        """
        Keyset-paginated scan ordered by id.

        A connection is held per page only, never across a ``yield``, so a
        slow consumer does not pin a pool slot.
        """
        conditions, params = _where_clause(filter, start_idx=1)
        after_idx = len(params) + 1
        limit_idx = after_idx + 1
        where = " AND ".join(conditions + [f"id > ${after_idx}"])
        sql = f"SELECT * FROM site_entries WHERE {where} ORDER BY id LIMIT ${limit_idx}"

        last_id = ""
        while True:
            async with safe_db_conn() as conn:
                rows = await conn.fetch(sql, *params, last_id, self.page_size)
            for row in rows:
                yield _row_to_entry(row)
            if len(rows) < self.page_size:
                return
            last_id = str(rows[-1]["id"])

    async def conditional_update(
        self,
        entry_id: str,
        expected_status: SiteStatus,
        expected_accepted_by: Optional[str],
        patch: dict[str, Any],
        *,
        expect_unsettled: bool = False,
    ) -> SiteEntry:
        expected_status = SiteStatus.parse(expected_status)
        set_sql, set_params = _set_clause(patch, start_idx=4)
        unsettled_sql = " AND payment_credited_at IS NULL" if expect_unsettled else ""

        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE site_entries
                SET {set_sql}
                WHERE id = $1
                  AND status = $2
                  AND accepted_by IS NOT DISTINCT FROM $3{unsettled_sql}
                RETURNING *
                """,
                entry_id,
                expected_status.value,
                expected_accepted_by,
                *set_params,
            )
            if row is not None:
                return _row_to_entry(row)

            current = await conn.fetchrow(
                "SELECT status, accepted_by, payment_credited_at FROM site_entries WHERE id = $1",
                entry_id,
            )

        if current is None:
            raise SiteEntryNotFoundError(entry_id)
        raise SiteEntryConflictError(
            f"entry {entry_id}: expected status={expected_status.value} "
            f"accepted_by={expected_accepted_by}, found status={current['status']} "
            f"accepted_by={current['accepted_by']}"
        )

    async def update(self, entry_id: str, patch: dict[str, Any]) -> SiteEntry:
        """Plain update; fee fields of a fee-locked row are refused atomically."""
        set_sql, set_params = _set_clause(patch, start_idx=2)
        touches_fees = bool(FEE_FIELDS & set(patch))
        lock_guard = " AND fees_locked_at IS NULL" if touches_fees else ""

        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"UPDATE site_entries SET {set_sql} WHERE id = $1{lock_guard} RETURNING *",
                entry_id,
                *set_params,
            )
            if row is not None:
                return _row_to_entry(row)

            exists = await conn.fetchval("SELECT 1 FROM site_entries WHERE id = $1", entry_id)

        if not exists:
            raise SiteEntryNotFoundError(entry_id)
        raise FeesLockedError(entry_id)

    async def insert(self, entry: SiteEntry) -> SiteEntry:
        columns = [c for c in _COLUMNS if c != "updated_at"]
        placeholders = ", ".join(_placeholder(c, i) for i, c in enumerate(columns, start=1))
        params = [_to_db(c, getattr(entry, c)) for c in columns]

        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO site_entries ({", ".join(columns)}, updated_at)
                    VALUES ({placeholders}, now())
                    ON CONFLICT (id) DO NOTHING
                    RETURNING *
                    """,
                    *params,
                )
        except Exception:
            AppMetrics.database_error("site_entry_insert")
            raise

        if row is None:
            raise SiteEntryConflictError(f"entry {entry.id} already exists")
        logger.debug(f"Site entry inserted: id={entry.id}, site={entry.site_code}")
        return _row_to_entry(row)
