# pact/infra/pg_wallet_ledger_async.py
"""
Async PostgreSQL wallet ledger.

One ``wallet_transactions`` row per settled site entry, enforced by the
unique ``reference_entry_id``.  The wallet row is locked (FOR UPDATE) for
the balance read-modify-write, so concurrent credits to one collector
serialize and ``balance_before``/``balance_after`` stay consistent.
"""
from __future__ import annotations

import asyncio
from decimal import Decimal

import asyncpg

from pact.config import settings
from pact.core.dispatch.domain import LedgerEntry
from pact.core.dispatch.ports import LedgerUnavailableError
from pact.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from pact.infra.logging_config import get_logger
from pact.infra.metrics import AppMetrics

logger = get_logger(__name__)

TRANSACTION_TYPE = "site_visit_completion"


def _row_to_ledger_entry(row, *, created: bool) -> LedgerEntry:
    return LedgerEntry(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        amount=row["amount"],
        currency=row["currency"],
        reference_entry_id=str(row["reference_entry_id"]),
        balance_before=row["balance_before"],
        balance_after=row["balance_after"],
        created_at=row["created_at"],
        created=created,
    )


class PostgresWalletLedger:
    def __init__(self, currency: str | None = None) -> None:
        self.currency = currency or settings.ledger_currency

    async def credit(self, user_id: str, amount: Decimal, reference_id: str) -> LedgerEntry:
        """
        Credit ``amount`` to ``user_id`` for site entry ``reference_id``.

        Repeats (sequential or concurrent) return the first row with
        ``created=False`` and leave the balance alone.  Database failures
        surface as LedgerUnavailableError.
        """
        try:
            return await self._credit(user_id, amount, reference_id)
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            AppMetrics.database_error("wallet_credit")
            raise LedgerUnavailableError(f"wallet credit failed for ref={reference_id}: {e}") from e

    @retry_on_transient_error(max_retries=2)
    async def _credit(self, user_id: str, amount: Decimal, reference_id: str) -> LedgerEntry:
        async with safe_db_conn(autocommit=False) as conn:
            existing = await conn.fetchrow(
                "SELECT * FROM wallet_transactions WHERE reference_entry_id = $1",
                reference_id,
            )
            if existing is not None:
                return _row_to_ledger_entry(existing, created=False)

            await conn.execute(
                """
                INSERT INTO wallets (user_id, currency)
                VALUES ($1, $2)
                ON CONFLICT (user_id) DO NOTHING
                """,
                user_id,
                self.currency,
            )
            wallet = await conn.fetchrow(
                "SELECT id, balance FROM wallets WHERE user_id = $1 FOR UPDATE",
                user_id,
            )
            before: Decimal = wallet["balance"]
            after = before + amount

            row = await conn.fetchrow(
                """
                INSERT INTO wallet_transactions
                  (wallet_id, user_id, type, amount, currency, reference_entry_id,
                   balance_before, balance_after, description)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (reference_entry_id) DO NOTHING
                RETURNING *
                """,
                wallet["id"],
                user_id,
                TRANSACTION_TYPE,
                amount,
                self.currency,
                reference_id,
                before,
                after,
                f"Site visit completed: {reference_id}",
            )
            if row is None:
                # A concurrent credit for the same entry committed first
                existing = await conn.fetchrow(
                    "SELECT * FROM wallet_transactions WHERE reference_entry_id = $1",
                    reference_id,
                )
                return _row_to_ledger_entry(existing, created=False)

            await conn.execute(
                """
                UPDATE wallets
                SET balance = $2, total_earned = total_earned + $3, updated_at = now()
                WHERE id = $1
                """,
                wallet["id"],
                after,
                amount,
            )

        logger.info(
            f"Wallet credited: user={user_id}, amount={amount} {self.currency}, ref={reference_id}",
            extra={"entry_id": reference_id, "collector_id": user_id},
        )
        return _row_to_ledger_entry(row, created=True)

    async def balance(self, user_id: str) -> Decimal:
        async with safe_db_conn() as conn:
            value = await conn.fetchval("SELECT balance FROM wallets WHERE user_id = $1", user_id)
            return value if value is not None else Decimal("0")
