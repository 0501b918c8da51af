from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal, Inexact, localcontext

from depositwatch.domain.errors import LedgerWriteFailure
from depositwatch.persistence.sqlite.sqlite_connection import ensure_ledger_schema

logger = logging.getLogger(__name__)

# Wide enough for large balances plus 18-decimal ETH credits without rounding.
_BALANCE_PRECISION = 96


class SqliteLedgerRepo:
    """User balances plus an append-only credit journal keyed by reference.

    Writers run inside a BEGIN IMMEDIATE unit of work, so the balance read and
    the compare-and-set update below cannot interleave with another writer.
    """

    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_ledger_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "ledger"}})
            raise PermissionError("UnitOfWork is read-only; ledger writes are blocked")

    def open_account(self, user_id: int, *, now: datetime) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT OR IGNORE INTO ledger_accounts(user_id, balance, created_at, updated_at)
            VALUES (?, '0', ?, ?)
            """,
            (user_id, now.isoformat(), now.isoformat()),
        )
        return cursor.rowcount == 1

    def get_balance(self, user_id: int) -> Decimal | None:
        row = self._conn.execute(
            "SELECT balance FROM ledger_accounts WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return Decimal(str(row["balance"])) if row is not None else None

    def credit(
        self,
        user_id: int,
        amount: Decimal,
        *,
        reference: str,
        now: datetime,
    ) -> tuple[Decimal, bool]:
        self._ensure_writable()
        if amount < 0:
            raise LedgerWriteFailure(f"credit amount must be >= 0, got {amount}")

        current = self.get_balance(user_id)
        if current is None:
            raise LedgerWriteFailure(f"ledger account {user_id} does not exist")

        existing = self._conn.execute(
            "SELECT user_id FROM ledger_credits WHERE reference = ?",
            (reference,),
        ).fetchone()
        if existing is not None:
            logger.info(
                "ledger_credit_replayed",
                extra={"extra": {"user_id": user_id, "reference": reference}},
            )
            return current, False

        with localcontext() as ctx:
            ctx.prec = _BALANCE_PRECISION
            ctx.traps[Inexact] = True
            try:
                new_balance = current + amount
            except Inexact as exc:
                raise LedgerWriteFailure(f"credit for user {user_id} would round the balance") from exc

        cursor = self._conn.execute(
            """
            UPDATE ledger_accounts
            SET balance = ?, updated_at = ?
            WHERE user_id = ? AND balance = ?
            """,
            (format(new_balance, "f"), now.isoformat(), user_id, format(current, "f")),
        )
        if cursor.rowcount != 1:
            raise LedgerWriteFailure(f"ledger balance for user {user_id} changed concurrently")
        self._conn.execute(
            """
            INSERT INTO ledger_credits(user_id, amount, balance_after, reference, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, format(amount, "f"), format(new_balance, "f"), reference, now.isoformat()),
        )
        return new_balance, True
