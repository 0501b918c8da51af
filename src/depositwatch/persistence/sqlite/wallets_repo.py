from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from depositwatch.domain.models import WalletAddress
from depositwatch.persistence.sqlite.sqlite_connection import ensure_wallet_schema

logger = logging.getLogger(__name__)


class SqliteWalletsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_wallet_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "wallets"}})
            raise PermissionError("UnitOfWork is read-only; wallet writes are blocked")

    def get_active_address(self, currency: str) -> str | None:
        row = self._conn.execute(
            "SELECT address FROM wallet_addresses WHERE currency = ? AND is_active = 1",
            (currency,),
        ).fetchone()
        if row is None or not str(row["address"]).strip():
            return None
        return str(row["address"])

    def set_address(self, currency: str, address: str, *, active: bool, now: datetime) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO wallet_addresses(currency, address, is_active, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(currency) DO UPDATE SET
                address = excluded.address,
                is_active = excluded.is_active,
                updated_at = excluded.updated_at
            """,
            (currency, address, 1 if active else 0, now.isoformat()),
        )

    def list_addresses(self) -> list[WalletAddress]:
        rows = self._conn.execute("SELECT * FROM wallet_addresses ORDER BY currency").fetchall()
        return [
            WalletAddress(
                currency=str(row["currency"]),
                address=str(row["address"]),
                is_active=bool(row["is_active"]),
                updated_at=datetime.fromisoformat(str(row["updated_at"])),
            )
            for row in rows
        ]
