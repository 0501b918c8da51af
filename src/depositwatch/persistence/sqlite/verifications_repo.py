from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Any

from depositwatch.domain.errors import RetryExhausted
from depositwatch.domain.models import VerificationRecord
from depositwatch.persistence.interfaces.verifications_repo import VerificationFilter
from depositwatch.persistence.sqlite.sqlite_connection import ensure_verification_schema

logger = logging.getLogger(__name__)


def _parse_ts(value: object) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(str(value))


def _fmt_decimal(value: Decimal) -> str:
    return format(value, "f")


def _terminal_params(reason: str, max_retries: int | None) -> tuple[int, str]:
    # A ceiling of 0 never matches, so the plain message is kept.
    if max_retries is None:
        return 0, reason
    return max_retries, RetryExhausted(max_retries, reason).message


class SqliteVerificationsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_verification_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "verifications"}})
            raise PermissionError("UnitOfWork is read-only; verification writes are blocked")

    def _row_to_record(self, row: sqlite3.Row) -> VerificationRecord:
        return VerificationRecord(
            id=int(row["id"]),
            txid=str(row["txid"]),
            currency=str(row["currency"]),
            matched_address=str(row["matched_address"]),
            amount_minor=int(str(row["amount_minor"])),
            amount_major=Decimal(str(row["amount_major"])),
            confirmed=bool(row["confirmed"]),
            confirmed_at=_parse_ts(row["confirmed_at"]),
            credited=bool(row["credited"]),
            credited_at=_parse_ts(row["credited_at"]),
            user_id=int(row["user_id"]) if row["user_id"] is not None else None,
            retry_count=int(row["retry_count"]),
            error_message=str(row["error_message"]) if row["error_message"] is not None else None,
            last_checked=datetime.fromisoformat(str(row["last_checked"])),
            first_seen=datetime.fromisoformat(str(row["first_seen"])),
            meta=json.loads(str(row["meta_json"] or "{}")),
        )

    def insert_if_absent(
        self,
        *,
        txid: str,
        currency: str,
        user_id: int | None,
        now: datetime,
    ) -> tuple[VerificationRecord, bool]:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            INSERT OR IGNORE INTO incoming_verifications(
                txid, currency, user_id, last_checked, first_seen
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (txid, currency, user_id, now.isoformat(), now.isoformat()),
        )
        record = self.get_by_key(txid, currency)
        if record is None:
            raise RuntimeError(f"verification insert for {currency}:{txid} was not persisted")
        return record, cursor.rowcount == 1

    def get(self, record_id: int) -> VerificationRecord | None:
        row = self._conn.execute(
            "SELECT * FROM incoming_verifications WHERE id = ?",
            (record_id,),
        ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def get_by_key(self, txid: str, currency: str) -> VerificationRecord | None:
        row = self._conn.execute(
            "SELECT * FROM incoming_verifications WHERE txid = ? AND currency = ?",
            (txid, currency),
        ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def list_selectable(self, *, limit: int, max_retries: int) -> list[VerificationRecord]:
        rows = self._conn.execute(
            """
            SELECT * FROM incoming_verifications
            WHERE credited = 0
              AND retry_count < ?
              AND (confirmed = 0 OR user_id IS NOT NULL)
            ORDER BY last_checked ASC, id ASC
            LIMIT ?
            """,
            (max_retries, limit),
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def record_failure(
        self,
        record_id: int,
        *,
        error_message: str,
        now: datetime,
        meta: dict[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> None:
        """Count a failed attempt; the attempt that reaches ``max_retries`` stores a terminal message."""
        self._ensure_writable()
        ceiling, terminal = _terminal_params(error_message, max_retries)
        self._conn.execute(
            """
            UPDATE incoming_verifications
            SET retry_count = retry_count + 1,
                error_message = CASE WHEN ? > 0 AND retry_count + 1 >= ? THEN ? ELSE ? END,
                last_checked = ?,
                meta_json = COALESCE(?, meta_json)
            WHERE id = ?
            """,
            (
                ceiling,
                ceiling,
                terminal,
                error_message,
                now.isoformat(),
                None if meta is None else json.dumps(meta, sort_keys=True, default=str),
                record_id,
            ),
        )

    def record_progress(
        self,
        record_id: int,
        *,
        matched_address: str,
        amount_minor: int,
        amount_major: Decimal,
        now: datetime,
        meta: dict[str, Any],
        pending_reason: str = "awaiting confirmations",
        max_retries: int | None = None,
    ) -> None:
        self._ensure_writable()
        ceiling, terminal = _terminal_params(pending_reason, max_retries)
        self._conn.execute(
            """
            UPDATE incoming_verifications
            SET matched_address = ?,
                amount_minor = ?,
                amount_major = ?,
                retry_count = retry_count + 1,
                error_message = CASE WHEN ? > 0 AND retry_count + 1 >= ? THEN ? ELSE NULL END,
                last_checked = ?,
                meta_json = ?
            WHERE id = ? AND confirmed = 0
            """,
            (
                matched_address,
                str(amount_minor),
                _fmt_decimal(amount_major),
                ceiling,
                ceiling,
                terminal,
                now.isoformat(),
                json.dumps(meta, sort_keys=True, default=str),
                record_id,
            ),
        )

    def mark_confirmed(
        self,
        record_id: int,
        *,
        matched_address: str,
        amount_minor: int,
        amount_major: Decimal,
        now: datetime,
        meta: dict[str, Any],
    ) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE incoming_verifications
            SET matched_address = ?,
                amount_minor = ?,
                amount_major = ?,
                confirmed = 1,
                confirmed_at = COALESCE(confirmed_at, ?),
                retry_count = retry_count + 1,
                error_message = NULL,
                last_checked = ?,
                meta_json = ?
            WHERE id = ? AND credited = 0
            """,
            (
                matched_address,
                str(amount_minor),
                _fmt_decimal(amount_major),
                now.isoformat(),
                now.isoformat(),
                json.dumps(meta, sort_keys=True, default=str),
                record_id,
            ),
        )

    def record_error(
        self,
        record_id: int,
        *,
        error_message: str,
        now: datetime,
        max_retries: int | None = None,
    ) -> None:
        """Attach an error to an attempt whose retry was already counted."""
        self._ensure_writable()
        ceiling, terminal = _terminal_params(error_message, max_retries)
        self._conn.execute(
            """
            UPDATE incoming_verifications
            SET error_message = CASE WHEN ? > 0 AND retry_count >= ? THEN ? ELSE ? END,
                last_checked = ?
            WHERE id = ?
            """,
            (ceiling, ceiling, terminal, error_message, now.isoformat(), record_id),
        )

    def mark_credited(self, record_id: int, *, now: datetime, count_attempt: bool) -> bool:
        """Flip credited 0 -> 1; False when another writer already did or the record is not creditable."""
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE incoming_verifications
            SET credited = 1,
                credited_at = ?,
                retry_count = retry_count + ?,
                error_message = NULL,
                last_checked = ?
            WHERE id = ? AND credited = 0 AND confirmed = 1 AND user_id IS NOT NULL
            """,
            (now.isoformat(), 1 if count_attempt else 0, now.isoformat(), record_id),
        )
        return cursor.rowcount == 1

    def assign_user(self, record_id: int, user_id: int, *, now: datetime) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute(
            """
            UPDATE incoming_verifications
            SET user_id = ?, last_checked = ?
            WHERE id = ? AND user_id IS NULL AND credited = 0
            """,
            (user_id, now.isoformat(), record_id),
        )
        return cursor.rowcount == 1

    def _where(self, filters: VerificationFilter) -> tuple[str, list[object]]:
        clauses: list[str] = []
        params: list[object] = []
        if filters.currency is not None:
            clauses.append("currency = ?")
            params.append(filters.currency)
        if filters.confirmed is not None:
            clauses.append("confirmed = ?")
            params.append(1 if filters.confirmed else 0)
        if filters.credited is not None:
            clauses.append("credited = ?")
            params.append(1 if filters.credited else 0)
        if filters.user_id is not None:
            clauses.append("user_id = ?")
            params.append(filters.user_id)
        if filters.txid is not None:
            clauses.append("txid = ?")
            params.append(filters.txid)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def query(
        self,
        filters: VerificationFilter,
        *,
        limit: int,
        offset: int,
    ) -> list[VerificationRecord]:
        where, params = self._where(filters)
        rows = self._conn.execute(
            f"SELECT * FROM incoming_verifications{where} ORDER BY first_seen DESC, id DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self, filters: VerificationFilter) -> int:
        where, params = self._where(filters)
        row = self._conn.execute(f"SELECT COUNT(*) AS n FROM incoming_verifications{where}", params).fetchone()
        return int(row["n"])
