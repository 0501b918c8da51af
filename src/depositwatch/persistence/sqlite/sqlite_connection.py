from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_verification_schema(conn: sqlite3.Connection) -> None:
    # Minor amounts are TEXT: wei values overflow a 64-bit INTEGER.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS incoming_verifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            txid TEXT NOT NULL,
            currency TEXT NOT NULL,
            matched_address TEXT NOT NULL DEFAULT '',
            amount_minor TEXT NOT NULL DEFAULT '0',
            amount_major TEXT NOT NULL DEFAULT '0',
            confirmed INTEGER NOT NULL DEFAULT 0,
            confirmed_at TEXT,
            credited INTEGER NOT NULL DEFAULT 0,
            credited_at TEXT,
            user_id INTEGER,
            retry_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            last_checked TEXT NOT NULL,
            first_seen TEXT NOT NULL,
            meta_json TEXT NOT NULL DEFAULT '{}',
            UNIQUE (txid, currency)
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_incoming_verifications_selectable
        ON incoming_verifications(credited, confirmed, retry_count, last_checked)
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_incoming_verifications_user ON incoming_verifications(user_id)"
    )


def ensure_wallet_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS wallet_addresses (
            currency TEXT PRIMARY KEY,
            address TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL
        )
        """
    )


def ensure_ledger_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ledger_accounts (
            user_id INTEGER PRIMARY KEY,
            balance TEXT NOT NULL DEFAULT '0',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ledger_credits (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            amount TEXT NOT NULL,
            balance_after TEXT NOT NULL,
            reference TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL
        )
        """
    )


def ensure_schema(conn: sqlite3.Connection) -> None:
    ensure_verification_schema(conn)
    ensure_wallet_schema(conn)
    ensure_ledger_schema(conn)
