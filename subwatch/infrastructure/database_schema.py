"""
Database schema initialization for SubWatch.

Contains the SQL schema and initialization logic, kept apart from database.py
so the pool module stays small.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from subwatch.observability.logging import get_logger

logger = get_logger(__name__)

EXPECTED_TABLES = (
    "receipts",
    "candidates",
    "subscriptions",
    "price_history",
    "notifications",
    "pipeline_governance",
    "scan_progress",
)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Safe to run multiple times - uses CREATE TABLE IF NOT EXISTS and seeds the
    singleton governance row with INSERT OR IGNORE.

    Side Effects:
    - Creates the parent directory if needed
    - Creates tables and indexes
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS receipts (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                sender TEXT NOT NULL DEFAULT '',
                subject TEXT NOT NULL DEFAULT '',
                body TEXT NOT NULL DEFAULT '',
                received_at TEXT NOT NULL,
                parsed INTEGER NOT NULL DEFAULT 0,
                parsing_method TEXT,
                parsing_confidence REAL,
                email_type TEXT,
                receipt_type TEXT,
                merchant TEXT,
                amount REAL,
                currency TEXT,
                cadence TEXT,
                next_charge_date TEXT,
                candidate_id TEXT,
                subscription_id TEXT,
                reconciled_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(user_id, message_id)
            );

            CREATE INDEX IF NOT EXISTS idx_receipts_user_parsed
            ON receipts(user_id, parsed);

            CREATE INDEX IF NOT EXISTS idx_receipts_detection
            ON receipts(parsed, reconciled_at, candidate_id, subscription_id);

            CREATE TABLE IF NOT EXISTS candidates (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                source TEXT NOT NULL DEFAULT 'email',
                name TEXT NOT NULL,
                merchant_key TEXT NOT NULL,
                amount REAL NOT NULL,
                currency TEXT NOT NULL DEFAULT 'USD',
                cadence TEXT NOT NULL DEFAULT 'monthly',
                confidence REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                email_receipt_id TEXT,
                proposed_next_billing TEXT,
                detection_reason TEXT,
                raw_data TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_candidates_user_key_status
            ON candidates(user_id, merchant_key, status);

            CREATE TABLE IF NOT EXISTS subscriptions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                merchant_key TEXT NOT NULL,
                cost REAL NOT NULL,
                currency TEXT NOT NULL DEFAULT 'USD',
                cadence TEXT NOT NULL DEFAULT 'monthly',
                is_active INTEGER NOT NULL DEFAULT 1,
                last_charge_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_subscriptions_user_key
            ON subscriptions(user_id, merchant_key, is_active);

            CREATE TABLE IF NOT EXISTS price_history (
                id TEXT PRIMARY KEY,
                subscription_id TEXT NOT NULL REFERENCES subscriptions(id),
                user_id TEXT NOT NULL,
                old_price REAL NOT NULL,
                new_price REAL NOT NULL,
                currency TEXT NOT NULL DEFAULT 'USD',
                percent_change REAL NOT NULL,
                detected_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_price_history_subscription
            ON price_history(subscription_id);

            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                data TEXT,
                read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_notifications_user
            ON notifications(user_id, read);

            CREATE TABLE IF NOT EXISTS pipeline_governance (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                safe_mode_enabled INTEGER NOT NULL DEFAULT 0,
                reason TEXT,
                message TEXT,
                enabled_at TEXT,
                last_queue_size INTEGER NOT NULL DEFAULT 0,
                unchanged_streak INTEGER NOT NULL DEFAULT 0,
                last_checked_at TEXT,
                version INTEGER NOT NULL DEFAULT 0
            );

            INSERT OR IGNORE INTO pipeline_governance (id) VALUES (1);

            CREATE TABLE IF NOT EXISTS scan_progress (
                run_key TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                total INTEGER NOT NULL DEFAULT 0,
                processed INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database schema ready at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has the expected tables

    Raises:
        ValueError: If tables are missing
    """
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    existing = {row[0] for row in rows}
    missing = [table for table in EXPECTED_TABLES if table not in existing]
    if missing:
        raise ValueError(f"Missing tables: {', '.join(missing)}")
    return True
