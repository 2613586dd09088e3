"""
Repositories for the detection tables.

Follows the database patterns in subwatch/infrastructure/database.py: static
methods, pooled connections, retry on SQLITE_BUSY. Methods that take a
``conn`` argument run inside the caller's transaction (the candidate engine
holds one BEGIN IMMEDIATE transaction per reconciled receipt) and are not
retried on their own.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections import Counter, defaultdict
from datetime import datetime
from typing import Any

from subwatch.config import PARSE_BATCH_LIMIT
from subwatch.detection.merchants import extract_domain
from subwatch.detection.models import (
    Candidate,
    CandidateStatus,
    EmailType,
    ParsingMethod,
    PipelineGovernance,
    PriceHistory,
    Receipt,
    ReceiptType,
    Subscription,
    format_dt,
    utc_now,
)
from subwatch.detection.types import ExtractionResult
from subwatch.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from subwatch.observability.logging import get_logger

logger = get_logger(__name__)


def _insert_sql(table: str, data: dict[str, Any]) -> tuple[str, list[Any]]:
    columns = ", ".join(data)
    placeholders = ", ".join("?" for _ in data)
    return f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(data.values())


class ReceiptRepository:
    """CRUD and batch queries for the receipts table."""

    # Never parsed, or marked parsed by an older pass that stored nothing
    _PARSE_ELIGIBLE = (
        "(parsed = 0 OR (merchant IS NULL AND amount IS NULL AND parsing_method IS NULL))"
    )
    _DETECTION_ELIGIBLE = (
        "parsed = 1 AND parsing_confidence >= ? AND reconciled_at IS NULL "
        "AND candidate_id IS NULL AND subscription_id IS NULL "
        "AND merchant IS NOT NULL AND amount IS NOT NULL"
    )

    @staticmethod
    @retry_on_db_lock()
    def insert(receipt: Receipt) -> bool:
        """
        Insert a receipt unless (user_id, message_id) already exists.

        Returns:
            True if inserted, False if it was a duplicate
        """
        sql, params = _insert_sql("receipts", receipt.to_db_dict())
        sql = sql.replace("INSERT INTO", "INSERT OR IGNORE INTO", 1)
        with db_transaction() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount > 0

    @staticmethod
    def get_by_id(receipt_id: str) -> Receipt | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM receipts WHERE id = ?", (receipt_id,)).fetchone()
        return Receipt.from_db_row(dict(row)) if row else None

    @staticmethod
    def list_parse_eligible(
        user_id: str | None = None, limit: int = PARSE_BATCH_LIMIT
    ) -> list[Receipt]:
        """Receipts that still need a parse pass, oldest first."""
        sql = f"SELECT * FROM receipts WHERE {ReceiptRepository._PARSE_ELIGIBLE}"
        params: list[Any] = []
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY received_at ASC LIMIT ?"
        params.append(limit)

        with get_db_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Receipt.from_db_row(dict(row)) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def mark_filtered(
        receipt_id: str,
        confidence: float,
        email_type: EmailType,
        receipt_type: ReceiptType,
    ) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                UPDATE receipts
                SET parsed = 1, parsing_method = ?, parsing_confidence = ?,
                    email_type = ?, receipt_type = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    ParsingMethod.FILTERED.value,
                    confidence,
                    email_type.value,
                    receipt_type.value,
                    format_dt(utc_now()),
                    receipt_id,
                ),
            )

    @staticmethod
    @retry_on_db_lock()
    def record_signals(receipt_id: str, confidence: float, email_type: EmailType) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                UPDATE receipts
                SET parsing_confidence = ?, email_type = ?, updated_at = ?
                WHERE id = ?
                """,
                (confidence, email_type.value, format_dt(utc_now()), receipt_id),
            )

    @staticmethod
    @retry_on_db_lock()
    def save_extraction(result: ExtractionResult) -> bool:
        """
        Persist one router result.

        Results with merchant and amount store their fields; anything else is
        marked parsed with a low confidence so it never becomes a detection.

        Returns:
            True if fields were stored
        """
        now = format_dt(utc_now())
        receipt_type = result.receipt_type.value if result.receipt_type else None

        with db_transaction() as conn:
            if result.has_fields:
                conn.execute(
                    """
                    UPDATE receipts
                    SET merchant = ?, amount = ?, currency = ?, cadence = ?,
                        next_charge_date = ?, receipt_type = COALESCE(?, receipt_type),
                        parsed = 1, parsing_confidence = ?, parsing_method = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        result.merchant,
                        result.amount,
                        result.currency,
                        result.cadence.value if result.cadence else None,
                        format_dt(result.next_charge_date),
                        receipt_type,
                        result.confidence,
                        result.method.value,
                        now,
                        result.receipt_id,
                    ),
                )
                return True

            confidence = 0.0 if result.method == ParsingMethod.FILTERED else 0.1
            conn.execute(
                """
                UPDATE receipts
                SET parsed = 1, parsing_confidence = ?, parsing_method = ?,
                    receipt_type = COALESCE(?, receipt_type), updated_at = ?
                WHERE id = ?
                """,
                (confidence, result.method.value, receipt_type, now, result.receipt_id),
            )
            return False

    @staticmethod
    def count_detection_eligible(min_confidence: float) -> int:
        """Full count of receipts waiting for candidate reconciliation."""
        with get_db_connection() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM receipts WHERE {ReceiptRepository._DETECTION_ELIGIBLE}",
                (min_confidence,),
            ).fetchone()
        return int(row[0])

    @staticmethod
    def list_detection_eligible(
        min_confidence: float, limit: int, user_id: str | None = None
    ) -> list[Receipt]:
        sql = f"SELECT * FROM receipts WHERE {ReceiptRepository._DETECTION_ELIGIBLE}"
        params: list[Any] = [min_confidence]
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY received_at ASC LIMIT ?"
        params.append(limit)

        with get_db_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Receipt.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def frequent_sender_domains(
        user_id: str | None = None, min_occurrences: int = 3
    ) -> dict[str, list[str]]:
        """
        Per user, sender domains of successfully extracted receipts seen at
        least N times.

        Returns:
            {user_id: sorted domains}, users with no frequent domain omitted
        """
        sql = "SELECT user_id, sender FROM receipts WHERE merchant IS NOT NULL"
        params: list[Any] = []
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)

        with get_db_connection() as conn:
            rows = conn.execute(sql, params).fetchall()

        counts: dict[str, Counter[str]] = defaultdict(Counter)
        for row in rows:
            domain = extract_domain(row["sender"])
            if domain:
                counts[row["user_id"]][domain] += 1

        frequent = {
            owner: sorted(d for d, count in domains.items() if count >= min_occurrences)
            for owner, domains in counts.items()
        }
        return {owner: domains for owner, domains in frequent.items() if domains}

    @staticmethod
    def link_candidate(conn: sqlite3.Connection, receipt_id: str, candidate_id: str) -> None:
        now = format_dt(utc_now())
        conn.execute(
            "UPDATE receipts SET candidate_id = ?, reconciled_at = ?, updated_at = ? WHERE id = ?",
            (candidate_id, now, now, receipt_id),
        )

    @staticmethod
    def link_subscription(conn: sqlite3.Connection, receipt_id: str, subscription_id: str) -> None:
        now = format_dt(utc_now())
        conn.execute(
            (
                "UPDATE receipts SET subscription_id = ?, candidate_id = NULL, "
                "reconciled_at = ?, updated_at = ? WHERE id = ?"
            ),
            (subscription_id, now, now, receipt_id),
        )

    @staticmethod
    def mark_reconciled(conn: sqlite3.Connection, receipt_id: str) -> None:
        """Take a receipt out of the detection queue without linking it."""
        now = format_dt(utc_now())
        conn.execute(
            "UPDATE receipts SET reconciled_at = ?, updated_at = ? WHERE id = ?",
            (now, now, receipt_id),
        )

    @staticmethod
    def move_candidate_receipts(
        conn: sqlite3.Connection, candidate_id: str, subscription_id: str
    ) -> int:
        """Relink every receipt of an accepted candidate to its new subscription."""
        cursor = conn.execute(
            """
            UPDATE receipts SET subscription_id = ?, candidate_id = NULL, updated_at = ?
            WHERE candidate_id = ?
            """,
            (subscription_id, format_dt(utc_now()), candidate_id),
        )
        return cursor.rowcount

    @staticmethod
    def count_linked(user_id: str) -> int:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM receipts
                WHERE user_id = ? AND (candidate_id IS NOT NULL OR subscription_id IS NOT NULL)
                """,
                (user_id,),
            ).fetchone()
        return int(row[0])


class CandidateRepository:
    """Candidates table. Writes run inside the engine's transaction."""

    @staticmethod
    def find_pending(conn: sqlite3.Connection, user_id: str, merchant_key: str) -> Candidate | None:
        row = conn.execute(
            """
            SELECT * FROM candidates
            WHERE user_id = ? AND merchant_key = ? AND status = ?
            ORDER BY created_at ASC LIMIT 1
            """,
            (user_id, merchant_key, CandidateStatus.PENDING.value),
        ).fetchone()
        return Candidate.from_db_row(dict(row)) if row else None

    @staticmethod
    def insert(conn: sqlite3.Connection, candidate: Candidate) -> None:
        sql, params = _insert_sql("candidates", candidate.to_db_dict())
        conn.execute(sql, params)

    @staticmethod
    def upgrade(
        conn: sqlite3.Connection,
        candidate_id: str,
        amount: float,
        currency: str,
        cadence: str,
        confidence: float,
    ) -> None:
        """Refresh fields from a more confident extraction; never lowers confidence."""
        conn.execute(
            """
            UPDATE candidates
            SET amount = ?, currency = ?, cadence = ?, confidence = ?, updated_at = ?
            WHERE id = ? AND confidence < ?
            """,
            (amount, currency, cadence, confidence, format_dt(utc_now()), candidate_id, confidence),
        )

    @staticmethod
    def get_for_update(conn: sqlite3.Connection, candidate_id: str) -> Candidate | None:
        row = conn.execute("SELECT * FROM candidates WHERE id = ?", (candidate_id,)).fetchone()
        return Candidate.from_db_row(dict(row)) if row else None

    @staticmethod
    def set_status(conn: sqlite3.Connection, candidate_id: str, status: CandidateStatus) -> None:
        conn.execute(
            "UPDATE candidates SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, format_dt(utc_now()), candidate_id),
        )

    @staticmethod
    def get_by_id(candidate_id: str) -> Candidate | None:
        with get_db_connection() as conn:
            return CandidateRepository.get_for_update(conn, candidate_id)

    @staticmethod
    def list_by_user(
        user_id: str, status: CandidateStatus | None = None, limit: int = 100
    ) -> list[Candidate]:
        sql = "SELECT * FROM candidates WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with get_db_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Candidate.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def count_by_status(user_id: str) -> dict[str, int]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM candidates WHERE user_id = ? GROUP BY status",
                (user_id,),
            ).fetchall()
        counts = {status.value: 0 for status in CandidateStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts


class SubscriptionRepository:
    """Subscriptions are owned elsewhere; the engine only reads and patches them."""

    @staticmethod
    def find_active(
        conn: sqlite3.Connection, user_id: str, merchant_key: str
    ) -> Subscription | None:
        row = conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE user_id = ? AND merchant_key = ? AND is_active = 1
            ORDER BY created_at ASC LIMIT 1
            """,
            (user_id, merchant_key),
        ).fetchone()
        return Subscription.from_db_row(dict(row)) if row else None

    @staticmethod
    def insert(conn: sqlite3.Connection, subscription: Subscription) -> None:
        sql, params = _insert_sql("subscriptions", subscription.to_db_dict())
        conn.execute(sql, params)

    @staticmethod
    def update_cost(conn: sqlite3.Connection, subscription_id: str, cost: float) -> None:
        conn.execute(
            "UPDATE subscriptions SET cost = ?, updated_at = ? WHERE id = ?",
            (cost, format_dt(utc_now()), subscription_id),
        )

    @staticmethod
    def touch_last_charge(
        conn: sqlite3.Connection, subscription_id: str, charged_at: datetime
    ) -> None:
        conn.execute(
            "UPDATE subscriptions SET last_charge_at = ?, updated_at = ? WHERE id = ?",
            (format_dt(charged_at), format_dt(utc_now()), subscription_id),
        )

    @staticmethod
    def deactivate(conn: sqlite3.Connection, subscription_id: str) -> None:
        conn.execute(
            "UPDATE subscriptions SET is_active = 0, updated_at = ? WHERE id = ?",
            (format_dt(utc_now()), subscription_id),
        )

    @staticmethod
    def get_by_id(subscription_id: str) -> Subscription | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
            ).fetchone()
        return Subscription.from_db_row(dict(row)) if row else None

    @staticmethod
    @retry_on_db_lock()
    def create(subscription: Subscription) -> Subscription:
        with db_transaction() as conn:
            SubscriptionRepository.insert(conn, subscription)
        return subscription


class PriceHistoryRepository:
    @staticmethod
    def insert(conn: sqlite3.Connection, entry: PriceHistory) -> None:
        sql, params = _insert_sql("price_history", entry.to_db_dict())
        conn.execute(sql, params)

    @staticmethod
    def list_for_subscription(subscription_id: str) -> list[PriceHistory]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM price_history WHERE subscription_id = ? ORDER BY detected_at ASC",
                (subscription_id,),
            ).fetchall()
        return [PriceHistory.from_db_row(dict(row)) for row in rows]


class GovernanceRepository:
    """The singleton pipeline_governance row (id = 1)."""

    @staticmethod
    def load() -> PipelineGovernance:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM pipeline_governance WHERE id = 1").fetchone()
        if row is None:
            return PipelineGovernance()
        return PipelineGovernance.from_db_row(dict(row))

    @staticmethod
    @retry_on_db_lock()
    def compare_and_set(expected_version: int, state: PipelineGovernance) -> bool:
        """
        Write state only if nobody else has written since expected_version.

        Returns:
            True if the row was updated (version is now expected_version + 1)
        """
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_governance
                SET safe_mode_enabled = ?, reason = ?, message = ?, enabled_at = ?,
                    last_queue_size = ?, unchanged_streak = ?, last_checked_at = ?,
                    version = version + 1
                WHERE id = 1 AND version = ?
                """,
                (
                    int(state.safe_mode_enabled),
                    state.reason,
                    state.message,
                    format_dt(state.enabled_at),
                    state.last_queue_size,
                    state.unchanged_streak,
                    format_dt(state.last_checked_at),
                    expected_version,
                ),
            )
            return cursor.rowcount == 1


class ScanProgressRepository:
    """Per-run parse progress, readable by a dashboard while a pass runs."""

    @staticmethod
    @retry_on_db_lock()
    def update(run_key: str, status: str, processed: int, total: int) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO scan_progress (run_key, status, total, processed, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(run_key) DO UPDATE SET
                    status = excluded.status,
                    total = excluded.total,
                    processed = excluded.processed,
                    updated_at = excluded.updated_at
                """,
                (run_key, status, total, processed, format_dt(utc_now())),
            )

    @staticmethod
    def get(run_key: str) -> dict[str, Any] | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM scan_progress WHERE run_key = ?", (run_key,)
            ).fetchone()
        return dict(row) if row else None


class NotificationRepository:
    @staticmethod
    @retry_on_db_lock()
    def create(
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> str:
        notification_id = str(uuid.uuid4())
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO notifications (id, user_id, type, title, message, data, read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    notification_id,
                    user_id,
                    type,
                    title,
                    message,
                    json.dumps(data or {}),
                    format_dt(utc_now()),
                ),
            )
        return notification_id

    @staticmethod
    def list_for_user(user_id: str, limit: int = 100) -> list[dict[str, Any]]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        notifications = []
        for row in rows:
            item = dict(row)
            item["data"] = json.loads(item["data"]) if item.get("data") else {}
            item["read"] = bool(item["read"])
            notifications.append(item)
        return notifications
