"""
Candidate Engine - fold extraction results into subscriptions and candidates.

Stage 3 of the detection pipeline. Each result with a merchant and amount is
resolved, in order, to:

1. an active subscription for (user, merchant key): link, track price change
2. a pending candidate for (user, merchant key): link, upgrade if more confident
3. a new pending candidate

Every result is handled under a per-(user, merchant key) lock and a single
BEGIN IMMEDIATE transaction, so there is never more than one pending
candidate per merchant. Notifications are sent after the transaction commits.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from subwatch.config import CANDIDATE_BATCH_LIMIT, DETECTION_MIN_CONFIDENCE
from subwatch.detection.errors import ReceiptNotFoundError
from subwatch.detection.merchants import normalize_merchant_key
from subwatch.detection.models import (
    CADENCE_DAYS,
    NON_CANDIDATE_RECEIPT_TYPES,
    Cadence,
    Candidate,
    CandidateStatus,
    PriceHistory,
    Receipt,
    ReceiptType,
    Subscription,
    utc_now,
)
from subwatch.detection.repository import (
    CandidateRepository,
    PriceHistoryRepository,
    ReceiptRepository,
    SubscriptionRepository,
)
from subwatch.detection.types import ExtractionResult, ReconcileSummary
from subwatch.infrastructure.database import db_transaction, retry_on_db_lock
from subwatch.infrastructure.locks import KeyedLock
from subwatch.notifications import (
    NEW_SUBSCRIPTION_DETECTED,
    PRICE_INCREASE,
    SUBSCRIPTION_CANCELLED,
    DatabaseNotificationSink,
    NotificationSink,
    safe_notify,
)
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter, log_event

logger = get_logger(__name__)

CREATED = "created"
UPDATED = "updated"
LINKED_EXISTING = "linked_existing"
SKIPPED = "skipped"


@dataclass
class _Outcome:
    kind: str
    notifications: list[tuple[str, str, str, dict[str, Any]]] = field(default_factory=list)


def percent_change(old: float, new: float) -> float:
    """(new - old) / old * 100, rounded to 2 places; 0 when old is not positive."""
    if old <= 0:
        return 0.0
    return round((new - old) / old * 100, 2)


def _amounts_differ(a: float, b: float) -> bool:
    return abs(a - b) >= 0.005


class CandidateEngine:
    """
    Reconcile extraction results for one user at a time.

    Args:
        sink: Notification sink (default writes the notifications table)
        locks: Shared per-key lock registry; pass one instance to every engine
            in a process so concurrent reconcile calls serialize per merchant
        batch_limit: Maximum results handled per reconcile() call
    """

    def __init__(
        self,
        sink: NotificationSink | None = None,
        locks: KeyedLock | None = None,
        batch_limit: int = CANDIDATE_BATCH_LIMIT,
    ):
        self.sink = sink or DatabaseNotificationSink()
        self.locks = locks or _DEFAULT_LOCKS
        self.batch_limit = batch_limit

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(
        self, user_id: str, extraction_results: Sequence[ExtractionResult]
    ) -> ReconcileSummary:
        """
        Resolve each result to subscription / pending candidate / new candidate.

        A failure on one result is counted in errors and the batch continues.
        """
        summary = ReconcileSummary()
        batch = list(extraction_results)[: self.batch_limit]

        for result in batch:
            try:
                kind = self._reconcile_one(user_id, result)
            except Exception as e:
                summary.errors += 1
                counter("detection.candidates.error")
                logger.error(
                    "Failed to reconcile receipt %s: %s", result.receipt_id, e, exc_info=True
                )
                continue

            setattr(summary, kind, getattr(summary, kind) + 1)
            counter(f"detection.candidates.{kind}")

        log_event("detection.candidates.reconciled", user_id=user_id, **summary.to_dict())
        return summary

    def _reconcile_one(self, user_id: str, result: ExtractionResult) -> str:
        if not result.has_fields:
            return SKIPPED

        merchant_key = normalize_merchant_key(result.merchant or "")
        if not merchant_key:
            # Unmatchable merchant, take it out of the detection queue
            self._mark_reconciled(result.receipt_id)
            return SKIPPED

        receipt = ReceiptRepository.get_by_id(result.receipt_id)
        if receipt is None:
            raise ReceiptNotFoundError(result.receipt_id)

        with self.locks.hold((user_id, merchant_key)):
            outcome = self._apply(user_id, merchant_key, result, receipt)

        for type_, title, message, data in outcome.notifications:
            safe_notify(self.sink, user_id, type_, title, message, data)

        return outcome.kind

    @staticmethod
    @retry_on_db_lock()
    def _mark_reconciled(receipt_id: str) -> None:
        with db_transaction() as conn:
            ReceiptRepository.mark_reconciled(conn, receipt_id)

    @retry_on_db_lock()
    def _apply(
        self,
        user_id: str,
        merchant_key: str,
        result: ExtractionResult,
        receipt: Receipt,
    ) -> _Outcome:
        receipt_type = result.receipt_type or (
            ReceiptType(receipt.receipt_type) if receipt.receipt_type else None
        )

        with db_transaction(immediate=True) as conn:
            subscription = SubscriptionRepository.find_active(conn, user_id, merchant_key)
            if subscription is not None:
                ReceiptRepository.link_subscription(conn, receipt.id, subscription.id)
                return self._apply_to_subscription(
                    conn, subscription, result, receipt, receipt_type
                )

            pending = CandidateRepository.find_pending(conn, user_id, merchant_key)
            if pending is not None:
                ReceiptRepository.link_candidate(conn, receipt.id, pending.id)
                if result.confidence > pending.confidence:
                    CandidateRepository.upgrade(
                        conn,
                        pending.id,
                        amount=result.amount,
                        currency=result.currency,
                        cadence=(result.cadence or Cadence(pending.cadence)).value,
                        confidence=min(result.confidence, 1.0),
                    )
                    return _Outcome(UPDATED)
                return _Outcome(LINKED_EXISTING)

            if receipt_type is not None and receipt_type.value in NON_CANDIDATE_RECEIPT_TYPES:
                ReceiptRepository.mark_reconciled(conn, receipt.id)
                logger.debug("Skipping %s receipt for %s", receipt_type.value, merchant_key)
                return _Outcome(SKIPPED)

            candidate = self._new_candidate(user_id, merchant_key, result, receipt)
            CandidateRepository.insert(conn, candidate)
            ReceiptRepository.link_candidate(conn, receipt.id, candidate.id)

        logger.info(
            "Created candidate %s: %s %.2f %s (%s)",
            candidate.id,
            candidate.name,
            candidate.amount,
            candidate.currency,
            candidate.cadence,
        )
        return _Outcome(
            CREATED,
            [
                (
                    NEW_SUBSCRIPTION_DETECTED,
                    "New subscription detected",
                    f"We found a {candidate.cadence} charge of "
                    f"{candidate.amount:.2f} {candidate.currency} from {candidate.name}",
                    {"candidate_id": candidate.id, "merchant": candidate.name},
                )
            ],
        )

    def _apply_to_subscription(
        self,
        conn: Any,
        subscription: Subscription,
        result: ExtractionResult,
        receipt: Receipt,
        receipt_type: ReceiptType | None,
    ) -> _Outcome:
        if receipt_type == ReceiptType.CANCELLATION:
            SubscriptionRepository.deactivate(conn, subscription.id)
            logger.info("Subscription %s cancelled by receipt %s", subscription.id, receipt.id)
            return _Outcome(
                UPDATED,
                [
                    (
                        SUBSCRIPTION_CANCELLED,
                        "Subscription cancelled",
                        f"Your {subscription.name} subscription was cancelled",
                        {"subscription_id": subscription.id, "merchant": subscription.name},
                    )
                ],
            )

        if receipt_type == ReceiptType.RENEWAL:
            SubscriptionRepository.touch_last_charge(conn, subscription.id, receipt.received_at)

        new_price = float(result.amount or 0.0)
        old_price = subscription.cost
        if not _amounts_differ(new_price, old_price):
            return _Outcome(LINKED_EXISTING)

        entry = PriceHistory(
            id=str(uuid.uuid4()),
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            old_price=old_price,
            new_price=new_price,
            currency=result.currency,
            percent_change=percent_change(old_price, new_price),
        )
        PriceHistoryRepository.insert(conn, entry)
        SubscriptionRepository.update_cost(conn, subscription.id, new_price)
        counter("detection.candidates.price_change")

        notifications = []
        if new_price > old_price:
            notifications.append(
                (
                    PRICE_INCREASE,
                    f"{subscription.name} price increase",
                    f"{subscription.name} went from {old_price:.2f} to {new_price:.2f} "
                    f"{result.currency} ({entry.percent_change:+.2f}%)",
                    {
                        "subscription_id": subscription.id,
                        "old_price": old_price,
                        "new_price": new_price,
                        "percent_change": entry.percent_change,
                    },
                )
            )
        return _Outcome(UPDATED, notifications)

    @staticmethod
    def _new_candidate(
        user_id: str, merchant_key: str, result: ExtractionResult, receipt: Receipt
    ) -> Candidate:
        cadence = result.cadence or Cadence.MONTHLY
        next_billing = result.next_charge_date or receipt.next_charge_date
        if next_billing is None:
            next_billing = receipt.received_at + timedelta(days=CADENCE_DAYS[cadence.value])
        merchant = (result.merchant or "").strip()

        return Candidate(
            id=str(uuid.uuid4()),
            user_id=user_id,
            source="email",
            name=merchant,
            merchant_key=merchant_key,
            amount=float(result.amount or 0.0),
            currency=result.currency or "USD",
            cadence=cadence,
            confidence=max(0.0, min(result.confidence, 1.0)),
            status=CandidateStatus.PENDING,
            email_receipt_id=receipt.id,
            proposed_next_billing=next_billing,
            detection_reason=f"Single {cadence.value} receipt detected from {merchant}",
            raw_data={
                "sender": receipt.sender,
                "subject": receipt.subject,
                "message_id": receipt.message_id,
                "method": result.method.value,
            },
        )

    def create_detections_for_pending(self, limit: int = CANDIDATE_BATCH_LIMIT) -> dict[str, Any]:
        """
        Reconcile eligible stored receipts, grouped by user.

        Eligible: parsed, confidence >= DETECTION_MIN_CONFIDENCE, merchant and
        amount present, not yet linked or reconciled.
        """
        receipts = ReceiptRepository.list_detection_eligible(DETECTION_MIN_CONFIDENCE, limit)
        by_user: dict[str, list[ExtractionResult]] = defaultdict(list)
        for receipt in receipts:
            by_user[receipt.user_id].append(ExtractionResult.from_receipt(receipt))

        total = ReconcileSummary()
        for user_id, results in by_user.items():
            total.merge(self.reconcile(user_id, results))

        return {
            "user_count": len(by_user),
            "receipt_count": len(receipts),
            **total.to_dict(),
        }

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def accept(self, candidate_id: str) -> dict[str, Any]:
        """Turn a pending candidate into an active subscription."""
        candidate = CandidateRepository.get_by_id(candidate_id)
        if candidate is None:
            return {"success": False, "error": "Candidate not found"}

        with self.locks.hold((candidate.user_id, candidate.merchant_key)):
            return self._accept_locked(candidate_id)

    @retry_on_db_lock()
    def _accept_locked(self, candidate_id: str) -> dict[str, Any]:
        with db_transaction(immediate=True) as conn:
            candidate = CandidateRepository.get_for_update(conn, candidate_id)
            if candidate is None:
                return {"success": False, "error": "Candidate not found"}
            if candidate.status != CandidateStatus.PENDING.value:
                return {"success": False, "error": f"Candidate is already {candidate.status}"}

            subscription = SubscriptionRepository.find_active(
                conn, candidate.user_id, candidate.merchant_key
            )
            if subscription is None:
                subscription = Subscription(
                    id=str(uuid.uuid4()),
                    user_id=candidate.user_id,
                    name=candidate.name,
                    merchant_key=candidate.merchant_key,
                    cost=candidate.amount,
                    currency=candidate.currency,
                    cadence=candidate.cadence,
                    is_active=True,
                    last_charge_at=utc_now(),
                )
                SubscriptionRepository.insert(conn, subscription)

            linked = ReceiptRepository.move_candidate_receipts(conn, candidate.id, subscription.id)
            CandidateRepository.set_status(conn, candidate.id, CandidateStatus.ACCEPTED)

        counter("detection.candidates.accepted")
        log_event("detection.candidate.accepted", candidate_id=candidate_id, linked=linked)
        return {"success": True, "subscription_id": subscription.id, "linked_receipts": linked}

    @retry_on_db_lock()
    def dismiss(self, candidate_id: str) -> dict[str, Any]:
        with db_transaction(immediate=True) as conn:
            candidate = CandidateRepository.get_for_update(conn, candidate_id)
            if candidate is None:
                return {"success": False, "error": "Candidate not found"}
            if candidate.status != CandidateStatus.PENDING.value:
                return {"success": False, "error": f"Candidate is already {candidate.status}"}
            CandidateRepository.set_status(conn, candidate_id, CandidateStatus.DISMISSED)

        counter("detection.candidates.dismissed")
        return {"success": True, "candidate_id": candidate_id}

    @staticmethod
    def stats(user_id: str) -> dict[str, int]:
        counts = CandidateRepository.count_by_status(user_id)
        return {
            "pending": counts.get(CandidateStatus.PENDING.value, 0),
            "accepted": counts.get(CandidateStatus.ACCEPTED.value, 0),
            "dismissed": counts.get(CandidateStatus.DISMISSED.value, 0),
            "linked_receipts": ReceiptRepository.count_linked(user_id),
        }


_DEFAULT_LOCKS = KeyedLock()
