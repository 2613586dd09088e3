"""
Tests for the candidate engine against a temporary SQLite database.

Covers the three-way resolution (subscription / pending candidate / new
candidate), price-change tracking, lifecycle receipts, and user actions.
"""

from __future__ import annotations

import threading
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from subwatch.detection.candidate_engine import CandidateEngine, percent_change
from subwatch.detection.models import (
    Cadence,
    CandidateStatus,
    ParsingMethod,
    ReceiptType,
    Subscription,
)
from subwatch.detection.repository import (
    CandidateRepository,
    PriceHistoryRepository,
    ReceiptRepository,
    SubscriptionRepository,
)
from subwatch.detection.types import ExtractionResult
from subwatch.notifications import (
    NEW_SUBSCRIPTION_DETECTED,
    PRICE_INCREASE,
    SUBSCRIPTION_CANCELLED,
)
from subwatch.observability.telemetry import get_counter


class RecordingSink:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def notify(self, user_id, type, title, message, data=None):
        if self.fail:
            raise RuntimeError("push service down")
        self.sent.append({"user_id": user_id, "type": type, "title": title, "data": data})


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(temp_db, sink):
    return CandidateEngine(sink=sink)


def result_for(receipt, **overrides) -> ExtractionResult:
    fields = {
        "receipt_id": receipt.id,
        "method": ParsingMethod.AI,
        "confidence": 0.85,
        "merchant": "Netflix",
        "amount": 15.49,
        "currency": "USD",
        "cadence": Cadence.MONTHLY,
        "receipt_type": ReceiptType.RENEWAL,
    }
    fields.update(overrides)
    return ExtractionResult(**fields)


def make_subscription(cost: float, name: str = "Netflix", user_id: str = "user_1"):
    return SubscriptionRepository.create(
        Subscription(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            merchant_key=name.lower(),
            cost=cost,
        )
    )


def test_percent_change():
    assert percent_change(9.99, 12.99) == 30.03
    assert percent_change(10.0, 5.0) == -50.0
    assert percent_change(0.0, 5.0) == 0.0


# ===== New candidates =====


class TestNewCandidate:
    def test_creates_pending_candidate(self, engine, sink, make_receipt):
        receipt = make_receipt()

        summary = engine.reconcile("user_1", [result_for(receipt)])

        assert summary.created == 1
        [candidate] = CandidateRepository.list_by_user("user_1")
        assert candidate.name == "Netflix"
        assert candidate.merchant_key == "netflix"
        assert candidate.amount == 15.49
        assert candidate.cadence == "monthly"
        assert candidate.confidence == pytest.approx(0.85)
        assert candidate.status == "pending"
        assert candidate.email_receipt_id == receipt.id
        assert candidate.proposed_next_billing == receipt.received_at + timedelta(days=30)
        assert candidate.raw_data["method"] == "ai"

        stored = ReceiptRepository.get_by_id(receipt.id)
        assert stored.candidate_id == candidate.id
        assert stored.reconciled_at is not None

        assert [n["type"] for n in sink.sent] == [NEW_SUBSCRIPTION_DETECTED]
        assert sink.sent[0]["data"]["candidate_id"] == candidate.id

    def test_yearly_next_billing_default(self, engine, make_receipt):
        receipt = make_receipt()

        engine.reconcile("user_1", [result_for(receipt, cadence=Cadence.YEARLY)])

        [candidate] = CandidateRepository.list_by_user("user_1")
        assert candidate.cadence == "yearly"
        assert candidate.proposed_next_billing == receipt.received_at + timedelta(days=365)

    def test_extracted_next_billing_wins(self, engine, make_receipt):
        receipt = make_receipt()
        next_charge = datetime(2025, 11, 15, tzinfo=UTC)

        engine.reconcile("user_1", [result_for(receipt, next_charge_date=next_charge)])

        [candidate] = CandidateRepository.list_by_user("user_1")
        assert candidate.proposed_next_billing == next_charge

    def test_result_without_fields_is_skipped(self, engine, make_receipt):
        receipt = make_receipt()

        summary = engine.reconcile("user_1", [result_for(receipt, amount=None)])

        assert summary.skipped == 1
        assert CandidateRepository.list_by_user("user_1") == []

    def test_unmatchable_merchant_leaves_detection_queue(self, engine, make_receipt):
        receipt = make_receipt()
        ReceiptRepository.save_extraction(result_for(receipt, merchant="   ", amount=9.99))
        assert ReceiptRepository.count_detection_eligible(0.6) == 1

        outcome = engine.create_detections_for_pending()

        assert outcome["skipped"] == 1
        assert ReceiptRepository.count_detection_eligible(0.6) == 0
        assert ReceiptRepository.get_by_id(receipt.id).reconciled_at is not None
        assert CandidateRepository.list_by_user("user_1") == []

    def test_missing_receipt_counts_as_error(self, engine, make_receipt):
        receipt = make_receipt()
        orphan = result_for(receipt, receipt_id="does-not-exist")

        summary = engine.reconcile("user_1", [orphan, result_for(receipt)])

        assert summary.errors == 1
        assert summary.created == 1
        assert get_counter("detection.candidates.error") == 1

    def test_notification_failure_does_not_fail_reconcile(self, temp_db, make_receipt):
        engine = CandidateEngine(sink=RecordingSink(fail=True))
        receipt = make_receipt()

        summary = engine.reconcile("user_1", [result_for(receipt)])

        assert summary.created == 1
        assert get_counter("notifications.failed") == 1

    def test_batch_limit(self, temp_db, make_receipt):
        engine = CandidateEngine(sink=RecordingSink(), batch_limit=1)
        first, second = make_receipt(), make_receipt()

        summary = engine.reconcile(
            "user_1", [result_for(first), result_for(second, merchant="Spotify")]
        )

        assert summary.created == 1
        assert ReceiptRepository.get_by_id(second.id).candidate_id is None


# ===== Pending candidates =====


class TestPendingCandidate:
    def test_at_most_one_pending_per_merchant(self, engine, sink, make_receipt):
        first, second = make_receipt(), make_receipt()

        engine.reconcile("user_1", [result_for(first)])
        summary = engine.reconcile("user_1", [result_for(second, merchant="  NETFLIX ")])

        assert summary.linked_existing == 1
        [candidate] = CandidateRepository.list_by_user("user_1")
        assert ReceiptRepository.get_by_id(second.id).candidate_id == candidate.id
        assert len(sink.sent) == 1

    def test_more_confident_result_upgrades(self, engine, make_receipt):
        first, second = make_receipt(), make_receipt()
        engine.reconcile("user_1", [result_for(first, confidence=0.7)])

        summary = engine.reconcile(
            "user_1", [result_for(second, confidence=0.92, amount=17.99)]
        )

        assert summary.updated == 1
        [candidate] = CandidateRepository.list_by_user("user_1")
        assert candidate.confidence == pytest.approx(0.92)
        assert candidate.amount == 17.99

    def test_confidence_never_decreases(self, engine, make_receipt):
        first, second = make_receipt(), make_receipt()
        engine.reconcile("user_1", [result_for(first, confidence=0.9)])

        summary = engine.reconcile(
            "user_1", [result_for(second, confidence=0.6, amount=1.00)]
        )

        assert summary.linked_existing == 1
        [candidate] = CandidateRepository.list_by_user("user_1")
        assert candidate.confidence == pytest.approx(0.9)
        assert candidate.amount == 15.49

    def test_users_are_isolated(self, engine, make_receipt):
        mine = make_receipt()
        theirs = make_receipt(user_id="user_2")

        engine.reconcile("user_1", [result_for(mine)])
        engine.reconcile("user_2", [result_for(theirs)])

        assert len(CandidateRepository.list_by_user("user_1")) == 1
        assert len(CandidateRepository.list_by_user("user_2")) == 1

    def test_concurrent_reconciles_keep_one_pending_candidate(self, temp_db, make_receipt):
        confidences = [0.6 + 0.04 * i for i in range(8)]
        receipts = [make_receipt() for _ in confidences]
        barrier = threading.Barrier(len(receipts))
        errors = []

        def worker(receipt, confidence):
            # Separate engines share no in-process lock, only the database
            engine = CandidateEngine(sink=RecordingSink())
            barrier.wait()
            try:
                summary = engine.reconcile("user_1", [result_for(receipt, confidence=confidence)])
                assert summary.errors == 0
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=worker, args=(receipt, confidence))
            for receipt, confidence in zip(receipts, confidences)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        [candidate] = CandidateRepository.list_by_user("user_1")
        assert candidate.status == "pending"
        assert candidate.confidence == pytest.approx(max(confidences))
        for receipt in receipts:
            assert ReceiptRepository.get_by_id(receipt.id).candidate_id == candidate.id


# ===== Existing subscriptions =====


class TestExistingSubscription:
    def test_price_increase(self, engine, sink, make_receipt):
        subscription = make_subscription(9.99)
        receipt = make_receipt()

        summary = engine.reconcile("user_1", [result_for(receipt, amount=12.99)])

        assert summary.updated == 1
        [entry] = PriceHistoryRepository.list_for_subscription(subscription.id)
        assert entry.old_price == 9.99
        assert entry.new_price == 12.99
        assert entry.percent_change == pytest.approx(30.03)
        assert SubscriptionRepository.get_by_id(subscription.id).cost == 12.99
        assert ReceiptRepository.get_by_id(receipt.id).subscription_id == subscription.id
        assert CandidateRepository.list_by_user("user_1") == []

        [notification] = sink.sent
        assert notification["type"] == PRICE_INCREASE
        assert notification["data"]["percent_change"] == pytest.approx(30.03)

    def test_price_decrease_is_recorded_without_notification(self, engine, sink, make_receipt):
        subscription = make_subscription(15.49)
        receipt = make_receipt()

        engine.reconcile("user_1", [result_for(receipt, amount=12.99)])

        [entry] = PriceHistoryRepository.list_for_subscription(subscription.id)
        assert entry.percent_change < 0
        assert sink.sent == []

    def test_same_price_renewal_links(self, engine, sink, make_receipt):
        subscription = make_subscription(15.49)
        receipt = make_receipt()

        summary = engine.reconcile("user_1", [result_for(receipt)])

        assert summary.linked_existing == 1
        assert PriceHistoryRepository.list_for_subscription(subscription.id) == []
        stored = SubscriptionRepository.get_by_id(subscription.id)
        assert stored.last_charge_at == receipt.received_at
        assert sink.sent == []

    def test_cancellation_deactivates(self, engine, sink, make_receipt):
        subscription = make_subscription(15.49)
        receipt = make_receipt(subject="Your Netflix subscription has been cancelled")

        summary = engine.reconcile(
            "user_1", [result_for(receipt, receipt_type=ReceiptType.CANCELLATION)]
        )

        assert summary.updated == 1
        assert SubscriptionRepository.get_by_id(subscription.id).is_active is False
        assert [n["type"] for n in sink.sent] == [SUBSCRIPTION_CANCELLED]


# ===== Lifecycle receipts =====


class TestLifecycleReceipts:
    @pytest.mark.parametrize(
        "receipt_type",
        [
            ReceiptType.CANCELLATION,
            ReceiptType.TRIAL_STARTED,
            ReceiptType.TRIAL_ENDING,
            ReceiptType.PAYMENT_FAILED,
        ],
    )
    def test_never_creates_candidate(self, engine, make_receipt, receipt_type):
        receipt = make_receipt()

        summary = engine.reconcile("user_1", [result_for(receipt, receipt_type=receipt_type)])

        assert summary.skipped == 1
        assert CandidateRepository.list_by_user("user_1") == []
        stored = ReceiptRepository.get_by_id(receipt.id)
        assert stored.reconciled_at is not None
        assert stored.candidate_id is None


# ===== User actions =====


class TestUserActions:
    def test_accept_creates_subscription(self, engine, make_receipt):
        first, second = make_receipt(), make_receipt()
        engine.reconcile("user_1", [result_for(first), result_for(second)])
        [candidate] = CandidateRepository.list_by_user("user_1")

        outcome = engine.accept(candidate.id)

        assert outcome["success"] is True
        assert outcome["linked_receipts"] == 2
        subscription = SubscriptionRepository.get_by_id(outcome["subscription_id"])
        assert subscription.name == "Netflix"
        assert subscription.cost == 15.49
        assert subscription.is_active
        assert CandidateRepository.get_by_id(candidate.id).status == "accepted"
        assert ReceiptRepository.get_by_id(first.id).subscription_id == subscription.id
        assert ReceiptRepository.get_by_id(first.id).candidate_id is None

    def test_accept_twice_fails(self, engine, make_receipt):
        engine.reconcile("user_1", [result_for(make_receipt())])
        [candidate] = CandidateRepository.list_by_user("user_1")
        engine.accept(candidate.id)

        outcome = engine.accept(candidate.id)

        assert outcome == {"success": False, "error": "Candidate is already accepted"}

    def test_accepted_merchant_links_to_subscription_next_time(self, engine, make_receipt):
        engine.reconcile("user_1", [result_for(make_receipt())])
        [candidate] = CandidateRepository.list_by_user("user_1")
        subscription_id = engine.accept(candidate.id)["subscription_id"]

        later = make_receipt()
        summary = engine.reconcile("user_1", [result_for(later)])

        assert summary.linked_existing == 1
        assert ReceiptRepository.get_by_id(later.id).subscription_id == subscription_id

    def test_dismiss(self, engine, make_receipt):
        engine.reconcile("user_1", [result_for(make_receipt())])
        [candidate] = CandidateRepository.list_by_user("user_1")

        assert engine.dismiss(candidate.id) == {"success": True, "candidate_id": candidate.id}
        assert CandidateRepository.get_by_id(candidate.id).status == "dismissed"
        assert engine.dismiss(candidate.id)["success"] is False

    def test_dismissed_merchant_gets_a_new_candidate(self, engine, make_receipt):
        engine.reconcile("user_1", [result_for(make_receipt())])
        [candidate] = CandidateRepository.list_by_user("user_1")
        engine.dismiss(candidate.id)

        summary = engine.reconcile("user_1", [result_for(make_receipt())])

        assert summary.created == 1
        pending = CandidateRepository.list_by_user("user_1", CandidateStatus.PENDING)
        assert len(pending) == 1

    def test_unknown_candidate(self, engine):
        assert engine.accept("missing") == {"success": False, "error": "Candidate not found"}
        assert engine.dismiss("missing") == {"success": False, "error": "Candidate not found"}

    def test_stats(self, engine, make_receipt):
        engine.reconcile(
            "user_1",
            [
                result_for(make_receipt()),
                result_for(make_receipt(), merchant="Spotify"),
            ],
        )
        spotify = next(
            c for c in CandidateRepository.list_by_user("user_1") if c.name == "Spotify"
        )
        engine.dismiss(spotify.id)

        assert CandidateEngine.stats("user_1") == {
            "pending": 1,
            "accepted": 0,
            "dismissed": 1,
            "linked_receipts": 2,
        }


# ===== Batch detection =====


class TestCreateDetectionsForPending:
    def test_groups_eligible_receipts_by_user(self, engine, make_receipt):
        netflix = make_receipt()
        spotify = make_receipt(user_id="user_2")
        weak = make_receipt()
        ReceiptRepository.save_extraction(result_for(netflix))
        ReceiptRepository.save_extraction(result_for(spotify, merchant="Spotify", amount=11.99))
        ReceiptRepository.save_extraction(result_for(weak, merchant="Hulu", confidence=0.5))

        outcome = engine.create_detections_for_pending()

        assert outcome["user_count"] == 2
        assert outcome["receipt_count"] == 2
        assert outcome["created"] == 2
        assert outcome["errors"] == 0
        assert ReceiptRepository.count_detection_eligible(0.6) == 0
        assert ReceiptRepository.get_by_id(weak.id).candidate_id is None

    def test_nothing_eligible(self, engine):
        outcome = engine.create_detections_for_pending()
        assert outcome["receipt_count"] == 0
        assert outcome["created"] == 0
