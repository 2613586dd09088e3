"""
End-to-end pipeline tests: scan -> parse -> create_detections.

Runs against a temporary SQLite database with a fake mailbox connector. The
extraction router is regex-only unless a test injects a fake provider.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from subwatch.detection.candidate_engine import CandidateEngine
from subwatch.detection.extraction_router import ExtractionRouter
from subwatch.detection.governor import Governor
from subwatch.detection.models import PipelineGovernance, RawEmail
from subwatch.detection.repository import (
    CandidateRepository,
    ReceiptRepository,
    ScanProgressRepository,
)
from subwatch.detection.types import ExtractionResult
from subwatch.observability.telemetry import get_latency_stats
from subwatch.pipeline import MailboxConnection, Pipeline

RECEIVED = datetime(2025, 10, 1, 12, 0, tzinfo=UTC)


def renewal_email(message_id: str = "msg-netflix") -> RawEmail:
    return RawEmail(
        id=message_id,
        sender="Netflix <info@mailer.netflix.com>",
        subject="Your Netflix subscription has been renewed",
        body=(
            "Thanks! Your monthly subscription payment of $15.49 was charged. "
            "Next billing date: November 1, 2025."
        ),
        received_at=RECEIVED,
    )


def marketing_email(message_id: str = "msg-deals") -> RawEmail:
    return RawEmail(
        id=message_id,
        sender="deals@shop-example.com",
        subject="Huge discount offer",
        body="Save 40% this weekend only. Unsubscribe here.",
        received_at=RECEIVED,
    )


class FakeConnector:
    def __init__(self, mailboxes: dict[str, list[RawEmail]], broken: set[str] | None = None):
        self.mailboxes = mailboxes
        self.broken = broken or set()

    def fetch(self, connection: MailboxConnection, since):
        if connection.user_id in self.broken:
            raise ConnectionError("token expired")
        return list(self.mailboxes.get(connection.user_id, []))


class NullSink:
    def __init__(self):
        self.sent = []

    def notify(self, user_id, type, title, message, data=None):
        self.sent.append(type)


class AlwaysSubscription:
    name = "anthropic"

    def complete(self, prompt: str) -> str:
        return json.dumps(
            {
                "isSubscription": True,
                "merchant": "Netflix",
                "amount": 15.49,
                "currency": "USD",
                "frequency": "monthly",
                "nextBillingDate": "2025-11-01",
                "confidence": 90,
                "reasoning": "Renewal",
            }
        )


@pytest.fixture
def sink():
    return NullSink()


@pytest.fixture
def pipeline(temp_db, sink):
    return Pipeline(
        router=ExtractionRouter(providers=[], sleep_fn=lambda _: None),
        engine=CandidateEngine(sink=sink),
    )


def scan_user_1(pipeline: Pipeline, *emails: RawEmail):
    connector = FakeConnector({"user_1": list(emails)})
    return pipeline.scan(connector, [MailboxConnection(user_id="user_1")])


# ===== Scan =====


class TestScan:
    def test_stores_new_messages_once(self, pipeline):
        first = scan_user_1(pipeline, renewal_email(), marketing_email())
        second = scan_user_1(pipeline, renewal_email(), marketing_email())

        assert first["inserted"] == 2
        assert first["duplicates"] == 0
        assert second["inserted"] == 0
        assert second["duplicates"] == 2
        assert len(ReceiptRepository.list_parse_eligible("user_1")) == 2

    def test_failed_connection_does_not_stop_others(self, pipeline):
        connector = FakeConnector(
            {"user_1": [renewal_email()], "user_2": [renewal_email()]}, broken={"user_1"}
        )

        summary = pipeline.scan(
            connector,
            [MailboxConnection(user_id="user_1"), MailboxConnection(user_id="user_2")],
        )

        assert summary["connections"] == 2
        assert summary["errors"] == 1
        assert summary["inserted"] == 1

    def test_body_is_capped(self, pipeline, monkeypatch):
        monkeypatch.setattr("subwatch.pipeline.RECEIPT_BODY_MAX_CHARS", 10)
        scan_user_1(pipeline, renewal_email())

        [receipt] = ReceiptRepository.list_parse_eligible("user_1")
        assert receipt.body == "Thanks! Yo"


# ===== Parse =====


class TestParse:
    def test_prefilter_then_regex_fallback(self, pipeline):
        scan_user_1(pipeline, renewal_email(), marketing_email())

        summary = pipeline.parse()

        assert summary["processed"] == 2
        assert summary["filtered"] == 1
        assert summary["ai"] == 0
        assert summary["regex_fallback"] == 1
        assert summary["parsed"] == 1
        assert summary["savings_estimate"] > 0
        assert ReceiptRepository.list_parse_eligible() == []

        [stored] = ReceiptRepository.list_detection_eligible(0.6, limit=10)
        assert stored.merchant == "Netflix"
        assert stored.amount == 15.49
        assert stored.parsing_method == "regex_fallback"
        assert get_latency_stats("pipeline.parse.latency")["count"] >= 1

    def test_ai_provider_path(self, temp_db, sink):
        pipeline = Pipeline(
            router=ExtractionRouter(providers=[AlwaysSubscription()], sleep_fn=lambda _: None),
            engine=CandidateEngine(sink=sink),
        )
        scan_user_1(pipeline, renewal_email())

        summary = pipeline.parse()

        assert summary["ai"] == 1
        assert summary["parsed"] == 1
        [stored] = ReceiptRepository.list_detection_eligible(0.6, limit=10)
        assert stored.parsing_method == "ai"
        assert stored.parsing_confidence == pytest.approx(0.9)

    def test_nothing_to_parse(self, pipeline):
        summary = pipeline.parse()
        assert summary["message"] == "No receipts to parse"
        assert summary["processed"] == 0

    def test_records_progress(self, pipeline):
        scan_user_1(pipeline, renewal_email())

        pipeline.parse(user_id="user_1")

        progress = ScanProgressRepository.get("user_1")
        assert progress["status"] == "complete"
        assert progress["processed"] == progress["total"] == 1

    def test_save_failure_is_counted_not_raised(self, pipeline, monkeypatch):
        scan_user_1(pipeline, renewal_email())

        def broken(result: ExtractionResult) -> bool:
            raise RuntimeError("disk full")

        monkeypatch.setattr(ReceiptRepository, "save_extraction", staticmethod(broken))

        summary = pipeline.parse()

        assert summary["parsed"] == 0
        assert summary["errors"] == 1

    def test_prefilter_failure_leaves_receipt_for_next_pass(self, pipeline, monkeypatch):
        scan_user_1(pipeline, renewal_email())

        def broken(receipt_id, confidence, email_type):
            raise RuntimeError("db patch failed")

        monkeypatch.setattr(ReceiptRepository, "record_signals", staticmethod(broken))

        summary = pipeline.parse()

        assert summary["errors"] == 1
        assert summary["parsed"] == 0
        assert len(ReceiptRepository.list_parse_eligible("user_1")) == 1


# ===== Detections =====


class TestCreateDetections:
    def test_full_flow_creates_candidate(self, pipeline, sink):
        scan_user_1(pipeline, renewal_email(), marketing_email())
        pipeline.parse()

        summary = pipeline.create_detections()

        assert summary["created"] == 1
        assert summary["user_count"] == 1
        [candidate] = CandidateRepository.list_by_user("user_1")
        assert candidate.name == "Netflix"
        assert candidate.amount == 15.49
        assert sink.sent == ["new_subscription_detected"]

    def test_second_pass_has_nothing_to_do(self, pipeline):
        scan_user_1(pipeline, renewal_email())
        pipeline.parse()
        pipeline.create_detections()

        summary = pipeline.create_detections()

        assert summary["message"] == "No receipts eligible for detection"
        assert summary["created"] == 0

    def test_rescan_of_same_message_is_not_redetected(self, pipeline):
        scan_user_1(pipeline, renewal_email())
        pipeline.parse()
        pipeline.create_detections()

        scan_user_1(pipeline, renewal_email())
        pipeline.parse()
        pipeline.create_detections()

        assert len(CandidateRepository.list_by_user("user_1")) == 1

    def test_governance_conflict_is_reported(self, temp_db, sink):
        class Contended:
            def load(self):
                return PipelineGovernance()

            def compare_and_set(self, expected_version, state):
                return False

        pipeline = Pipeline(
            router=ExtractionRouter(providers=[]),
            engine=CandidateEngine(sink=sink),
            governor=Governor(repository=Contended()),
        )

        summary = pipeline.create_detections()

        assert summary == {"message": "Skipped - Governance update conflict", "skipped": True}


# ===== Safe mode =====


class TestSafeMode:
    def test_every_entry_point_is_skipped(self, pipeline):
        scan_user_1(pipeline, renewal_email())
        pipeline.governor.set_safe_mode(True, reason="incident")

        for outcome in (
            scan_user_1(pipeline, marketing_email()),
            pipeline.parse(),
            pipeline.create_detections(),
        ):
            assert outcome["skipped"] is True
            assert outcome["message"] == "Skipped - Safe mode enabled"
            assert outcome["reason"] == "incident"
            assert outcome["source"] == "database"

        assert len(ReceiptRepository.list_parse_eligible()) == 1

    def test_env_override(self, pipeline, monkeypatch):
        monkeypatch.setenv("SUBWATCH_SAFE_MODE", "true")

        outcome = pipeline.parse()

        assert outcome["skipped"] is True
        assert outcome["source"] == "env"
        assert outcome["reason"] == "env_override"

    def test_queue_spike_trips_safe_mode(self, pipeline):
        emails = [renewal_email(f"msg-{i}") for i in range(150)]
        scan_user_1(pipeline, *emails)
        pipeline.parse(limit=100)
        pipeline.parse(limit=100)
        assert ReceiptRepository.count_detection_eligible(0.6) == 150

        outcome = pipeline.create_detections()

        assert outcome["skipped"] is True
        assert outcome["reason"] == "detection_queue_large"
        assert CandidateRepository.list_by_user("user_1") == []
        assert pipeline.parse()["skipped"] is True

    def test_stuck_queue_trips_after_three_cycles(self, temp_db, sink):
        class NoProgressEngine(CandidateEngine):
            def create_detections_for_pending(self, limit=100):
                return {"user_count": 0, "receipt_count": 0, "created": 0}

        pipeline = Pipeline(
            router=ExtractionRouter(providers=[]),
            engine=NoProgressEngine(sink=sink),
        )
        scan_user_1(pipeline, *(renewal_email(f"msg-{i}") for i in range(5)))
        pipeline.parse()

        assert "skipped" not in pipeline.create_detections()
        assert "skipped" not in pipeline.create_detections()
        outcome = pipeline.create_detections()

        assert outcome["skipped"] is True
        assert outcome["reason"] == "detection_queue_stuck"

    def test_clearing_safe_mode_resumes(self, pipeline):
        pipeline.governor.set_safe_mode(True)
        pipeline.governor.set_safe_mode(False)

        assert "skipped" not in pipeline.parse()
