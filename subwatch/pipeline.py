"""
Scheduler entry points for the detection pipeline.

    scan               mailbox connector -> receipts table (dedup by message id)
    parse              pre-filter -> extraction router -> receipt fields
    create_detections  governor -> candidate engine

Every entry point consults the Safe-Mode Governor before doing any work and
returns a summary dict instead of raising, so one bad batch never crashes a
scheduler tick.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from subwatch.config import (
    DETECTION_MIN_CONFIDENCE,
    LEARNED_DOMAIN_MIN_OCCURRENCES,
    PARSE_BATCH_LIMIT,
    RECEIPT_BODY_MAX_CHARS,
)
from subwatch.detection.candidate_engine import CandidateEngine
from subwatch.detection.errors import GovernanceConflictError
from subwatch.detection.extraction_router import ExtractionRouter
from subwatch.detection.governor import Governor
from subwatch.detection.models import RawEmail, Receipt
from subwatch.detection.repository import ReceiptRepository, ScanProgressRepository
from subwatch.detection.signals import SignalExtractor
from subwatch.detection.types import GovernorDecision, RouterSummary
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)

SAFE_MODE_SKIPPED_MESSAGE = "Skipped - Safe mode enabled"


@dataclass
class MailboxConnection:
    """One connected mailbox owned by a user."""

    user_id: str
    account: str = ""
    since: datetime | None = None


class MailboxConnector(Protocol):
    """Fetches raw emails for a connection; OAuth and transport live outside."""

    def fetch(
        self, connection: MailboxConnection, since: datetime | None
    ) -> Iterable[RawEmail]: ...


def skipped_response(decision: GovernorDecision) -> dict[str, Any]:
    return {
        "message": SAFE_MODE_SKIPPED_MESSAGE,
        "skipped": True,
        "reason": decision.reason,
        "source": decision.source,
    }


class _ParseProgress:
    """Aggregates per-lane router progress into one scan_progress row."""

    def __init__(self, run_key: str, total: int):
        self.run_key = run_key
        self.total = total
        self._lanes: dict[int, int] = {}
        self._lock = threading.Lock()

    def __call__(self, lane: int, processed: int, lane_total: int) -> None:
        with self._lock:
            self._lanes[lane] = processed
            done = sum(self._lanes.values())
        ScanProgressRepository.update(self.run_key, "processing", done, self.total)

    def complete(self) -> None:
        try:
            ScanProgressRepository.update(self.run_key, "complete", self.total, self.total)
        except Exception as e:
            logger.warning("Failed to record parse completion for %s: %s", self.run_key, e)


class Pipeline:
    """
    Wire the four detection stages together.

    Collaborators are injectable so tests can pass fake providers, a no-op
    sleep, or a custom governor.
    """

    def __init__(
        self,
        signal_extractor: SignalExtractor | None = None,
        router: ExtractionRouter | None = None,
        engine: CandidateEngine | None = None,
        governor: Governor | None = None,
    ):
        self.signal_extractor = signal_extractor or SignalExtractor()
        self.router = router or ExtractionRouter()
        self.engine = engine or CandidateEngine()
        self.governor = governor or Governor()

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def scan(
        self,
        connector: MailboxConnector,
        connections: Sequence[MailboxConnection],
    ) -> dict[str, Any]:
        """Fetch new mail for each connection and store it as unparsed receipts."""
        decision = self.governor.check()
        if decision.halted:
            return skipped_response(decision)

        fetched = inserted = errors = 0
        for connection in connections:
            try:
                emails = list(connector.fetch(connection, connection.since))
            except Exception as e:
                errors += 1
                counter("pipeline.scan.fetch_error")
                logger.error("Mailbox fetch failed for %s: %s", connection.user_id, e)
                continue

            fetched += len(emails)
            for email in emails:
                try:
                    if ReceiptRepository.insert(self._to_receipt(connection.user_id, email)):
                        inserted += 1
                except Exception as e:
                    errors += 1
                    logger.error("Failed to store message %s: %s", email.id, e)

        counter("pipeline.scan.inserted", inserted)
        summary = {
            "message": f"Stored {inserted} new receipts",
            "connections": len(connections),
            "fetched": fetched,
            "inserted": inserted,
            "duplicates": fetched - inserted - errors,
            "errors": errors,
        }
        log_event("pipeline.scan.complete", **summary)
        return summary

    @staticmethod
    def _to_receipt(user_id: str, email: RawEmail) -> Receipt:
        return Receipt(
            id=str(uuid.uuid4()),
            user_id=user_id,
            message_id=email.id,
            sender=email.sender,
            subject=email.subject,
            body=(email.body or "")[:RECEIPT_BODY_MAX_CHARS],
            received_at=email.received_at,
        )

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    def parse(self, user_id: str | None = None, limit: int = PARSE_BATCH_LIMIT) -> dict[str, Any]:
        """
        One parse pass: pre-filter, extract, and persist fields.

        Returns:
            {message, processed, filtered, ai, regex_fallback, parsed, savings_estimate,
             errors}
        """
        decision = self.governor.check()
        if decision.halted:
            return skipped_response(decision)

        receipts = ReceiptRepository.list_parse_eligible(user_id, limit)
        if not receipts:
            return {
                "message": "No receipts to parse",
                "processed": 0,
                "filtered": 0,
                "ai": 0,
                "regex_fallback": 0,
                "parsed": 0,
                "savings_estimate": 0.0,
                "errors": 0,
            }

        with time_block("pipeline.parse.latency"):
            learned = ReceiptRepository.frequent_sender_domains(
                user_id, LEARNED_DOMAIN_MIN_OCCURRENCES
            )
            for owner, domains in learned.items():
                added = self.signal_extractor.learn_domains(owner, domains)
                logger.debug("Learned %d sender domains (%d new)", len(domains), added)

            prefilter = self.signal_extractor.prefilter_batch(receipts)
            kept = set(prefilter.kept_ids)
            survivors = [receipt for receipt in receipts if receipt.id in kept]

            progress = _ParseProgress(user_id or "all", len(survivors))
            results = self.router.extract(survivors, progress_callback=progress)
            progress.complete()

            parsed = save_errors = 0
            for result in results:
                try:
                    if ReceiptRepository.save_extraction(result):
                        parsed += 1
                except Exception as e:
                    save_errors += 1
                    counter("pipeline.parse.save_error")
                    logger.error("Failed to save extraction for %s: %s", result.receipt_id, e)

        routed = RouterSummary.from_results(results)
        summary = {
            "message": f"Parsed {parsed} of {len(receipts)} receipts",
            "processed": prefilter.processed,
            "filtered": prefilter.filtered + routed.filtered,
            "ai": routed.ai,
            "regex_fallback": routed.regex_fallback,
            "parsed": parsed,
            "savings_estimate": prefilter.savings_estimate,
            "errors": prefilter.errors + save_errors,
        }
        log_event("pipeline.parse.complete", user_id=user_id, **summary)
        return summary

    # ------------------------------------------------------------------
    # Detections
    # ------------------------------------------------------------------

    def create_detections(self) -> dict[str, Any]:
        """
        Governor check on the full eligible count, then candidate reconciliation.

        Returns:
            {message, user_count, receipt_count, created, updated, linked_existing, ...}
        """
        eligible = ReceiptRepository.count_detection_eligible(DETECTION_MIN_CONFIDENCE)

        try:
            decision = self.governor.evaluate(eligible)
        except GovernanceConflictError as e:
            logger.error("Governor could not record this cycle: %s", e)
            return {"message": "Skipped - Governance update conflict", "skipped": True}

        if decision.halted:
            return skipped_response(decision)

        if eligible == 0:
            return {
                "message": "No receipts eligible for detection",
                "user_count": 0,
                "receipt_count": 0,
                "created": 0,
                "updated": 0,
                "linked_existing": 0,
            }

        result = self.engine.create_detections_for_pending()
        summary = {"message": f"Created {result['created']} candidates", **result}
        log_event("pipeline.detections.complete", **result)
        return summary
