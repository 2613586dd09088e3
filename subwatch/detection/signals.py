"""
Signal extractor and pre-filter for inbound emails.

Stage 1 of the detection pipeline. Scores each email for "receipt-ness" from
domain, keyword, amount, and date signals, classifies its email type, and
decides whether it is worth sending to AI extraction.

Cost: $0 (no external calls)
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from subwatch.config import PREFILTER_CONFIDENCE_THRESHOLD, PREFILTER_COST_PER_CALL_USD
from subwatch.detection.filter_data import (
    AMOUNT_PATTERNS,
    BILLING_DATE_PATTERNS,
    KEYWORD_WEIGHTS,
    NEGATIVE_KEYWORDS,
    TEXT_SIGNAL_PATTERNS,
    TEXT_SIGNAL_TERMS,
    TRANSACTION_ID_PATTERN,
)
from subwatch.detection.merchants import MerchantDirectory, get_merchant_directory
from subwatch.detection.models import EmailType, Receipt, ReceiptType
from subwatch.detection.repository import ReceiptRepository
from subwatch.detection.types import PrefilterSummary, SignalClassification, SignalSet
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter, log_event
from subwatch.utils.redaction import redact_subject

logger = get_logger(__name__)


class EmailLike(Protocol):
    sender: str
    subject: str
    body: str


def _text_score(text: str) -> int:
    """Heuristic receipt score for one piece of text, floored at 0."""
    lowered = text.lower()
    score = 0
    for term, points in TEXT_SIGNAL_TERMS:
        if term in lowered:
            score += points
    for pattern, points in TEXT_SIGNAL_PATTERNS:
        if pattern.search(text):
            score += points
    return max(score, 0)


def _has_any(text: str, *words: str) -> bool:
    return any(word in text for word in words)


def classify_email_type(subject: str, body: str) -> EmailType:
    """First matching branch wins; order matters."""
    text = f"{subject} {body}".lower()

    if _has_any(text, "subscription", "recurring") and _has_any(
        text, "payment", "charged", "receipt"
    ):
        return EmailType.SUBSCRIPTION_RECEIPT
    if "order" in text and not _has_any(text, "recurring", "subscription"):
        return EmailType.ONE_TIME_PURCHASE
    if "cancel" in text and _has_any(text, "subscription", "membership"):
        return EmailType.CANCELLATION
    if "trial" in text and _has_any(text, "ending", "expires", "started"):
        return EmailType.TRIAL_NOTIFICATION
    if _has_any(text, "offer", "deal", "discount", "save"):
        return EmailType.MARKETING
    if _has_any(text, "newsletter", "update", "blog"):
        return EmailType.NEWSLETTER
    if _has_any(text, "payment", "billing"):
        return EmailType.PAYMENT_NOTIFICATION
    if _has_any(text, "notification", "alert"):
        return EmailType.NOTIFICATION
    return EmailType.UNKNOWN


class SignalExtractor:
    """
    Rule-based receipt scorer.

    Known subscription domains and payment processors come from the merchant
    directory; keyword and pattern tables live in filter_data.py.
    """

    def __init__(self, directory: MerchantDirectory | None = None):
        self.directory = directory or get_merchant_directory()

    def learn_domains(self, user_id: str, domains: Iterable[str]) -> int:
        """Extend one user's domain matching with domains from their receipt history."""
        return self.directory.learn_domains(user_id, domains)

    def extract_signals(
        self, sender: str, subject: str, body: str, user_id: str | None = None
    ) -> SignalSet:
        subject = subject or ""
        body = body or ""
        text = f"{subject} {body}".lower()

        keyword_weight = 0
        for keywords, weight in KEYWORD_WEIGHTS:
            keyword_weight += weight * sum(1 for keyword in keywords if keyword in text)

        return SignalSet(
            domain_match=self.directory.is_known_domain(sender, user_id),
            payment_processor=self.directory.is_payment_processor(sender),
            amount_match=any(
                pattern.search(subject) or pattern.search(body) for pattern in AMOUNT_PATTERNS
            ),
            billing_date_match=any(pattern.search(body) for pattern in BILLING_DATE_PATTERNS),
            transaction_id_match=bool(TRANSACTION_ID_PATTERN.search(body)),
            keyword_weight=keyword_weight,
            negative_hits=sum(1 for keyword in NEGATIVE_KEYWORDS if keyword in text),
            subject_score=_text_score(subject),
            body_score=_text_score(body),
        )

    @staticmethod
    def score(signals: SignalSet) -> float:
        """Combine signals into a confidence in [0, 1]."""
        confidence = 0.0
        if signals.domain_match:
            confidence += 0.20
        if signals.amount_match:
            confidence += 0.15
        if signals.billing_date_match:
            confidence += 0.10
        if signals.transaction_id_match:
            confidence += 0.05
        confidence += min(signals.keyword_weight / 10, 0.30)
        confidence += min((signals.subject_score + signals.body_score) / 20, 0.20)
        confidence -= min(0.1 * signals.negative_hits, 0.50)
        return round(max(0.0, min(confidence, 1.0)), 4)

    @staticmethod
    def decide(signals: SignalSet, confidence: float) -> tuple[bool, str]:
        """Receipt decision rules, applied in priority order."""
        if signals.domain_match and signals.amount_match and signals.keyword_weight > 2:
            return True, "domain_amount_keywords"
        if (signals.domain_match or signals.amount_match) and signals.keyword_weight > 1:
            return True, "domain_or_amount_keywords"
        if signals.payment_processor and (signals.amount_match or signals.keyword_weight > 0):
            return True, "payment_processor"
        if signals.negative_hits > 3:
            return False, "negative_keywords"
        if confidence > PREFILTER_CONFIDENCE_THRESHOLD:
            return True, "confidence"
        return False, "low_confidence"

    def classify(self, email: EmailLike, user_id: str | None = None) -> SignalClassification:
        """
        Classify one email.

        Args:
            email: Anything with sender, subject, and body (Receipt, RawEmail)
            user_id: Owner, whose learned domains count as known

        Returns:
            SignalClassification with decision, type, confidence, and signals
        """
        signals = self.extract_signals(email.sender, email.subject, email.body, user_id)
        confidence = self.score(signals)
        is_receipt, reason = self.decide(signals, confidence)
        return SignalClassification(
            is_receipt=is_receipt,
            email_type=classify_email_type(email.subject or "", email.body or ""),
            confidence=confidence,
            signals=signals,
            reason=reason,
        )

    def prefilter_batch(
        self,
        receipts: Iterable[Receipt],
        repository: type[ReceiptRepository] = ReceiptRepository,
    ) -> PrefilterSummary:
        """
        Pre-filter a batch of stored receipts before extraction.

        Filtered receipts are marked parsed with method "filtered" so they are
        never sent to a provider. Kept receipts only get their signal
        confidence and email type recorded.
        A receipt that fails to classify or patch is counted in errors and
        left unparsed for the next pass.

        Side Effects:
            - One patch per processed receipt via the repository
            - Increments detection.prefilter.* counters
        """
        summary = PrefilterSummary()

        for receipt in receipts:
            if receipt.is_settled:
                summary.skipped += 1
                continue

            try:
                classification = self.classify(receipt, receipt.user_id)
                summary.processed += 1
                self._apply(receipt, classification, summary, repository)
            except Exception:
                summary.errors += 1
                counter("detection.prefilter.error")
                logger.error("Pre-filter failed for receipt %s", receipt.id, exc_info=True)

        summary.savings_estimate = round(summary.filtered * PREFILTER_COST_PER_CALL_USD, 4)

        log_event(
            "detection.prefilter.complete",
            processed=summary.processed,
            filtered=summary.filtered,
            identified=summary.identified,
            skipped=summary.skipped,
            errors=summary.errors,
        )
        return summary

    @staticmethod
    def _apply(
        receipt: Receipt,
        classification: SignalClassification,
        summary: PrefilterSummary,
        repository: type[ReceiptRepository],
    ) -> None:
        if classification.should_filter:
            receipt_type = (
                ReceiptType.CANCELLATION
                if classification.email_type == EmailType.CANCELLATION
                else ReceiptType.UNKNOWN
            )
            repository.mark_filtered(
                receipt.id,
                confidence=classification.confidence,
                email_type=classification.email_type,
                receipt_type=receipt_type,
            )
            summary.filtered += 1
            counter("detection.prefilter.filtered")
            logger.debug(
                "Filtered %s (%s, %s, confidence=%.2f)",
                redact_subject(receipt.subject),
                classification.reason,
                classification.email_type.value,
                classification.confidence,
            )
            return

        repository.record_signals(
            receipt.id,
            confidence=classification.confidence,
            email_type=classification.email_type,
        )
        summary.identified += 1
        summary.kept_ids.append(receipt.id)
        counter("detection.prefilter.identified")
