"""
Module: types
Purpose: Shared result types for the detection pipeline.
Dependencies: subwatch.detection.models (enums and Receipt)

Stable import boundary: signals, regex_extractor, extraction_router,
candidate_engine, governor, and pipeline all exchange these dataclasses.
Keeping them in a leaf module prevents circular imports.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from subwatch.detection.models import Cadence, EmailType, ParsingMethod, Receipt, ReceiptType

# ---------------------------------------------------------------------------
# Pre-filter (from signals.py)
# ---------------------------------------------------------------------------


@dataclass
class SignalSet:
    """Raw signals observed on one email."""

    domain_match: bool = False
    payment_processor: bool = False
    amount_match: bool = False
    billing_date_match: bool = False
    transaction_id_match: bool = False
    keyword_weight: int = 0
    negative_hits: int = 0
    subject_score: int = 0
    body_score: int = 0


@dataclass
class SignalClassification:
    """Pre-filter verdict for one email."""

    is_receipt: bool
    email_type: EmailType
    confidence: float
    signals: SignalSet
    reason: str = ""

    @property
    def should_filter(self) -> bool:
        """Dropped before extraction: not a receipt, or marketing/newsletter."""
        return not self.is_receipt or self.email_type in (
            EmailType.MARKETING,
            EmailType.NEWSLETTER,
        )


@dataclass
class PrefilterSummary:
    processed: int = 0
    filtered: int = 0
    identified: int = 0
    skipped: int = 0
    errors: int = 0
    savings_estimate: float = 0.0
    kept_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("kept_ids")
        return data


# ---------------------------------------------------------------------------
# Regex fallback (from regex_extractor.py)
# ---------------------------------------------------------------------------


@dataclass
class MerchantMatch:
    name: str | None
    confidence: float
    source: str = "none"  # "known" | "display_name" | "domain" | "subject" | "raw_domain"


@dataclass
class RegexExtraction:
    """Fields the deterministic parser could recover."""

    is_subscription: bool
    merchant: str | None = None
    merchant_confidence: float = 0.0
    amount: float | None = None
    currency: str = "USD"
    billing_cycle: str | None = None  # monthly | yearly | quarterly | weekly
    next_charge_date: datetime | None = None
    receipt_type: ReceiptType | None = None
    confidence: float = 0.0

    @property
    def is_usable(self) -> bool:
        return bool(self.merchant) and self.amount is not None


# ---------------------------------------------------------------------------
# Extraction router (from extraction_router.py)
# ---------------------------------------------------------------------------


@dataclass
class ExtractionResult:
    """Exactly one of these is produced for every receipt sent to the router."""

    receipt_id: str
    method: ParsingMethod
    confidence: float = 0.0
    merchant: str | None = None
    amount: float | None = None
    currency: str = "USD"
    cadence: Cadence | None = None
    next_charge_date: datetime | None = None
    receipt_type: ReceiptType | None = None
    reasoning: str | None = None
    provider: str | None = None

    @property
    def has_fields(self) -> bool:
        return bool(self.merchant) and self.amount is not None

    @classmethod
    def filtered(
        cls, receipt_id: str, receipt_type: ReceiptType | None = None
    ) -> ExtractionResult:
        return cls(
            receipt_id=receipt_id,
            method=ParsingMethod.FILTERED,
            confidence=0.0,
            receipt_type=receipt_type,
        )

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> ExtractionResult:
        """Rebuild a result from a stored, already-parsed receipt."""
        return cls(
            receipt_id=receipt.id,
            method=ParsingMethod(receipt.parsing_method or ParsingMethod.FILTERED),
            confidence=receipt.parsing_confidence or 0.0,
            merchant=receipt.merchant,
            amount=receipt.amount,
            currency=receipt.currency or "USD",
            cadence=Cadence(receipt.cadence) if receipt.cadence else None,
            next_charge_date=receipt.next_charge_date,
            receipt_type=ReceiptType(receipt.receipt_type) if receipt.receipt_type else None,
        )

    @classmethod
    def from_regex(cls, receipt_id: str, parsed: RegexExtraction) -> ExtractionResult:
        if not parsed.is_usable:
            return cls.filtered(receipt_id, parsed.receipt_type)
        return cls(
            receipt_id=receipt_id,
            method=ParsingMethod.REGEX_FALLBACK,
            confidence=parsed.confidence,
            merchant=parsed.merchant,
            amount=parsed.amount,
            currency=parsed.currency,
            cadence=Cadence(parsed.billing_cycle)
            if parsed.billing_cycle in ("monthly", "yearly")
            else None,
            next_charge_date=parsed.next_charge_date,
            receipt_type=parsed.receipt_type,
        )


@dataclass
class RouterSummary:
    ai: int = 0
    regex_fallback: int = 0
    filtered: int = 0
    by_provider: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_results(cls, results: list[ExtractionResult]) -> RouterSummary:
        summary = cls()
        for result in results:
            if result.method == ParsingMethod.AI:
                summary.ai += 1
            elif result.method == ParsingMethod.REGEX_FALLBACK:
                summary.regex_fallback += 1
            else:
                summary.filtered += 1
            if result.provider:
                summary.by_provider[result.provider] = (
                    summary.by_provider.get(result.provider, 0) + 1
                )
        return summary


# ---------------------------------------------------------------------------
# Candidate engine (from candidate_engine.py)
# ---------------------------------------------------------------------------


@dataclass
class ReconcileSummary:
    created: int = 0
    updated: int = 0
    linked_existing: int = 0
    skipped: int = 0
    errors: int = 0

    def merge(self, other: ReconcileSummary) -> None:
        self.created += other.created
        self.updated += other.updated
        self.linked_existing += other.linked_existing
        self.skipped += other.skipped
        self.errors += other.errors

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Governor (from governor.py)
# ---------------------------------------------------------------------------


@dataclass
class GovernorDecision:
    """Outcome of one governor evaluation."""

    halted: bool
    source: str = "none"  # "env" | "database" | "none"
    reason: str | None = None
    triggered: bool = False  # safe mode was switched on by this evaluation
    queue_size: int = 0
    unchanged_streak: int = 0

    @classmethod
    def proceed(cls, queue_size: int, unchanged_streak: int) -> GovernorDecision:
        return cls(halted=False, queue_size=queue_size, unchanged_streak=unchanged_streak)
