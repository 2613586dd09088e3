"""
SubWatch detection module - subscription receipt detection.

Stage classes (SignalExtractor, ExtractionRouter, CandidateEngine, Governor)
are imported from their own modules; this package exports the shared models,
result types, and repositories.
"""

from subwatch.detection.errors import (
    DetectionError,
    GovernanceConflictError,
    ReceiptNotFoundError,
)
from subwatch.detection.models import (
    Cadence,
    Candidate,
    CandidateStatus,
    EmailType,
    ParsingMethod,
    PipelineGovernance,
    PriceHistory,
    RawEmail,
    Receipt,
    ReceiptType,
    Subscription,
)
from subwatch.detection.repository import (
    CandidateRepository,
    GovernanceRepository,
    PriceHistoryRepository,
    ReceiptRepository,
    SubscriptionRepository,
)
from subwatch.detection.types import (
    ExtractionResult,
    GovernorDecision,
    PrefilterSummary,
    ReconcileSummary,
    RouterSummary,
    SignalClassification,
)

__all__ = [
    # Models
    "Cadence",
    "Candidate",
    "CandidateStatus",
    "EmailType",
    "ParsingMethod",
    "PipelineGovernance",
    "PriceHistory",
    "RawEmail",
    "Receipt",
    "ReceiptType",
    "Subscription",
    # Result types
    "ExtractionResult",
    "GovernorDecision",
    "PrefilterSummary",
    "ReconcileSummary",
    "RouterSummary",
    "SignalClassification",
    # Repositories
    "CandidateRepository",
    "GovernanceRepository",
    "PriceHistoryRepository",
    "ReceiptRepository",
    "SubscriptionRepository",
    # Errors
    "DetectionError",
    "GovernanceConflictError",
    "ReceiptNotFoundError",
]
