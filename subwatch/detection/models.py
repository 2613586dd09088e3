"""
Domain models for subscription detection.

Receipts are inbound emails; candidates are proposed subscriptions awaiting a
user decision; subscriptions and price history are confirmed recurring
charges; PipelineGovernance is the singleton safe-mode record.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def parse_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class ParsingMethod(str, Enum):
    """How a receipt's fields were produced."""

    AI = "ai"
    REGEX_FALLBACK = "regex_fallback"
    FILTERED = "filtered"


class EmailType(str, Enum):
    """Pre-filter classification of an inbound email."""

    SUBSCRIPTION_RECEIPT = "subscription_receipt"
    ONE_TIME_PURCHASE = "one_time_purchase"
    PAYMENT_NOTIFICATION = "payment_notification"
    TRIAL_NOTIFICATION = "trial_notification"
    CANCELLATION = "cancellation"
    MARKETING = "marketing"
    NEWSLETTER = "newsletter"
    NOTIFICATION = "notification"
    UNKNOWN = "unknown"


class ReceiptType(str, Enum):
    """Lifecycle event a subscription receipt describes."""

    NEW_SUBSCRIPTION = "new_subscription"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    PRICE_CHANGE = "price_change"
    TRIAL_STARTED = "trial_started"
    TRIAL_ENDING = "trial_ending"
    PAYMENT_FAILED = "payment_failed"
    UNKNOWN = "unknown"


# Receipt types that never produce a new candidate
NON_CANDIDATE_RECEIPT_TYPES: frozenset[str] = frozenset(
    {
        ReceiptType.CANCELLATION.value,
        ReceiptType.TRIAL_STARTED.value,
        ReceiptType.TRIAL_ENDING.value,
        ReceiptType.PAYMENT_FAILED.value,
    }
)


class Cadence(str, Enum):
    """Billing frequency carried on extraction results and candidates."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


CADENCE_DAYS: dict[str, int] = {"weekly": 7, "monthly": 30, "yearly": 365}


class CandidateStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"


class RawEmail(BaseModel):
    """One record yielded by a mailbox connector."""

    id: str
    sender: str = ""
    subject: str = ""
    received_at: datetime = Field(default_factory=utc_now)
    body: str = ""


class Receipt(BaseModel):
    """An inbound email stored for subscription detection."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    user_id: str
    message_id: str
    sender: str = ""
    subject: str = ""
    body: str = ""
    received_at: datetime = Field(default_factory=utc_now)

    parsed: bool = False
    parsing_method: ParsingMethod | None = None
    parsing_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    email_type: EmailType | None = None
    receipt_type: ReceiptType | None = None

    merchant: str | None = None
    amount: float | None = None
    currency: str | None = None
    cadence: Cadence | None = None
    next_charge_date: datetime | None = None

    candidate_id: str | None = None
    subscription_id: str | None = None
    reconciled_at: datetime | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def has_extracted_fields(self) -> bool:
        return bool(self.merchant) and self.amount is not None

    @property
    def is_settled(self) -> bool:
        """Parsed with merchant and amount; later passes leave it untouched."""
        return self.parsed and self.has_extracted_fields

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "message_id": self.message_id,
            "sender": self.sender,
            "subject": self.subject,
            "body": self.body,
            "received_at": format_dt(self.received_at),
            "parsed": int(self.parsed),
            "parsing_method": _enum_value(self.parsing_method),
            "parsing_confidence": self.parsing_confidence,
            "email_type": _enum_value(self.email_type),
            "receipt_type": _enum_value(self.receipt_type),
            "merchant": self.merchant,
            "amount": self.amount,
            "currency": self.currency,
            "cadence": _enum_value(self.cadence),
            "next_charge_date": format_dt(self.next_charge_date),
            "candidate_id": self.candidate_id,
            "subscription_id": self.subscription_id,
            "reconciled_at": format_dt(self.reconciled_at),
            "created_at": format_dt(self.created_at),
            "updated_at": format_dt(self.updated_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Receipt:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            message_id=row["message_id"],
            sender=row.get("sender") or "",
            subject=row.get("subject") or "",
            body=row.get("body") or "",
            received_at=parse_dt(row.get("received_at")) or utc_now(),
            parsed=bool(row.get("parsed")),
            parsing_method=row.get("parsing_method"),
            parsing_confidence=row.get("parsing_confidence"),
            email_type=row.get("email_type"),
            receipt_type=row.get("receipt_type"),
            merchant=row.get("merchant"),
            amount=row.get("amount"),
            currency=row.get("currency"),
            cadence=row.get("cadence"),
            next_charge_date=parse_dt(row.get("next_charge_date")),
            candidate_id=row.get("candidate_id"),
            subscription_id=row.get("subscription_id"),
            reconciled_at=parse_dt(row.get("reconciled_at")),
            created_at=parse_dt(row.get("created_at")) or utc_now(),
            updated_at=parse_dt(row.get("updated_at")) or utc_now(),
        )


class Candidate(BaseModel):
    """A proposed recurring charge awaiting user action."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    user_id: str
    source: str = "email"
    name: str
    merchant_key: str
    amount: float
    currency: str = "USD"
    cadence: Cadence = Cadence.MONTHLY
    confidence: float = Field(..., ge=0.0, le=1.0)
    status: CandidateStatus = CandidateStatus.PENDING
    email_receipt_id: str | None = None
    proposed_next_billing: datetime | None = None
    detection_reason: str | None = None
    raw_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("candidate name cannot be empty")
        return v.strip()

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "source": self.source,
            "name": self.name,
            "merchant_key": self.merchant_key,
            "amount": self.amount,
            "currency": self.currency,
            "cadence": _enum_value(self.cadence),
            "confidence": self.confidence,
            "status": _enum_value(self.status),
            "email_receipt_id": self.email_receipt_id,
            "proposed_next_billing": format_dt(self.proposed_next_billing),
            "detection_reason": self.detection_reason,
            "raw_data": json.dumps(self.raw_data),
            "created_at": format_dt(self.created_at),
            "updated_at": format_dt(self.updated_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Candidate:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            source=row.get("source") or "email",
            name=row["name"],
            merchant_key=row["merchant_key"],
            amount=row["amount"],
            currency=row.get("currency") or "USD",
            cadence=row.get("cadence") or Cadence.MONTHLY,
            confidence=row["confidence"],
            status=row.get("status") or CandidateStatus.PENDING,
            email_receipt_id=row.get("email_receipt_id"),
            proposed_next_billing=parse_dt(row.get("proposed_next_billing")),
            detection_reason=row.get("detection_reason"),
            raw_data=json.loads(row["raw_data"]) if row.get("raw_data") else {},
            created_at=parse_dt(row.get("created_at")) or utc_now(),
            updated_at=parse_dt(row.get("updated_at")) or utc_now(),
        )


class Subscription(BaseModel):
    """A confirmed recurring charge."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    user_id: str
    name: str
    merchant_key: str
    cost: float
    currency: str = "USD"
    cadence: Cadence = Cadence.MONTHLY
    is_active: bool = True
    last_charge_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "merchant_key": self.merchant_key,
            "cost": self.cost,
            "currency": self.currency,
            "cadence": _enum_value(self.cadence),
            "is_active": int(self.is_active),
            "last_charge_at": format_dt(self.last_charge_at),
            "created_at": format_dt(self.created_at),
            "updated_at": format_dt(self.updated_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Subscription:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            merchant_key=row["merchant_key"],
            cost=row["cost"],
            currency=row.get("currency") or "USD",
            cadence=row.get("cadence") or Cadence.MONTHLY,
            is_active=bool(row.get("is_active", 1)),
            last_charge_at=parse_dt(row.get("last_charge_at")),
            created_at=parse_dt(row.get("created_at")) or utc_now(),
            updated_at=parse_dt(row.get("updated_at")) or utc_now(),
        )


class PriceHistory(BaseModel):
    """Immutable record of a detected price change."""

    model_config = ConfigDict(frozen=True)

    id: str
    subscription_id: str
    user_id: str
    old_price: float
    new_price: float
    currency: str = "USD"
    percent_change: float
    detected_at: datetime = Field(default_factory=utc_now)

    def to_db_dict(self) -> dict[str, Any]:
        data = self.model_dump()
        data["detected_at"] = format_dt(self.detected_at)
        return data

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> PriceHistory:
        return cls(**{**row, "detected_at": parse_dt(row.get("detected_at")) or utc_now()})


class PipelineGovernance(BaseModel):
    """
    Singleton safe-mode record, versioned for compare-and-set updates.

    to_state_dict() gives the persisted governance shape used by external
    tooling: safeModeEnabled, reason, enabledAt, lastQueueSize, unchangedStreak.
    """

    safe_mode_enabled: bool = False
    reason: str | None = None
    message: str | None = None
    enabled_at: datetime | None = None
    last_queue_size: int = 0
    unchanged_streak: int = 0
    last_checked_at: datetime | None = None
    version: int = 0

    def to_state_dict(self) -> dict[str, Any]:
        return {
            "safeModeEnabled": self.safe_mode_enabled,
            "reason": self.reason,
            "enabledAt": format_dt(self.enabled_at),
            "lastQueueSize": self.last_queue_size,
            "unchangedStreak": self.unchanged_streak,
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> PipelineGovernance:
        return cls(
            safe_mode_enabled=bool(row.get("safe_mode_enabled")),
            reason=row.get("reason"),
            message=row.get("message"),
            enabled_at=parse_dt(row.get("enabled_at")),
            last_queue_size=row.get("last_queue_size") or 0,
            unchanged_streak=row.get("unchanged_streak") or 0,
            last_checked_at=parse_dt(row.get("last_checked_at")),
            version=row.get("version") or 0,
        )
