"""
Deterministic receipt parser used when AI extraction fails or is unsure.

Recovers merchant, amount, billing cycle, next charge date, and receipt type
with regular expressions only. An email must carry explicit subscription
language before any field is extracted.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

from subwatch.detection.filter_data import GENERIC_SENDER_LABELS
from subwatch.detection.merchants import (
    MerchantDirectory,
    extract_display_name,
    get_merchant_directory,
)
from subwatch.detection.models import ReceiptType
from subwatch.detection.types import MerchantMatch, RegexExtraction
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter
from subwatch.utils.redaction import redact_subject

logger = get_logger(__name__)


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# ---------------------------------------------------------------------------
# Subscription gate
# ---------------------------------------------------------------------------

EXCLUDE_PATTERNS = _compile(
    r"start\s+(?:your\s+)?(?:free\s+)?trial",
    r"free\s+trial",
    r"trial\s+period",
    r"welcome\s+to",
    r"getting\s+started",
    r"confirm\s+(?:your\s+)?(?:email|account)",
    r"verify\s+(?:your\s+)?(?:email|account)",
    r"new\s+account",
    r"account\s+created",
    r"sign[\s-]?up\s+confirmation",
    r"promotional",
    r"marketing",
    r"newsletter",
)

ONE_TIME_PURCHASE_PATTERNS = _compile(
    r"\bone[\s-]?time\b",
    r"\bsingle\s+payment",
    r"\bthank\s+you\s+for\s+your\s+order",
    r"\border\s+confirmation",
    r"\bpurchase\s+confirmation",
    r"\byour\s+order\s+#",
    r"\bhas\s+been\s+shipped",
    r"\bdelivery\s+confirmation",
)

SUBSCRIPTION_PATTERNS = _compile(
    r"\bsubscription\b",
    r"\brecurring\b",
    r"\bmembership\b",
    r"\bauto[\s-]?renew",
    r"\brenew(?:al|ing|ed|s)\b",
    r"\bbilling\s+cycle",
    r"\bmonthly\s+(?:subscription|membership|plan|billing)",
    r"\byearly\s+(?:subscription|membership|plan|billing)",
    r"\bannual\s+(?:subscription|membership|plan|billing)",
    r"\bnext\s+(?:payment|charge|billing)\s+date",
    r"\bupcoming\s+(?:payment|charge|renewal)",
    r"\bsubscription\s+confirmation",
)

# ---------------------------------------------------------------------------
# Receipt type, checked in this order
# ---------------------------------------------------------------------------

RECEIPT_TYPE_PATTERNS: tuple[tuple[ReceiptType, tuple[re.Pattern[str], ...]], ...] = (
    (
        ReceiptType.CANCELLATION,
        _compile(
            r"subscription\s+(?:has\s+been\s+)?cancel(?:led|lation)",
            r"(?:we've|we\s+have)\s+cancel(?:led|ed)\s+your\s+subscription",
            r"your\s+subscription\s+(?:will\s+)?end",
            r"subscription\s+(?:has\s+)?ended",
            r"final\s+(?:payment|charge|bill)",
            r"(?:will\s+)?no\s+longer\s+be\s+charged",
            r"(?:you\s+)?won't\s+be\s+charged",
            r"membership\s+(?:has\s+been\s+)?cancel(?:led|lation)",
            r"cancel(?:led|lation)\s+confirmation",
            r"we're\s+sorry\s+to\s+see\s+you\s+go",
            r"subscription\s+termination",
        ),
    ),
    (
        ReceiptType.PAYMENT_FAILED,
        _compile(
            r"payment\s+(?:method\s+)?(?:failed|declined|unsuccessful)",
            r"unable\s+to\s+(?:process\s+)?payment",
            r"payment\s+(?:could\s+)?not\s+(?:be\s+)?processed",
            r"update\s+(?:your\s+)?payment\s+(?:method|information)",
            r"billing\s+(?:problem|issue|error)",
            r"action\s+required.+payment",
        ),
    ),
    (
        ReceiptType.TRIAL_STARTED,
        _compile(
            r"(?:free\s+)?trial\s+(?:has\s+)?started",
            r"welcome\s+to\s+(?:your\s+)?(?:free\s+)?trial",
            r"(?:you've|you\s+have)\s+started\s+(?:a\s+)?(?:free\s+)?trial",
            r"trial\s+period\s+(?:has\s+)?begun",
            r"enjoy\s+your\s+(?:free\s+)?trial",
        ),
    ),
    (
        ReceiptType.TRIAL_ENDING,
        _compile(
            r"(?:free\s+)?trial\s+(?:is\s+)?ending",
            r"(?:free\s+)?trial\s+(?:will\s+)?end",
            r"(?:free\s+)?trial\s+expires?",
            r"trial\s+period\s+(?:is\s+)?(?:almost\s+)?over",
            r"(?:you'll|you\s+will)\s+be\s+charged.+trial",
        ),
    ),
    (
        ReceiptType.PRICE_CHANGE,
        _compile(
            r"price\s+(?:increase|change|update)",
            r"new\s+(?:pricing|price|rate)",
            r"(?:your\s+)?subscription\s+(?:price|cost)\s+(?:is\s+)?changing",
            r"rate\s+change",
            r"pricing\s+update",
        ),
    ),
    (
        ReceiptType.NEW_SUBSCRIPTION,
        _compile(
            r"welcome\s+to",
            r"thank\s+you\s+for\s+(?:subscribing|joining)",
            r"(?:you've|you\s+have)\s+subscribed",
            r"subscription\s+(?:has\s+been\s+)?(?:activated|confirmed)",
            r"getting\s+started",
            r"first\s+(?:payment|charge)",
            r"membership\s+(?:has\s+been\s+)?activated",
        ),
    ),
    (
        ReceiptType.RENEWAL,
        _compile(
            r"subscription\s+(?:has\s+been\s+)?renewed",
            r"renewal\s+(?:confirmation|receipt)",
            r"recurring\s+(?:payment|charge)",
            r"(?:monthly|annual|yearly)\s+(?:payment|charge)",
            r"payment\s+(?:confirmation|received)",
            r"thank\s+you\s+for\s+your\s+payment",
            r"receipt\s+for\s+(?:your\s+)?subscription",
            r"billing\s+confirmation",
        ),
    ),
)

# ---------------------------------------------------------------------------
# Field patterns
# ---------------------------------------------------------------------------

_NUMBER = r"(\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+(?:[.,]\d{2})?)"

CURRENCY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("USD", re.compile(r"\$\s*" + _NUMBER)),
    ("GBP", re.compile(r"£\s*" + _NUMBER)),
    ("EUR", re.compile(r"€\s*" + _NUMBER)),
    ("USD", re.compile(_NUMBER + r"\s*USD", re.IGNORECASE)),
    ("GBP", re.compile(_NUMBER + r"\s*GBP", re.IGNORECASE)),
    ("EUR", re.compile(_NUMBER + r"\s*EUR", re.IGNORECASE)),
)

LABELLED_AMOUNT_PATTERN = re.compile(
    r"(?:total|amount|charged|paid)[\s:]*\$?\s*" + _NUMBER, re.IGNORECASE
)

MAX_SUBSCRIPTION_AMOUNT = 10_000

BILLING_CYCLE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("monthly", re.compile(r"monthly|per month|/month|/mo\b", re.IGNORECASE)),
    ("yearly", re.compile(r"yearly|annually|per year|/year|/yr\b", re.IGNORECASE)),
    ("quarterly", re.compile(r"quarterly|3 months", re.IGNORECASE)),
    ("weekly", re.compile(r"weekly|per week|/week", re.IGNORECASE)),
)
IMPLIED_MONTHLY_PATTERN = re.compile(r"subscription|recurring", re.IGNORECASE)

_DATE = r"([A-Za-z]+\s+\d{1,2},?\s+\d{4})"
NEXT_CHARGE_PATTERNS = _compile(
    r"next\s+(?:charge|payment|billing)\s+(?:on|date)[\s:]*" + _DATE,
    r"renews?\s+on[\s:]*" + _DATE,
    r"(?:due|charged)\s+on[\s:]*" + _DATE,
)
ISO_DATE_PATTERN = re.compile(r"(\d{4}-\d{2}-\d{2})")
_DATE_FORMATS = ("%B %d, %Y", "%B %d %Y", "%b %d, %Y", "%b %d %Y")

SENDER_DOMAIN_LABEL = re.compile(r"@([a-zA-Z0-9-]+)\.")
SUBJECT_PREFIX = re.compile(r"^\s*(?:(?:re|fwd?)\s*:\s*)+", re.IGNORECASE)
SUBJECT_MERCHANT = re.compile(
    r"(?:your|from)\s+([A-Z][a-zA-Z0-9\s]+?)(?:\s+(?:receipt|invoice|payment|subscription))",
    re.IGNORECASE,
)


def is_subscription_receipt(text: str, subject: str) -> bool:
    """
    Strict subscription gate.

    Rejects marketing, trials, sign-ups, and one-time purchases, then
    requires explicit subscription language.
    """

    def matches(patterns: tuple[re.Pattern[str], ...]) -> bool:
        return any(p.search(text) or p.search(subject) for p in patterns)

    if matches(EXCLUDE_PATTERNS):
        return False
    if matches(ONE_TIME_PURCHASE_PATTERNS):
        return False
    return matches(SUBSCRIPTION_PATTERNS)


def classify_receipt_type(text: str, subject: str) -> ReceiptType:
    for receipt_type, patterns in RECEIPT_TYPE_PATTERNS:
        if any(p.search(text) or p.search(subject) for p in patterns):
            return receipt_type
    return ReceiptType.UNKNOWN


def _parse_number(raw: str) -> float:
    # "9,99" is a decimal comma; "1,299.00" uses thousands separators
    if re.fullmatch(r"\d+,\d{2}", raw):
        return float(raw.replace(",", "."))
    return float(raw.replace(",", ""))


def extract_amount(text: str) -> tuple[float | None, str]:
    """First plausible amount and its currency code (USD when unknown)."""
    for code, pattern in CURRENCY_PATTERNS:
        match = pattern.search(text)
        if match:
            amount = _parse_number(match.group(1))
            if 0 < amount < MAX_SUBSCRIPTION_AMOUNT:
                return amount, code

    match = LABELLED_AMOUNT_PATTERN.search(text)
    if match:
        amount = _parse_number(match.group(1))
        if 0 < amount < MAX_SUBSCRIPTION_AMOUNT:
            return amount, "USD"

    return None, "USD"


def extract_billing_cycle(text: str) -> str | None:
    for cycle, pattern in BILLING_CYCLE_PATTERNS:
        if pattern.search(text):
            return cycle
    if IMPLIED_MONTHLY_PATTERN.search(text):
        return "monthly"
    return None


def _parse_date(value: str) -> datetime | None:
    cleaned = " ".join(value.split())
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return None


def extract_next_charge_date(text: str) -> datetime | None:
    for pattern in NEXT_CHARGE_PATTERNS:
        match = pattern.search(text)
        if match:
            parsed = _parse_date(match.group(1))
            if parsed:
                return parsed

    match = ISO_DATE_PATTERN.search(text)
    if match:
        try:
            return datetime.fromisoformat(match.group(1)).replace(tzinfo=UTC)
        except ValueError:
            logger.debug("Ignoring invalid ISO date %s", match.group(1))
    return None


def calculate_confidence(
    merchant_confidence: float,
    has_amount: bool,
    has_currency: bool,
    has_cycle: bool,
    has_next_charge: bool,
) -> float:
    score = 0.4 * merchant_confidence
    if has_amount:
        score += 0.3
    if has_currency:
        score += 0.1
    if has_cycle:
        score += 0.1
    if has_next_charge:
        score += 0.1
    return round(min(score, 1.0), 4)


class RegexExtractor:
    """Regex-only receipt parser; known merchant names come from the directory."""

    def __init__(self, directory: MerchantDirectory | None = None):
        self.directory = directory or get_merchant_directory()

    def extract_merchant(self, text: str, sender: str, subject: str) -> MerchantMatch:
        """
        Merchant name with a confidence reflecting where it came from.

        Order: known pattern (0.95), sender display name (0.8), sender domain
        label (0.7), subject line (0.6), any domain label (0.4).
        """
        known = self.directory.match_known_merchant(text, sender)
        if known:
            return MerchantMatch(known, 0.95, "known")

        display_name = extract_display_name(sender)
        if display_name and display_name.lower() not in GENERIC_SENDER_LABELS:
            return MerchantMatch(display_name, 0.8, "display_name")

        domain_match = SENDER_DOMAIN_LABEL.search(sender or "")
        label = domain_match.group(1) if domain_match else None
        if label and label.lower() not in GENERIC_SENDER_LABELS:
            return MerchantMatch(label.capitalize(), 0.7, "domain")

        subject_match = SUBJECT_MERCHANT.search(SUBJECT_PREFIX.sub("", subject or ""))
        if subject_match:
            name = subject_match.group(1).strip()
            if 2 < len(name) < 30:
                return MerchantMatch(name, 0.6, "subject")

        if label:
            return MerchantMatch(label.capitalize(), 0.4, "raw_domain")

        return MerchantMatch(None, 0.0)

    def parse(self, sender: str, subject: str, body: str) -> RegexExtraction:
        """
        Parse one email.

        Returns:
            RegexExtraction; is_subscription=False (and no fields) when the
            email fails the subscription gate
        """
        subject = subject or ""
        text = f"{subject}\n{body or ''}".lower()

        if not is_subscription_receipt(text, subject.lower()):
            counter("detection.regex.not_subscription")
            logger.debug("Regex gate rejected %s", redact_subject(subject))
            return RegexExtraction(is_subscription=False)

        receipt_type = classify_receipt_type(text, subject)
        merchant = self.extract_merchant(text, sender, subject)
        amount, currency = extract_amount(text)
        billing_cycle = extract_billing_cycle(text)
        next_charge = extract_next_charge_date(text)

        confidence = calculate_confidence(
            merchant_confidence=merchant.confidence if merchant.name else 0.0,
            has_amount=amount is not None,
            has_currency=amount is not None,
            has_cycle=billing_cycle is not None,
            has_next_charge=next_charge is not None,
        )

        return RegexExtraction(
            is_subscription=True,
            merchant=merchant.name,
            merchant_confidence=merchant.confidence,
            amount=amount,
            currency=currency,
            billing_cycle=billing_cycle,
            next_charge_date=next_charge,
            receipt_type=receipt_type,
            confidence=confidence,
        )
