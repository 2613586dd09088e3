"""
Module: filter_data
Purpose: Keyword and pattern constants for the receipt pre-filter.
Dependencies: None (pure data)

Separates filter policy data from the scoring logic in signals.py. Known
merchant domains and merchant name patterns live in data/merchants.yaml.
"""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Weighted receipt keywords, matched as substrings of "subject body" (lowercase)
# ---------------------------------------------------------------------------

HIGH_WEIGHT_KEYWORDS: tuple[str, ...] = (
    "receipt",
    "invoice",
    "payment",
    "subscription",
    "renewal",
    "charged",
    "billing",
    "transaction",
    "purchase",
    "order",
    "confirmation",
    "successfully paid",
    "payment received",
    "auto-renewal",
    "recurring",
    "monthly",
    "annual",
    "yearly",
)

MEDIUM_WEIGHT_KEYWORDS: tuple[str, ...] = (
    "amount",
    "total",
    "price",
    "cost",
    "fee",
    "charge",
    "credit card",
    "debit card",
    "paypal",
    "visa",
    "mastercard",
    "expires",
    "renews",
    "next payment",
    "billing date",
    "subscription id",
    "order number",
    "transaction id",
)

LOW_WEIGHT_KEYWORDS: tuple[str, ...] = (
    "thank you",
    "confirmed",
    "processed",
    "completed",
    "account",
    "member",
    "premium",
    "pro",
    "plus",
    "upgrade",
    "downgrade",
    "cancel",
    "refund",
)

# Marketing / newsletter language; each hit counts once
NEGATIVE_KEYWORDS: tuple[str, ...] = (
    "unsubscribe",
    "newsletter",
    "marketing",
    "promotional",
    "deal",
    "offer",
    "discount",
    "free trial ending",
    "welcome",
    "getting started",
    "tips",
    "update",
    "new features",
    "blog",
    "webinar",
    "survey",
)

KEYWORD_WEIGHTS: tuple[tuple[tuple[str, ...], int], ...] = (
    (HIGH_WEIGHT_KEYWORDS, 3),
    (MEDIUM_WEIGHT_KEYWORDS, 2),
    (LOW_WEIGHT_KEYWORDS, 1),
)

# ---------------------------------------------------------------------------
# Amount patterns (several currencies)
# ---------------------------------------------------------------------------

AMOUNT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\$[\d,]+\.?\d{0,2}"),
    re.compile(r"USD\s*[\d,]+\.?\d{0,2}", re.IGNORECASE),
    re.compile(r"£[\d,]+\.?\d{0,2}"),
    re.compile(r"GBP\s*[\d,]+\.?\d{0,2}", re.IGNORECASE),
    re.compile(r"€[\d,]+\.?\d{0,2}"),
    re.compile(r"EUR\s*[\d,]+\.?\d{0,2}", re.IGNORECASE),
    re.compile(r"¥[\d,]+"),
    re.compile(r"JPY\s*[\d,]+", re.IGNORECASE),
    re.compile(r"total[:\s]+[$£€¥]?[\d,]+\.?\d{0,2}", re.IGNORECASE),
    re.compile(r"amount[:\s]+[$£€¥]?[\d,]+\.?\d{0,2}", re.IGNORECASE),
    re.compile(r"charged[:\s]+[$£€¥]?[\d,]+\.?\d{0,2}", re.IGNORECASE),
    re.compile(r"price[:\s]+[$£€¥]?[\d,]+\.?\d{0,2}", re.IGNORECASE),
)

# ---------------------------------------------------------------------------
# Billing date patterns ("Month D, YYYY" after a billing phrase)
# ---------------------------------------------------------------------------

_MONTH_DAY_YEAR = r"([A-Za-z]+\s+\d{1,2},?\s+\d{4})"

BILLING_DATE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"next\s+(?:charge|payment|billing)[:\s]*" + _MONTH_DAY_YEAR, re.IGNORECASE),
    re.compile(r"renew(?:s|al)?\s+on[:\s]*" + _MONTH_DAY_YEAR, re.IGNORECASE),
    re.compile(r"billing\s+date[:\s]*" + _MONTH_DAY_YEAR, re.IGNORECASE),
    re.compile(r"expires?\s+on[:\s]*" + _MONTH_DAY_YEAR, re.IGNORECASE),
    re.compile(r"valid\s+(?:until|through)[:\s]*" + _MONTH_DAY_YEAR, re.IGNORECASE),
)

TRANSACTION_ID_PATTERN = re.compile(
    r"(?:transaction|order|invoice|receipt)[\s#:]*([A-Z0-9]{6,})", re.IGNORECASE
)

# ---------------------------------------------------------------------------
# Text heuristic score (computed separately for subject and body)
# ---------------------------------------------------------------------------

TEXT_SIGNAL_TERMS: tuple[tuple[str, int], ...] = (
    ("receipt", 5),
    ("invoice", 5),
    ("payment", 4),
    ("subscription", 4),
    ("charged", 3),
    ("renewal", 3),
    ("newsletter", -3),
    ("unsubscribe", -2),
    ("marketing", -2),
)

TEXT_SIGNAL_PATTERNS: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"\$\d+"), 3),
    (re.compile(r"\d+\.\d{2}"), 2),
)

# ---------------------------------------------------------------------------
# Senders
# ---------------------------------------------------------------------------

# Substring match against the full sender address
DEFAULT_PAYMENT_PROCESSORS: tuple[str, ...] = (
    "stripe.com",
    "paypal.com",
    "square.com",
    "paddle.com",
    "chargebee.com",
    "recurly.com",
    "braintree.com",
)

# Mailbox providers and no-reply labels that never name the merchant
GENERIC_SENDER_LABELS: frozenset[str] = frozenset(
    {"gmail", "yahoo", "outlook", "hotmail", "mail", "email", "noreply", "no-reply"}
)
