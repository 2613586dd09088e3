"""
Tests for the deterministic regex fallback.

Run with: pytest tests/unit/test_regex_extractor.py -v
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from subwatch.detection.merchants import MerchantDirectory
from subwatch.detection.models import ReceiptType
from subwatch.detection.regex_extractor import (
    RegexExtractor,
    calculate_confidence,
    classify_receipt_type,
    extract_amount,
    extract_billing_cycle,
    extract_next_charge_date,
    is_subscription_receipt,
)


@pytest.fixture(scope="module")
def extractor():
    return RegexExtractor(MerchantDirectory())


class TestParse:
    def test_full_renewal_receipt(self, extractor):
        result = extractor.parse(
            sender="Netflix <info@mailer.netflix.com>",
            subject="Your Netflix subscription has been renewed",
            body=(
                "Thanks! Your monthly subscription payment of $15.49 was charged. "
                "Next billing date: November 1, 2025."
            ),
        )

        assert result.is_subscription
        assert result.merchant == "Netflix"
        assert result.merchant_confidence == 0.95
        assert result.amount == 15.49
        assert result.currency == "USD"
        assert result.billing_cycle == "monthly"
        assert result.next_charge_date == datetime(2025, 11, 1, tzinfo=UTC)
        assert result.receipt_type == ReceiptType.RENEWAL
        assert result.confidence == pytest.approx(0.98)
        assert result.is_usable

    def test_one_time_order_is_rejected(self, extractor):
        result = extractor.parse(
            sender="orders@shop.example",
            subject="Thank you for your order",
            body="Your order total is $45.00",
        )
        assert not result.is_subscription
        assert result.merchant is None
        assert not result.is_usable

    def test_free_trial_is_rejected(self, extractor):
        result = extractor.parse(
            sender="hello@app.example",
            subject="Start your free trial",
            body="Your subscription starts after the free trial.",
        )
        assert not result.is_subscription

    def test_subscription_without_amount_is_not_usable(self, extractor):
        result = extractor.parse(
            sender="Acme Cloud <billing@acmecloud.io>",
            subject="Your membership",
            body="Your membership subscription is active.",
        )
        assert result.is_subscription
        assert result.merchant == "Acme Cloud"
        assert result.amount is None
        assert not result.is_usable
        # merchant 0.8 * 0.4 + implied monthly cycle 0.1, no currency credit without an amount
        assert result.confidence == pytest.approx(0.42)


def test_subscription_gate_requires_subscription_language():
    assert is_subscription_receipt("your recurring payment went through", "")
    assert not is_subscription_receipt("thanks for paying $10", "")
    assert not is_subscription_receipt("your subscription newsletter", "")


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Your subscription has been cancelled", ReceiptType.CANCELLATION),
        ("Your payment failed, please retry", ReceiptType.PAYMENT_FAILED),
        ("Your free trial has started", ReceiptType.TRIAL_STARTED),
        ("Your trial is ending in 3 days", ReceiptType.TRIAL_ENDING),
        ("Price increase notice", ReceiptType.PRICE_CHANGE),
        ("Thank you for subscribing", ReceiptType.NEW_SUBSCRIPTION),
        ("Payment received, thanks", ReceiptType.RENEWAL),
        ("Hello from the team", ReceiptType.UNKNOWN),
    ],
)
def test_classify_receipt_type(text, expected):
    assert classify_receipt_type(text.lower(), "") == expected


def test_cancellation_wins_over_renewal():
    text = "payment received. your subscription has been cancelled."
    assert classify_receipt_type(text, "") == ReceiptType.CANCELLATION


class TestExtractAmount:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("You paid $15.49 today", (15.49, "USD")),
            ("Total: 1,299.00 USD", (1299.0, "USD")),
            ("€9,99 per month", (9.99, "EUR")),
            ("£4.99 charged", (4.99, "GBP")),
            ("amount 12.00 eur", (12.0, "EUR")),
            ("Total: 7.50", (7.5, "USD")),
        ],
    )
    def test_amounts(self, text, expected):
        assert extract_amount(text) == expected

    def test_zero_amount_is_ignored(self):
        assert extract_amount("Amount: $0.00") == (None, "USD")

    def test_implausibly_large_amount_is_ignored(self):
        assert extract_amount("Charge of $25,000.00") == (None, "USD")

    def test_no_amount(self):
        assert extract_amount("no money mentioned") == (None, "USD")


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("billed monthly", "monthly"),
        ("billed annually", "yearly"),
        ("every 3 months", "quarterly"),
        ("$5 per week", "weekly"),
        ("your subscription", "monthly"),
        ("hello", None),
    ],
)
def test_extract_billing_cycle(text, expected):
    assert extract_billing_cycle(text) == expected


class TestNextChargeDate:
    def test_month_name_date(self):
        assert extract_next_charge_date("renews on March 3, 2026") == datetime(
            2026, 3, 3, tzinfo=UTC
        )

    def test_iso_date(self):
        assert extract_next_charge_date("next invoice 2026-01-15") == datetime(
            2026, 1, 15, tzinfo=UTC
        )

    def test_invalid_iso_date(self):
        assert extract_next_charge_date("ref 2026-13-45") is None

    def test_no_date(self):
        assert extract_next_charge_date("nothing here") is None


class TestExtractMerchant:
    def test_known_merchant(self, extractor):
        match = extractor.extract_merchant("your spotify premium", "no-reply@spotify.com", "")
        assert (match.name, match.confidence, match.source) == ("Spotify", 0.95, "known")

    def test_display_name(self, extractor):
        match = extractor.extract_merchant("", "Acme Cloud <billing@acmecloud.io>", "")
        assert (match.name, match.confidence, match.source) == ("Acme Cloud", 0.8, "display_name")

    def test_generic_display_name_falls_back_to_domain(self, extractor):
        match = extractor.extract_merchant("", "noreply <billing@streamly.com>", "")
        assert (match.name, match.confidence, match.source) == ("Streamly", 0.7, "domain")

    def test_subject_when_sender_is_generic(self, extractor):
        match = extractor.extract_merchant("", "someone@gmail.com", "Fwd: Your Fooflix receipt")
        assert (match.name, match.confidence, match.source) == ("Fooflix", 0.6, "subject")

    def test_generic_domain_as_last_resort(self, extractor):
        match = extractor.extract_merchant("", "someone@gmail.com", "hello")
        assert (match.name, match.confidence, match.source) == ("Gmail", 0.4, "raw_domain")

    def test_nothing_to_go_on(self, extractor):
        match = extractor.extract_merchant("", "", "")
        assert match.name is None
        assert match.confidence == 0.0


def test_calculate_confidence_weights():
    assert calculate_confidence(1.0, True, True, True, True) == pytest.approx(1.0)
    assert calculate_confidence(0.7, True, True, False, False) == pytest.approx(0.68)
    assert calculate_confidence(0.0, False, False, False, False) == 0.0
