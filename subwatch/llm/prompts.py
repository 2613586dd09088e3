"""
Extraction prompt and provider response schema.

Both providers receive the same prompt and must answer with the same JSON
object; anything that does not validate against ProviderExtraction is
treated as an extraction failure and sent to the regex fallback.
"""

from __future__ import annotations

import json
import re
from datetime import UTC, date, datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from subwatch.config import PROMPT_BODY_CHARS
from subwatch.infrastructure.retry import ProviderResponseError
from subwatch.observability.telemetry import counter
from subwatch.utils.redaction import sanitize_for_prompt

EXTRACTION_PROMPT = """You are analyzing an email receipt. Your task is to determine if this represents a RECURRING SUBSCRIPTION or a ONE-TIME PURCHASE.

CONTEXT:
Current Date: {today}

EMAIL CONTENT:
Subject: {subject}
From: {sender}
Body: {body}

TASK:
Analyze the email and determine if it represents a recurring subscription service (monthly/yearly/weekly charges that automatically renew).

WHAT IS A SUBSCRIPTION:
- Recurring payments that automatically renew (monthly, yearly, weekly, etc.)
- Services with words like: "subscription", "recurring", "renewal", "auto-renew", "membership", "plan", "billing cycle"
- Digital services, streaming platforms, SaaS tools, cloud services, memberships
- Any service that charges repeatedly at regular intervals

WHAT IS NOT A SUBSCRIPTION:
- One-time product purchases
- Physical goods orders
- Shipping fees
- Single app/game purchases (unless they mention recurring charges)
- Restaurant/food delivery orders
- Travel bookings

EXTRACT THE FOLLOWING:
1. Merchant/Service name
2. Charge amount
3. Currency (USD, GBP, EUR, INR, etc.)
4. Billing frequency (monthly, yearly, weekly, etc.)
5. Next billing date (if mentioned in the email)

DATE VALIDATION:
- If you find a "next billing date" or "renewal date", include it
- If the next billing date is BEFORE {today}, this subscription may be cancelled, so lower confidence to 60-70%
- If no date found but other subscription indicators exist, still mark as subscription

CONFIDENCE SCORING:
- High confidence (80-95%): Clear subscription language, recurring billing mentioned
- Medium confidence (60-79%): Likely subscription but some ambiguity
- Low confidence (50-59%): Possible subscription but uncertain

BE INCLUSIVE: If it looks like a recurring payment service, mark it as subscription. The user will review all detections.

Respond ONLY with valid JSON (no markdown, no explanation):
{{
  "isSubscription": true or false,
  "merchant": "Company Name" or null,
  "amount": 9.99 or null,
  "currency": "USD" or null,
  "frequency": "monthly" or null,
  "nextBillingDate": "2025-11-15" or null,
  "confidence": 85,
  "reasoning": "Brief explanation"
}}"""

_CODE_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CODE_FENCE_CLOSE = re.compile(r"\s*```$")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class ProviderExtraction(BaseModel):
    """Schema for a provider's extraction answer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_subscription: bool = Field(..., alias="isSubscription", strict=True)
    confidence: float = Field(..., ge=0, le=100, strict=True)
    merchant: str | None = None
    amount: float | None = Field(default=None, ge=0, strict=True)
    currency: str | None = None
    frequency: str | None = None
    next_billing_date: str | None = Field(default=None, alias="nextBillingDate")
    reasoning: str | None = None

    @field_validator("merchant")
    @classmethod
    def blank_merchant_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def parsed_next_billing_date(self) -> datetime | None:
        """nextBillingDate as a UTC datetime, None when missing or unparseable."""
        if not self.next_billing_date:
            return None
        try:
            return datetime.fromisoformat(self.next_billing_date[:10]).replace(tzinfo=UTC)
        except ValueError:
            return None


def build_extraction_prompt(
    subject: str,
    sender: str,
    body: str,
    today: date | None = None,
) -> str:
    """Fill the extraction template; the body is sanitized and truncated."""
    today = today or datetime.now(UTC).date()
    return EXTRACTION_PROMPT.format(
        today=today.isoformat(),
        subject=sanitize_for_prompt(subject, 300),
        sender=sanitize_for_prompt(sender, 200),
        body=sanitize_for_prompt(body, PROMPT_BODY_CHARS),
    )


def parse_provider_response(response_text: str) -> ProviderExtraction:
    """
    Parse and validate a provider's answer.

    Strips markdown fences, takes the outermost {...}, and validates it.

    Raises:
        ProviderResponseError: If the text is not a valid extraction object
    """
    json_text = (response_text or "").strip()
    if json_text.startswith("```"):
        counter("llm.response.code_fence")
        json_text = _CODE_FENCE_CLOSE.sub("", _CODE_FENCE_OPEN.sub("", json_text))

    match = _JSON_OBJECT.search(json_text)
    if not match:
        raise ProviderResponseError("No JSON object in provider response")

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ProviderResponseError(f"Invalid JSON in provider response: {e}") from e

    if not isinstance(data, dict):
        raise ProviderResponseError("Provider response is not a JSON object")

    try:
        return ProviderExtraction.model_validate(data)
    except ValidationError as e:
        raise ProviderResponseError(f"Provider response failed validation: {e}") from e
