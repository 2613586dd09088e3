"""
Redaction helpers for logs and prompts.

Provides:
- redact(): Hash sensitive strings for correlation without exposure
- redact_subject(): Partially redact email subjects for debugging
- sanitize_for_prompt(): Neutralize prompt injection patterns in email text
"""

from __future__ import annotations

import re
from hashlib import sha256

INJECTION_PATTERNS = [
    r"ignore\s+(previous|above|all)\s+instructions?",
    r"disregard\s+(previous|above|all)\s+instructions?",
    r"forget\s+(previous|above|all)\s+instructions?",
    r"new\s+instructions?:",
    r"system\s*:",
    r"assistant\s*:",
    r"\[INST\]",
    r"\[/INST\]",
    r"<\|im_start\|>",
    r"<\|im_end\|>",
]
INJECTION_REGEX = re.compile("|".join(INJECTION_PATTERNS), re.IGNORECASE)


def redact(value: str | None) -> str:
    """Return a stable hash representation of a sensitive string."""
    if not value:
        return "hash:missing"
    digest = sha256(value.encode("utf-8")).hexdigest()[:12]
    return f"hash:{digest}"


def redact_subject(subject: str | None, max_length: int = 30) -> str:
    """
    Partially redact an email subject for logging.

    Example:
        "Your Netflix receipt for October 2025" ->
        "Your Netflix receipt for Octob... (h:1a2b3c)"
    """
    if not subject:
        return "(no subject)"

    visible = subject[:max_length] + "..." if len(subject) > max_length else subject
    digest = sha256(subject.encode("utf-8")).hexdigest()[:6]
    return f"{visible} (h:{digest})"


def sanitize_for_prompt(text: str | None, max_length: int | None = None) -> str:
    """
    Replace prompt-injection phrases with a marker and optionally truncate.

    Email bodies are untrusted input embedded verbatim in the provider prompt.
    """
    if not text:
        return ""
    cleaned = INJECTION_REGEX.sub("[removed]", text)
    if max_length is not None:
        cleaned = cleaned[:max_length]
    return cleaned
