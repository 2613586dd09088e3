"""Interface shared by the AI extraction providers."""

from __future__ import annotations

from typing import Protocol


class ExtractionProvider(Protocol):
    """
    One AI backend with its own rate-limit budget.

    complete() sends a prompt and returns the raw response text. Transport
    failures raise ProviderError with the HTTP status when there was one.
    """

    name: str

    def complete(self, prompt: str) -> str: ...
