"""
Anthropic Messages API provider.

Plain HTTPS via requests; no SDK. Non-2xx responses and transport failures
become ProviderError so the router can decide whether to retry.
"""

from __future__ import annotations

import os
from typing import Any

import requests

from subwatch.config import LLM_TIMEOUT_SECONDS
from subwatch.infrastructure.retry import ProviderError, ProviderResponseError
from subwatch.infrastructure.settings import (
    ANTHROPIC_API_URL,
    ANTHROPIC_API_VERSION,
    ANTHROPIC_MAX_TOKENS,
    ANTHROPIC_MODEL,
    PROVIDER_TEMPERATURE,
)
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter

logger = get_logger(__name__)


class AnthropicProvider:
    """Provider A: one API key, one rate-limit budget."""

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str = ANTHROPIC_MODEL,
        max_tokens: int = ANTHROPIC_MAX_TOKENS,
        timeout: float = LLM_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        if not api_key:
            raise ValueError("Anthropic API key is required")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls) -> AnthropicProvider | None:
        """Build from ANTHROPIC_API_KEY, or None when the key is not set."""
        api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
        return cls(api_key) if api_key else None

    def _payload(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": PROVIDER_TEMPERATURE,
            "messages": [{"role": "user", "content": prompt}],
        }

    def complete(self, prompt: str) -> str:
        """
        Send one prompt and return the first text block.

        Raises:
            ProviderError: On HTTP errors (with status) or transport failures (no status)
            ProviderResponseError: On a 2xx response without a text block
        """
        try:
            response = self.session.post(
                ANTHROPIC_API_URL,
                headers={
                    "Content-Type": "application/json",
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_API_VERSION,
                },
                json=self._payload(prompt),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            counter("llm.anthropic.timeout")
            raise ProviderError(f"Anthropic request timed out: {e}", provider=self.name) from e
        except requests.exceptions.RequestException as e:
            counter("llm.anthropic.network_error")
            raise ProviderError(f"Anthropic request failed: {e}", provider=self.name) from e

        if response.status_code != 200:
            counter(f"llm.anthropic.http_{response.status_code}")
            logger.warning("Anthropic API error: status=%d", response.status_code)
            raise ProviderError(
                f"Anthropic API returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                provider=self.name,
            )

        try:
            return response.json()["content"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderResponseError(f"Unexpected Anthropic response shape: {e}") from e
