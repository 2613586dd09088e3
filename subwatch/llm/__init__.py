"""AI extraction providers and the shared prompt/response contract."""

from __future__ import annotations

import os

from subwatch.llm.anthropic import AnthropicProvider
from subwatch.llm.base import ExtractionProvider
from subwatch.llm.gemini import GeminiProvider
from subwatch.observability.logging import get_logger

logger = get_logger(__name__)

__all__ = [
    "AnthropicProvider",
    "ExtractionProvider",
    "GeminiProvider",
    "build_providers",
    "use_llm",
]


def use_llm() -> bool:
    """Check the LLM feature flag at call time (not import time).

    Reads the env var fresh so a .env loaded after import still applies.
    """
    return os.getenv("SUBWATCH_USE_LLM", "true").lower() == "true"


def build_providers() -> list[ExtractionProvider]:
    """
    Providers configured in the environment, in lane order.

    Returns an empty list when SUBWATCH_USE_LLM is off or no credentials are
    set; the router then sends every receipt to the regex fallback.
    """
    if not use_llm():
        logger.info("SUBWATCH_USE_LLM disabled, extraction will use regex only")
        return []

    providers: list[ExtractionProvider] = []
    for factory in (AnthropicProvider.from_env, GeminiProvider.from_env):
        provider = factory()
        if provider is not None:
            providers.append(provider)

    if not providers:
        logger.warning("No AI provider credentials configured, extraction will use regex only")
    return providers
