"""
Gemini provider on the Vertex AI SDK.

Provider B in the extraction router. Vertex AI exceptions are mapped to
ProviderError status codes so retry policy is shared with the HTTP provider:
ResourceExhausted -> 429, ServiceUnavailable -> 503, InternalServerError ->
500, DeadlineExceeded -> timeout (no status).
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

from subwatch.infrastructure.retry import ProviderError, ProviderResponseError
from subwatch.infrastructure.settings import (
    GEMINI_LOCATION,
    GEMINI_MAX_TOKENS,
    GEMINI_MODEL,
    GOOGLE_CLOUD_PROJECT,
    PROVIDER_TEMPERATURE,
)
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter

logger = get_logger(__name__)


class GeminiInitializationError(RuntimeError):
    """Raised when the Gemini model cannot be initialized."""


@lru_cache(maxsize=1)
def get_gemini_model() -> Any:
    """
    Get or create the shared Vertex AI GenerativeModel (thread-safe via @lru_cache).

    Raises:
        GeminiInitializationError: If GOOGLE_CLOUD_PROJECT is unset or init fails
    """
    # Read env vars fresh (settings may have been imported before dotenv loaded)
    project = os.getenv("GOOGLE_CLOUD_PROJECT") or GOOGLE_CLOUD_PROJECT
    location = os.getenv("GEMINI_LOCATION", "") or GEMINI_LOCATION

    if not project:
        raise GeminiInitializationError("GOOGLE_CLOUD_PROJECT not set")

    try:
        import vertexai
        from vertexai.generative_models import GenerativeModel

        vertexai.init(project=project, location=location)
        model = GenerativeModel(GEMINI_MODEL)
    except Exception as e:
        logger.error("Failed to initialize Gemini model: %s", e)
        raise GeminiInitializationError(f"Failed to initialize Gemini: {e}") from e

    logger.info(
        "Initialized Gemini model (Vertex AI): project=%s, location=%s, model=%s",
        project,
        location,
        GEMINI_MODEL,
    )
    return model


class GeminiProvider:
    """Provider B: Vertex AI project quota, independent of Provider A."""

    name = "gemini"

    def __init__(self, model: Any | None = None, max_output_tokens: int = GEMINI_MAX_TOKENS):
        self._model = model
        self.max_output_tokens = max_output_tokens

    @classmethod
    def from_env(cls) -> GeminiProvider | None:
        """Build when GOOGLE_CLOUD_PROJECT is set; the model itself loads lazily."""
        if not (os.getenv("GOOGLE_CLOUD_PROJECT") or GOOGLE_CLOUD_PROJECT):
            return None
        return cls()

    @property
    def model(self) -> Any:
        if self._model is None:
            self._model = get_gemini_model()
        return self._model

    def complete(self, prompt: str) -> str:
        """
        Send one prompt and return the response text.

        Raises:
            ProviderError: On quota, availability, server, or deadline errors
            ProviderResponseError: When the response carries no text
        """
        from google.api_core.exceptions import (
            DeadlineExceeded,
            GoogleAPICallError,
            InternalServerError,
            ResourceExhausted,
            ServiceUnavailable,
        )

        generation_config = {
            "temperature": PROVIDER_TEMPERATURE,
            "max_output_tokens": self.max_output_tokens,
            "response_mime_type": "application/json",
        }

        try:
            response = self.model.generate_content(prompt, generation_config=generation_config)
        except ResourceExhausted as e:
            counter("llm.gemini.rate_limited")
            raise ProviderError(f"Gemini rate limited: {e}", 429, self.name) from e
        except ServiceUnavailable as e:
            counter("llm.gemini.service_unavailable")
            raise ProviderError(f"Gemini unavailable: {e}", 503, self.name) from e
        except InternalServerError as e:
            counter("llm.gemini.internal_error")
            raise ProviderError(f"Gemini internal error: {e}", 500, self.name) from e
        except DeadlineExceeded as e:
            counter("llm.gemini.timeout")
            raise ProviderError(f"Gemini call timed out: {e}", None, self.name) from e
        except GoogleAPICallError as e:
            counter("llm.gemini.api_error")
            status = int(e.code) if e.code else 400
            raise ProviderError(f"Gemini API error: {e}", status, self.name) from e

        try:
            return response.text
        except (ValueError, AttributeError) as e:
            # Blocked or empty candidates raise ValueError on .text
            raise ProviderResponseError(f"Gemini returned no text: {e}") from e
