"""
Tests for the Anthropic and Gemini providers.

Both are exercised against fakes: a mocked requests session for Anthropic
and a mocked GenerativeModel for Gemini. No network calls.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests
from google.api_core import exceptions as google_exceptions

from subwatch.infrastructure.retry import ProviderError, ProviderResponseError
from subwatch.llm import build_providers
from subwatch.llm.anthropic import AnthropicProvider
from subwatch.llm.gemini import GeminiProvider


def _response(status_code: int, payload=None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = payload
    return response


class TestAnthropicProvider:
    def _provider(self, session: MagicMock) -> AnthropicProvider:
        return AnthropicProvider("test-key", session=session)

    def test_returns_first_text_block(self):
        session = MagicMock()
        session.post.return_value = _response(200, {"content": [{"type": "text", "text": "{}"}]})

        assert self._provider(session).complete("prompt") == "{}"

        _, kwargs = session.post.call_args
        assert kwargs["headers"]["x-api-key"] == "test-key"
        assert kwargs["json"]["messages"] == [{"role": "user", "content": "prompt"}]

    @pytest.mark.parametrize("status", [400, 429, 500, 529])
    def test_http_error_carries_status(self, status):
        session = MagicMock()
        session.post.return_value = _response(status, text="error")

        with pytest.raises(ProviderError) as exc_info:
            self._provider(session).complete("prompt")

        assert exc_info.value.status_code == status
        assert exc_info.value.provider == "anthropic"

    def test_timeout_has_no_status(self):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(ProviderError) as exc_info:
            self._provider(session).complete("prompt")

        assert exc_info.value.status_code is None

    def test_connection_error_has_no_status(self):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(ProviderError) as exc_info:
            self._provider(session).complete("prompt")

        assert exc_info.value.status_code is None

    def test_unexpected_shape(self):
        session = MagicMock()
        session.post.return_value = _response(200, {"content": []})

        with pytest.raises(ProviderResponseError):
            self._provider(session).complete("prompt")

    def test_requires_key(self):
        with pytest.raises(ValueError):
            AnthropicProvider("")

    def test_from_env(self, monkeypatch):
        assert AnthropicProvider.from_env() is None
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        provider = AnthropicProvider.from_env()
        assert provider is not None
        assert provider.api_key == "sk-test"


class TestGeminiProvider:
    def test_returns_text(self):
        model = MagicMock()
        model.generate_content.return_value = MagicMock(text='{"isSubscription": false}')

        assert GeminiProvider(model=model).complete("prompt") == '{"isSubscription": false}'

        _, kwargs = model.generate_content.call_args
        assert kwargs["generation_config"]["response_mime_type"] == "application/json"

    @pytest.mark.parametrize(
        ("exc", "status"),
        [
            (google_exceptions.ResourceExhausted("quota"), 429),
            (google_exceptions.ServiceUnavailable("down"), 503),
            (google_exceptions.InternalServerError("boom"), 500),
            (google_exceptions.DeadlineExceeded("slow"), None),
            (google_exceptions.PermissionDenied("nope"), 403),
        ],
    )
    def test_api_errors_map_to_status(self, exc, status):
        model = MagicMock()
        model.generate_content.side_effect = exc

        with pytest.raises(ProviderError) as exc_info:
            GeminiProvider(model=model).complete("prompt")

        assert exc_info.value.status_code == status
        assert exc_info.value.provider == "gemini"

    def test_blocked_response(self):
        class Blocked:
            @property
            def text(self):
                raise ValueError("response was blocked")

        model = MagicMock()
        model.generate_content.return_value = Blocked()

        with pytest.raises(ProviderResponseError):
            GeminiProvider(model=model).complete("prompt")


class TestBuildProviders:
    def test_disabled_by_flag(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("SUBWATCH_USE_LLM", "false")
        assert build_providers() == []

    def test_anthropic_only(self, monkeypatch):
        monkeypatch.setenv("SUBWATCH_USE_LLM", "true")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setattr("subwatch.llm.gemini.GOOGLE_CLOUD_PROJECT", "")

        providers = build_providers()

        assert [p.name for p in providers] == ["anthropic"]

    def test_both_providers_in_lane_order(self, monkeypatch):
        monkeypatch.setenv("SUBWATCH_USE_LLM", "true")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "test-project")

        providers = build_providers()

        assert [p.name for p in providers] == ["anthropic", "gemini"]
