"""
Provider error types, the tenacity retry policy for provider calls, and a
per-lane circuit breaker.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from subwatch.config import LLM_BACKOFF_BASE_SECONDS, LLM_BACKOFF_MAX_SECONDS, LLM_MAX_RETRIES
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter, log_event

logger = get_logger(__name__)


class ProviderError(RuntimeError):
    """Transport-level failure from an AI provider.

    status_code is the HTTP status when one was received, None for network
    failures and timeouts.
    """

    def __init__(self, message: str, status_code: int | None = None, provider: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class ProviderResponseError(ValueError):
    """Provider answered, but the payload is not usable. Never retried."""


def is_retryable(exc: BaseException) -> bool:
    """429, 5xx, and transport failures (no status) are transient."""
    if isinstance(exc, ProviderError):
        status = exc.status_code
        if status is None:
            return True
        return bool(status == 429 or 500 <= status < 600)
    return isinstance(exc, (TimeoutError, ConnectionError))


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    status = getattr(exc, "status_code", None)
    counter("provider.retry")
    logger.warning(
        "Provider call failed (attempt %d), retrying in %.1fs: %s",
        retry_state.attempt_number,
        delay,
        exc,
    )
    if status == 429:
        counter("provider.rate_limited")
    log_event(
        "provider.retry_scheduled",
        attempt=retry_state.attempt_number,
        delay=delay,
        status=status,
        error=str(exc),
    )


def provider_retrying(
    max_retries: int = LLM_MAX_RETRIES,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> Retrying:
    """
    Build the retry controller for a single provider call.

    max_retries retries after the first attempt, waiting 1s, 2s, 4s between
    them. Only transient errors are retried; the last error is re-raised.

    Args:
        max_retries: Retries after the initial attempt
        sleep_fn: Injected sleep (tests pass a no-op)
    """
    return Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(
            multiplier=LLM_BACKOFF_BASE_SECONDS,
            min=LLM_BACKOFF_BASE_SECONDS,
            max=LLM_BACKOFF_MAX_SECONDS,
        ),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry,
        sleep=sleep_fn,
        reraise=True,
    )


@dataclass
class CircuitBreaker:
    """Stops calling a provider after fail_max consecutive failures.

    While open, callers skip the provider entirely; after reset_timeout the
    breaker lets one request through (half-open).
    """

    stage: str
    fail_max: int = 5
    reset_timeout: float = 60.0
    clock: Callable[[], float] = time.monotonic
    _failures: int = field(default=0, init=False)
    _state: str = field(default="closed", init=False)
    _opened_at: float = field(default=0.0, init=False)

    @property
    def state(self) -> str:
        return self._state

    def allow_request(self) -> bool:
        if self._state == "open":
            if self.clock() - self._opened_at >= self.reset_timeout:
                self._state = "half_open"
                return True
            counter(f"circuit.{self.stage}.short_circuit")
            return False
        return True

    def record_success(self) -> None:
        self._failures = 0
        self._state = "closed"

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == "half_open" or self._failures >= self.fail_max:
            self._state = "open"
            self._opened_at = self.clock()
            counter(f"circuit.{self.stage}.opened")
            log_event("circuit.opened", stage=self.stage, failures=self._failures)
