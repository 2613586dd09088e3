"""
AI Provider Budget Tracking (in-memory).

Caps provider calls per user and globally so a runaway parse loop cannot run
up provider spend. Counters live in a TTLCache and reset after 24 hours or on
process restart, which is acceptable for a spend guard.

Budget limits (defaults, see subwatch.config):
- Per user: 500 provider calls per day
- Global: 10,000 provider calls per day

When a budget is exhausted the extraction router skips the provider and uses
the regex fallback for that receipt.
"""

from __future__ import annotations

import threading
from typing import NamedTuple

from cachetools import TTLCache

from subwatch.config import LLM_GLOBAL_DAILY_LIMIT, LLM_USER_DAILY_LIMIT
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter

logger = get_logger(__name__)

DEFAULT_USER_DAILY_LIMIT = LLM_USER_DAILY_LIMIT
DEFAULT_GLOBAL_DAILY_LIMIT = LLM_GLOBAL_DAILY_LIMIT

_DAY_SECONDS = 86400
_user_calls: TTLCache[str, int] = TTLCache(maxsize=10000, ttl=_DAY_SECONDS)
_global_counter: TTLCache[str, int] = TTLCache(maxsize=1, ttl=_DAY_SECONDS)
_GLOBAL_KEY = "__global__"
# TTLCache is not thread-safe and lanes record calls concurrently
_lock = threading.Lock()


class BudgetStatus(NamedTuple):
    """Current budget status for a user."""

    user_calls_today: int
    user_limit: int
    global_calls_today: int
    global_limit: int
    is_allowed: bool
    reason: str | None


def check_budget(
    user_id: str,
    user_limit: int = DEFAULT_USER_DAILY_LIMIT,
    global_limit: int = DEFAULT_GLOBAL_DAILY_LIMIT,
) -> BudgetStatus:
    """
    Check if user is within budget for provider calls.

    Returns:
        BudgetStatus with current usage and whether a call is allowed
    """
    with _lock:
        user_calls = _user_calls.get(user_id, 0)
        global_calls = _global_counter.get(_GLOBAL_KEY, 0)

    reason = None
    if user_calls >= user_limit:
        reason = f"User daily limit exceeded ({user_calls}/{user_limit})"
    elif global_calls >= global_limit:
        reason = f"Global daily limit exceeded ({global_calls}/{global_limit})"

    return BudgetStatus(
        user_calls_today=user_calls,
        user_limit=user_limit,
        global_calls_today=global_calls,
        global_limit=global_limit,
        is_allowed=reason is None,
        reason=reason,
    )


def record_llm_call(user_id: str, provider: str) -> None:
    """
    Record a provider call for budget tracking.

    Args:
        user_id: User whose receipt was sent
        provider: Provider name (anthropic, gemini)
    """
    with _lock:
        _user_calls[user_id] = _user_calls.get(user_id, 0) + 1
        _global_counter[_GLOBAL_KEY] = _global_counter.get(_GLOBAL_KEY, 0) + 1

    counter(f"llm.budget.call.{provider}")
    logger.debug("Recorded provider call: user=%s, provider=%s", user_id, provider)


def reset_budget() -> None:
    """Clear all budget counters (useful for tests)."""
    with _lock:
        _user_calls.clear()
        _global_counter.clear()
