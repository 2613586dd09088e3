"""
In-process telemetry for the detection pipeline.

Counters and latencies live in memory; events go to the "subwatch.telemetry"
logger as structured lines. Nothing is shipped externally, which keeps the
pipeline usable without a metrics backend and lets tests assert on counts.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger("subwatch.telemetry")

_COUNTERS: dict[str, int] = {}
_LATENCIES: dict[str, list[float]] = {}
_LOCK = threading.Lock()


def _normalize_latency_name(metric_name: str) -> str:
    if metric_name.endswith("_ms"):
        return metric_name
    if metric_name.endswith(".latency"):
        return f"{metric_name}_ms"
    return metric_name


def log_event(event_name: str, **fields: Any) -> None:
    """
    Structured log event. Caller must ensure PII is redacted.

    Side Effects:
        - Writes to logger (info level)
    """
    logger.info("event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """
    Increment an in-memory counter and emit a debug log.

    Extraction lanes run on worker threads, so the update is locked.

    Side Effects:
        - Modifies _COUNTERS dict (in-memory state)
        - Writes to logger (debug level)
    """
    with _LOCK:
        value = _COUNTERS.get(name, 0) + increment
        _COUNTERS[name] = value
    logger.debug("counter=%s value=%s", name, value)
    return value


def get_counter(name: str) -> int:
    """Current value of a counter (0 if never incremented)."""
    with _LOCK:
        return _COUNTERS.get(name, 0)


def reset_counters() -> None:
    """Clear all counters (useful for tests)."""
    with _LOCK:
        _COUNTERS.clear()


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Context manager for timing code blocks.

    Side Effects:
        - Appends to _LATENCIES dict (in-memory state)
        - Writes to logger (debug level) with timing
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        normalized = _normalize_latency_name(metric_name)
        logger.debug("timing=%s seconds=%.6f", normalized, elapsed)
        with _LOCK:
            _LATENCIES.setdefault(normalized, []).append(elapsed)


def get_latency_stats(metric_name: str) -> dict[str, float]:
    """Latency statistics (count, min, max, avg, p95) for a metric."""
    normalized = _normalize_latency_name(metric_name)
    with _LOCK:
        samples = sorted(_LATENCIES.get(normalized, []))
    if not samples:
        return {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0, "p95": 0.0}

    count = len(samples)
    return {
        "count": count,
        "min": samples[0],
        "max": samples[-1],
        "avg": sum(samples) / count,
        "p95": samples[min(int(count * 0.95), count - 1)],
    }


def reset_latencies() -> None:
    """
    Clear all recorded latencies (useful for tests).

    Side Effects:
        - Clears _LATENCIES dict (in-memory state)
    """
    with _LOCK:
        _LATENCIES.clear()
