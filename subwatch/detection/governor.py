"""
Safe-Mode Governor - automatic kill switch for detection runs.

Tracks the size and trend of the queue of receipts waiting for candidate
reconciliation. If the queue spikes past SAFE_MODE_QUEUE_THRESHOLD, or sits
at roughly the same non-zero size for SAFE_MODE_STUCK_RUNS cycles, safe mode
is switched on and stays on until an operator clears it.

State lives in the singleton pipeline_governance row. Every write is a
compare-and-set on its version column so two overlapping scheduler ticks
cannot both advance the streak from the same snapshot.
"""

from __future__ import annotations

import os
from typing import Any

from subwatch.config import (
    SAFE_MODE_CAS_ATTEMPTS,
    SAFE_MODE_QUEUE_THRESHOLD,
    SAFE_MODE_STUCK_MIN_DELTA,
    SAFE_MODE_STUCK_RUNS,
    SAFE_MODE_STUCK_TOLERANCE,
)
from subwatch.detection.errors import GovernanceConflictError
from subwatch.detection.models import PipelineGovernance, utc_now
from subwatch.detection.repository import GovernanceRepository
from subwatch.detection.types import GovernorDecision
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter, log_event

logger = get_logger(__name__)

REASON_QUEUE_LARGE = "detection_queue_large"
REASON_QUEUE_STUCK = "detection_queue_stuck"
REASON_ENV_OVERRIDE = "env_override"

SOURCE_ENV = "env"
SOURCE_DATABASE = "database"
SOURCE_NONE = "none"

ENV_OVERRIDE_VARS = ("SUBWATCH_SAFE_MODE", "SUBWATCH_DISABLE_CRONS")


def env_override() -> str | None:
    """Name of the env var forcing safe mode, read at call time."""
    for name in ENV_OVERRIDE_VARS:
        if os.getenv(name, "").strip().lower() == "true":
            return name
    return None


def is_unchanged(previous: int, current: int) -> bool:
    """Queue size within max(2, 5%) of a non-empty previous reading."""
    if previous <= 0:
        return False
    tolerance = max(SAFE_MODE_STUCK_MIN_DELTA, SAFE_MODE_STUCK_TOLERANCE * previous)
    return abs(current - previous) <= tolerance


def next_streak(state: PipelineGovernance, current: int) -> int:
    if is_unchanged(state.last_queue_size, current):
        return state.unchanged_streak + 1
    return 1 if current > 0 else 0


class Governor:
    """Decide whether a detection cycle may run."""

    def __init__(
        self,
        repository: type[GovernanceRepository] = GovernanceRepository,
        max_attempts: int = SAFE_MODE_CAS_ATTEMPTS,
    ):
        self.repository = repository
        self.max_attempts = max_attempts

    def check(self) -> GovernorDecision:
        """Read-only halt check for entry points that do not measure the queue."""
        override = env_override()
        if override:
            return GovernorDecision(halted=True, source=SOURCE_ENV, reason=REASON_ENV_OVERRIDE)

        state = self.snapshot()
        if state.safe_mode_enabled:
            return GovernorDecision(
                halted=True,
                source=SOURCE_DATABASE,
                reason=state.reason,
                queue_size=state.last_queue_size,
                unchanged_streak=state.unchanged_streak,
            )
        return GovernorDecision.proceed(state.last_queue_size, state.unchanged_streak)

    def evaluate(self, eligible_count: int) -> GovernorDecision:
        """
        Evaluate one detection cycle against the queue rules.

        Args:
            eligible_count: Full count of receipts eligible for reconciliation

        Returns:
            GovernorDecision; halted=True means the caller must skip its work

        Raises:
            GovernanceConflictError: If every compare-and-set attempt lost
        """
        override = env_override()
        if override:
            logger.warning("Safe mode forced by %s, skipping detection", override)
            return GovernorDecision(halted=True, source=SOURCE_ENV, reason=REASON_ENV_OVERRIDE)

        for _ in range(self.max_attempts):
            state = self.repository.load()
            if state.safe_mode_enabled:
                logger.warning("Safe mode is enabled (%s), skipping detection", state.reason)
                return GovernorDecision(
                    halted=True,
                    source=SOURCE_DATABASE,
                    reason=state.reason,
                    queue_size=state.last_queue_size,
                    unchanged_streak=state.unchanged_streak,
                )

            streak = next_streak(state, eligible_count)
            reason, message = self._check_rules(eligible_count, streak, state.last_queue_size)
            now = utc_now()
            updated = state.model_copy(
                update={
                    "last_queue_size": eligible_count,
                    "unchanged_streak": streak,
                    "last_checked_at": now,
                }
            )
            if reason:
                updated = updated.model_copy(
                    update={
                        "safe_mode_enabled": True,
                        "reason": reason,
                        "message": message,
                        "enabled_at": now,
                    }
                )

            if not self.repository.compare_and_set(state.version, updated):
                counter("governor.cas_conflict")
                logger.debug("Governance version %d changed underneath us, retrying", state.version)
                continue

            if reason:
                counter("governor.safe_mode_enabled")
                logger.error("Safe mode enabled: %s", message)
                log_event(
                    "governor.safe_mode_enabled",
                    reason=reason,
                    queue_size=eligible_count,
                    unchanged_streak=streak,
                )
                return GovernorDecision(
                    halted=True,
                    source=SOURCE_DATABASE,
                    reason=reason,
                    triggered=True,
                    queue_size=eligible_count,
                    unchanged_streak=streak,
                )

            return GovernorDecision.proceed(eligible_count, streak)

        raise GovernanceConflictError(self.max_attempts)

    @staticmethod
    def _check_rules(count: int, streak: int, previous: int) -> tuple[str | None, str | None]:
        if count >= SAFE_MODE_QUEUE_THRESHOLD:
            return (
                REASON_QUEUE_LARGE,
                f"Detection queue has {count} receipts (threshold {SAFE_MODE_QUEUE_THRESHOLD})",
            )
        if streak >= SAFE_MODE_STUCK_RUNS and count > 0:
            return (
                REASON_QUEUE_STUCK,
                f"Detection queue stuck at {count} receipts (previously {previous}) "
                f"for {streak} runs",
            )
        return None, None

    def set_safe_mode(
        self, enabled: bool, reason: str | None = None, message: str | None = None
    ) -> PipelineGovernance:
        """
        Manually switch safe mode on or off.

        Disabling also clears the queue history so the stuck rule starts over.
        """
        for _ in range(self.max_attempts):
            state = self.repository.load()
            if enabled:
                updated = state.model_copy(
                    update={
                        "safe_mode_enabled": True,
                        "reason": reason or "manual",
                        "message": message,
                        "enabled_at": utc_now(),
                    }
                )
            else:
                updated = state.model_copy(
                    update={
                        "safe_mode_enabled": False,
                        "reason": None,
                        "message": None,
                        "enabled_at": None,
                        "last_queue_size": 0,
                        "unchanged_streak": 0,
                    }
                )

            if self.repository.compare_and_set(state.version, updated):
                counter("governor.safe_mode_enabled" if enabled else "governor.safe_mode_disabled")
                log_event("governor.safe_mode_set", enabled=enabled, reason=updated.reason)
                return updated.model_copy(update={"version": state.version + 1})

            counter("governor.cas_conflict")

        raise GovernanceConflictError(self.max_attempts)

    def status(self) -> dict[str, Any]:
        """Current safe-mode state; the env override wins over the stored flag."""
        override = env_override()
        state = self.repository.load()
        if override:
            return {
                "enabled": True,
                "reason": REASON_ENV_OVERRIDE,
                "source": SOURCE_ENV,
                "message": f"{override}=true",
                "enabled_at": None,
            }
        return {
            "enabled": state.safe_mode_enabled,
            "reason": state.reason,
            "source": SOURCE_DATABASE if state.safe_mode_enabled else SOURCE_NONE,
            "message": state.message,
            "enabled_at": state.enabled_at.isoformat() if state.enabled_at else None,
        }

    def snapshot(self) -> PipelineGovernance:
        return self.repository.load()
