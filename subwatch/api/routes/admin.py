"""
Admin endpoints for the safe-mode kill switch.

GET reports the effective state (env override first, then the stored flag).
POST sets or clears the stored flag; clearing also resets queue history.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from subwatch.detection.errors import GovernanceConflictError
from subwatch.detection.governor import Governor
from subwatch.observability.logging import get_logger

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = get_logger(__name__)


class SafeModeRequest(BaseModel):
    enabled: bool
    reason: str | None = Field(default=None, max_length=100)
    message: str | None = Field(default=None, max_length=500)


def get_governor() -> Governor:
    return Governor()


@router.get("/safe-mode")
def get_safe_mode(governor: Governor = Depends(get_governor)) -> dict[str, Any]:
    return governor.status()


@router.post("/safe-mode")
def set_safe_mode(
    request: SafeModeRequest, governor: Governor = Depends(get_governor)
) -> dict[str, Any]:
    """Manually enable or disable safe mode."""
    try:
        state = governor.set_safe_mode(request.enabled, request.reason, request.message)
    except GovernanceConflictError as e:
        logger.error("Safe mode update failed: %s", e)
        raise HTTPException(status_code=409, detail="Governance record busy, retry") from e

    logger.warning(
        "Safe mode %s via admin API (reason=%s)",
        "enabled" if request.enabled else "disabled",
        state.reason,
    )
    return {"success": True, **governor.status(), "state": state.to_state_dict()}
