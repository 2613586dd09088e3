"""
Candidate endpoints for the dashboard.

List, stats, and the accept/dismiss user actions.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from subwatch.config import API_LIST_LIMIT_DEFAULT, API_LIST_LIMIT_MAX
from subwatch.detection.candidate_engine import CandidateEngine
from subwatch.detection.models import Candidate, CandidateStatus
from subwatch.detection.repository import CandidateRepository
from subwatch.observability.logging import get_logger

router = APIRouter(prefix="/api/candidates", tags=["candidates"])
logger = get_logger(__name__)


class CandidateResponse(BaseModel):
    """API response for a single candidate."""

    id: str
    user_id: str
    name: str
    amount: float
    currency: str
    cadence: str
    confidence: float
    status: str
    proposed_next_billing: str | None
    detection_reason: str | None
    created_at: str

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> CandidateResponse:
        return cls(
            id=candidate.id,
            user_id=candidate.user_id,
            name=candidate.name,
            amount=candidate.amount,
            currency=candidate.currency,
            cadence=candidate.cadence,
            confidence=candidate.confidence,
            status=candidate.status,
            proposed_next_billing=candidate.proposed_next_billing.isoformat()
            if candidate.proposed_next_billing
            else None,
            detection_reason=candidate.detection_reason,
            created_at=candidate.created_at.isoformat(),
        )


@router.get("", response_model=list[CandidateResponse])
def list_candidates(
    user_id: str = Query(..., min_length=1),
    status: CandidateStatus | None = None,
    limit: int = Query(API_LIST_LIMIT_DEFAULT, ge=1, le=API_LIST_LIMIT_MAX),
) -> list[CandidateResponse]:
    candidates = CandidateRepository.list_by_user(user_id, status=status, limit=limit)
    return [CandidateResponse.from_candidate(c) for c in candidates]


@router.get("/stats")
def candidate_stats(user_id: str = Query(..., min_length=1)) -> dict[str, int]:
    return CandidateEngine.stats(user_id)


@router.post("/{candidate_id}/accept")
def accept_candidate(candidate_id: str) -> dict[str, Any]:
    result = CandidateEngine().accept(candidate_id)
    if not result["success"]:
        raise HTTPException(status_code=_error_status(result["error"]), detail=result["error"])
    return result


@router.post("/{candidate_id}/dismiss")
def dismiss_candidate(candidate_id: str) -> dict[str, Any]:
    result = CandidateEngine().dismiss(candidate_id)
    if not result["success"]:
        raise HTTPException(status_code=_error_status(result["error"]), detail=result["error"])
    return result


def _error_status(error: str) -> int:
    return 404 if error == "Candidate not found" else 409
