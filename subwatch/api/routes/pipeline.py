"""
Manual pipeline triggers.

The scheduler normally drives these; the endpoints run the same entry points
synchronously for a "scan now" button and for operators.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from subwatch.config import PARSE_BATCH_LIMIT
from subwatch.observability.logging import get_logger
from subwatch.pipeline import Pipeline

router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])
logger = get_logger(__name__)


class ParseRequest(BaseModel):
    user_id: str | None = None
    limit: int = Field(default=PARSE_BATCH_LIMIT, ge=1, le=PARSE_BATCH_LIMIT)


@lru_cache(maxsize=1)
def get_pipeline() -> Pipeline:
    """Shared pipeline so provider circuit breakers persist across requests."""
    return Pipeline()


@router.post("/parse")
def run_parse(
    request: ParseRequest | None = None, pipeline: Pipeline = Depends(get_pipeline)
) -> dict[str, Any]:
    request = request or ParseRequest()
    logger.info("Manual parse pass requested (user=%s)", request.user_id or "all")
    return pipeline.parse(user_id=request.user_id, limit=request.limit)


@router.post("/detections")
def run_detections(pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    logger.info("Manual detection pass requested")
    return pipeline.create_detections()
