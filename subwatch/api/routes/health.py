"""Health check endpoint for SubWatch API.

Reports service status, AI provider credential presence, and schema health.
Never calls a provider.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from subwatch.config import APP_VERSION
from subwatch.infrastructure.database import get_db_connection, get_pool_stats
from subwatch.infrastructure.database_schema import validate_schema
from subwatch.llm import use_llm
from subwatch.observability.logging import get_logger

router = APIRouter(prefix="/api", tags=["health"])
logger = get_logger(__name__)


@router.get("/health")
def health_check() -> dict[str, Any]:
    """Health check endpoint.

    Returns service status, version, credential readiness for both AI
    providers, and database schema state.
    """
    has_anthropic = bool(os.getenv("ANTHROPIC_API_KEY"))
    has_project = bool(os.getenv("GOOGLE_CLOUD_PROJECT"))

    try:
        with get_db_connection() as conn:
            validate_schema(conn)
        database = {"status": "healthy", "pool": get_pool_stats()}
    except (FileNotFoundError, ValueError, RuntimeError) as e:
        logger.error("Database health check failed: %s", e)
        database = {"status": "unhealthy", "error": str(e)}

    return {
        "status": "healthy" if database["status"] == "healthy" else "degraded",
        "service": "SubWatch API",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "llm": {
            "enabled": use_llm(),
            "anthropic_api_key": has_anthropic,
            "google_cloud_project": has_project,
        },
        "database": database,
    }
