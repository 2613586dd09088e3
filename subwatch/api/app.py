"""FastAPI server for SubWatch subscription detection"""

from __future__ import annotations

import os
import sqlite3
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from subwatch.api.routes.admin import router as admin_router
from subwatch.api.routes.candidates import router as candidates_router
from subwatch.api.routes.health import router as health_router
from subwatch.api.routes.pipeline import router as pipeline_router
from subwatch.config import APP_VERSION
from subwatch.infrastructure.database import init_database
from subwatch.infrastructure.settings import is_development
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter, log_event
from subwatch.utils.redaction import redact

# Load environment variables from .env file
load_dotenv()

app = FastAPI(title="SubWatch API", version=APP_VERSION)

logger = get_logger(__name__)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return field names only, never the validation rules."""
    logger.warning("Validation error on %s: %s", redact(str(request.url)), exc.errors())
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


ALLOWED_ORIGINS = [
    origin for origin in os.getenv("SUBWATCH_ALLOWED_ORIGINS", "").split(",") if origin
]

if is_development():
    ALLOWED_ORIGINS.extend(
        [
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000",
        ]
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

# Initialize database schema
try:
    logger.info("Initializing database schema...")
    init_database()
    logger.info("Database initialization complete")
except sqlite3.OperationalError as e:
    logger.critical("Database schema error: %s", e)
    raise RuntimeError(f"Database initialization failed: {e}") from e
except Exception as e:
    logger.critical("Unexpected database initialization error: %s", e)
    raise RuntimeError(f"Database initialization failed: {e}") from e

app.include_router(health_router)
app.include_router(admin_router)
app.include_router(pipeline_router)
app.include_router(candidates_router)

log_event("api.startup", service="subwatch", version=APP_VERSION)


@app.get("/")
def root() -> dict[str, Any]:
    return {
        "service": "SubWatch API",
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/api/health",
            "safe_mode": "/api/admin/safe-mode",
            "parse": "/api/pipeline/parse",
            "detections": "/api/pipeline/detections",
            "candidates": "/api/candidates",
            "candidate_stats": "/api/candidates/stats",
        },
    }
