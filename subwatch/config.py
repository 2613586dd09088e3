"""Centralized configuration for the SubWatch pipeline.

Re-exports everything from subwatch.infrastructure.settings, then adds typed
constants for the database, pre-filter, extraction, candidate engine, and
safe-mode governor. Environment variable overrides use safe defaults so the
pipeline starts without extra env configuration.
"""

from __future__ import annotations

import os

from subwatch.infrastructure.settings import *  # noqa: F401, F403

# --- App ---
APP_VERSION: str = "0.3.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("SUBWATCH_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("SUBWATCH_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("SUBWATCH_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("SUBWATCH_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("SUBWATCH_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("SUBWATCH_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("SUBWATCH_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("SUBWATCH_DB_RETRY_JITTER", "0.1"))

# --- Ingestion ---
RECEIPT_BODY_MAX_CHARS: int = 50_000

# --- Pre-filter ---
PREFILTER_CONFIDENCE_THRESHOLD: float = 0.6
PREFILTER_COST_PER_CALL_USD: float = 0.001
LEARNED_DOMAIN_MIN_OCCURRENCES: int = 3

# --- Extraction ---
AI_ACCEPT_CONFIDENCE: int = 40
PROMPT_BODY_CHARS: int = 2000
PARSE_BATCH_LIMIT: int = int(os.getenv("SUBWATCH_PARSE_BATCH_LIMIT", "100"))
PROGRESS_REPORT_EVERY: int = 5
EXTRACTION_LANE_CONCURRENCY: int = int(os.getenv("SUBWATCH_LANE_CONCURRENCY", "1"))

# --- LLM ---
LLM_TIMEOUT_SECONDS: int = int(os.getenv("SUBWATCH_LLM_TIMEOUT", "30"))
LLM_MAX_RETRIES: int = int(os.getenv("SUBWATCH_LLM_MAX_RETRIES", "3"))
LLM_BACKOFF_BASE_SECONDS: float = 1.0
LLM_BACKOFF_MAX_SECONDS: float = 4.0

# --- LLM Budget ---
LLM_USER_DAILY_LIMIT: int = int(os.getenv("SUBWATCH_LLM_USER_DAILY_LIMIT", "500"))
LLM_GLOBAL_DAILY_LIMIT: int = int(os.getenv("SUBWATCH_LLM_GLOBAL_DAILY_LIMIT", "10000"))

# --- Candidate Engine ---
DETECTION_MIN_CONFIDENCE: float = 0.6
CANDIDATE_BATCH_LIMIT: int = int(os.getenv("SUBWATCH_CANDIDATE_BATCH_LIMIT", "100"))

# --- Safe-mode governor ---
SAFE_MODE_QUEUE_THRESHOLD: int = 150
SAFE_MODE_STUCK_RUNS: int = 3
SAFE_MODE_STUCK_TOLERANCE: float = 0.05
SAFE_MODE_STUCK_MIN_DELTA: int = 2
SAFE_MODE_CAS_ATTEMPTS: int = 5

# --- API ---
API_LIST_LIMIT_DEFAULT: int = 100
API_LIST_LIMIT_MAX: int = 500
