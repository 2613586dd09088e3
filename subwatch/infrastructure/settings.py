"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os
from pathlib import Path

# Project paths
SUBWATCH_ROOT = Path(__file__).parent.parent
DATA_DIR = SUBWATCH_ROOT / "data"
MERCHANTS_FILE = DATA_DIR / "merchants.yaml"

# Environment
ENV = os.getenv("SUBWATCH_ENV", "development")
DEBUG = ENV == "development"

# API Configuration
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Provider A: Anthropic Messages API
ANTHROPIC_API_URL = os.getenv("ANTHROPIC_API_URL", "https://api.anthropic.com/v1/messages")
ANTHROPIC_API_VERSION = "2023-06-01"
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-haiku-4-5-20251001")
ANTHROPIC_MAX_TOKENS = int(os.getenv("ANTHROPIC_MAX_TOKENS", "300"))

# Provider B: Gemini on Vertex AI
GOOGLE_CLOUD_PROJECT = os.getenv("GOOGLE_CLOUD_PROJECT")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-001")
GEMINI_LOCATION = os.getenv("GEMINI_LOCATION", "us-central1")
GEMINI_MAX_TOKENS = int(os.getenv("GEMINI_MAX_TOKENS", "300"))

# Extraction is deterministic, both providers run at temperature 0
PROVIDER_TEMPERATURE = 0.0


def is_development() -> bool:
    """Check if running in development"""
    return ENV == "development"

