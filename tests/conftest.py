"""
Pytest configuration for SubWatch tests

Every test gets fresh telemetry counters and AI budget; tests that touch the
database request the temp_db fixture, which points the connection pool at a
throwaway SQLite file.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

import pytest

from subwatch.detection.models import Receipt
from subwatch.detection.repository import ReceiptRepository
from subwatch.infrastructure.database import init_database, reset_pool
from subwatch.infrastructure.llm_budget import reset_budget
from subwatch.observability.telemetry import reset_counters, reset_latencies


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """No provider credentials, no LLM, no env safe-mode override."""
    for name in (
        "ANTHROPIC_API_KEY",
        "GOOGLE_CLOUD_PROJECT",
        "SUBWATCH_SAFE_MODE",
        "SUBWATCH_DISABLE_CRONS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SUBWATCH_USE_LLM", "false")


@pytest.fixture(autouse=True)
def reset_telemetry():
    reset_counters()
    reset_latencies()
    reset_budget()
    yield
    reset_counters()
    reset_latencies()
    reset_budget()


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Fresh SQLite database with the full schema."""
    db_path = tmp_path / "subwatch_test.db"
    monkeypatch.setenv("SUBWATCH_DB_PATH", str(db_path))
    reset_pool()
    init_database()
    yield db_path
    reset_pool()


@pytest.fixture
def make_receipt(temp_db):
    """Factory that builds and stores a receipt; returns the stored model."""

    def _make(**overrides) -> Receipt:
        fields = {
            "id": str(uuid.uuid4()),
            "user_id": "user_1",
            "message_id": f"msg-{uuid.uuid4().hex[:8]}",
            "sender": "Netflix <info@mailer.netflix.com>",
            "subject": "Your Netflix subscription receipt",
            "body": "Your monthly subscription payment of $15.49 was charged.",
            "received_at": datetime(2025, 10, 1, 12, 0, tzinfo=UTC),
        }
        fields.update(overrides)
        receipt = Receipt(**fields)
        assert ReceiptRepository.insert(receipt)
        return ReceiptRepository.get_by_id(receipt.id)

    return _make
