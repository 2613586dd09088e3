"""Exceptions raised by the detection pipeline's services and repositories."""

from __future__ import annotations


class DetectionError(Exception):
    """Base class for detection pipeline errors."""


class ReceiptNotFoundError(DetectionError):
    def __init__(self, receipt_id: str):
        super().__init__(f"Receipt not found: {receipt_id}")
        self.receipt_id = receipt_id


class GovernanceConflictError(DetectionError):
    """Compare-and-set on the governance record lost every attempt."""

    def __init__(self, attempts: int):
        super().__init__(f"Governance update conflicted {attempts} times")
        self.attempts = attempts
