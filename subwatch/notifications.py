"""
Notification sink used by the candidate engine.

Delivery transports (push, email) live outside this package; the default sink
only records notifications in the database for a dashboard to read.
"""

from __future__ import annotations

from typing import Any, Protocol

from subwatch.detection.repository import NotificationRepository
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter

logger = get_logger(__name__)

NEW_SUBSCRIPTION_DETECTED = "new_subscription_detected"
PRICE_INCREASE = "price_increase"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"


class NotificationSink(Protocol):
    def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None: ...


class DatabaseNotificationSink:
    """Writes one row per notification to the notifications table."""

    def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        NotificationRepository.create(user_id, type, title, message, data)
        counter(f"notifications.{type}")


def safe_notify(
    sink: NotificationSink,
    user_id: str,
    type: str,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> bool:
    """
    Send a notification; failures are logged and never propagate.

    Returns:
        True if the sink accepted the notification
    """
    try:
        sink.notify(user_id, type, title, message, data)
        return True
    except Exception as e:
        counter("notifications.failed")
        logger.warning("Failed to send %s notification: %s", type, e)
        return False
