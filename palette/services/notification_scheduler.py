"""
Notification Scheduler

Queues delayed lifecycle emails (welcome, engagement, conversion) in
``scheduled_notifications`` and delivers the due ones in batches. A pending
notification is retried on later runs until it has failed
NOTIFICATION_MAX_ATTEMPTS times.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from palette.config.usage_limits import (
    NOTIFICATION_BATCH_SIZE,
    NOTIFICATION_MAX_ATTEMPTS,
    PLAN_FREE,
)
from palette.db import scheduled_notifications as notifications_db
from palette.db import users as users_db
from palette.services.email_sender import MESSAGE_CONVERSION, MESSAGE_TYPES, SendResult
from palette.services.prometheus_metrics import record_notification

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send(
        self,
        to: str,
        message_type: str,
        user_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SendResult: ...


@dataclass
class DeliverySummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def schedule_notification(
    user_id: str,
    email: str,
    message_type: str,
    delay_minutes: int = 0,
    metadata: dict[str, Any] | None = None,
    name: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    """
    Queue a notification unless the user opted out or the same type is
    already pending. Returns the new row, or None when nothing was queued.
    """
    if message_type not in MESSAGE_TYPES:
        raise ValueError(f"Unknown message type: {message_type}")

    user = users_db.get_user(user_id)
    if user is not None and user.get("email_unsubscribed"):
        logger.info(f"User {user_id} unsubscribed, skipping {message_type} notification")
        return None

    if notifications_db.find_pending(user_id, message_type) is not None:
        logger.info(f"{message_type} notification already pending for {user_id}")
        return None

    scheduled_for = (now or datetime.now(UTC)) + timedelta(minutes=delay_minutes)
    row = notifications_db.insert_notification(
        user_id, email, name, message_type, scheduled_for, metadata
    )
    logger.info(f"Scheduled {message_type} notification for {user_id} at {scheduled_for.isoformat()}")
    return row


def cancel_notification(user_id: str, message_type: str) -> int:
    cancelled = notifications_db.cancel_pending(user_id, message_type)
    if cancelled:
        logger.info(f"Cancelled {cancelled} pending {message_type} notification(s) for {user_id}")
    return cancelled


def cancel_all_notifications(user_id: str) -> int:
    cancelled = notifications_db.cancel_pending(user_id)
    if cancelled:
        logger.info(f"Cancelled {cancelled} pending notification(s) for {user_id}")
    return cancelled


def unsubscribe_user(email: str) -> bool:
    """Opt a user out of email and cancel everything pending. False if unknown."""
    user = users_db.get_user_by_email(email.lower())
    if user is None:
        logger.warning(f"Unsubscribe for unknown email {email}")
        return False

    users_db.update_user(user["external_id"], {"email_unsubscribed": True})
    cancel_all_notifications(user["external_id"])
    logger.info(f"User {user['external_id']} unsubscribed from emails")
    return True


def _deliver(notification: dict[str, Any], sender: NotificationSender) -> str:
    """Handle one due notification and return its outcome."""
    user_id = notification["user_id"]
    message_type = notification["message_type"]
    user = users_db.get_user(user_id)

    if user is not None and user.get("email_unsubscribed"):
        notifications_db.update_notification(
            notification["id"], {"status": notifications_db.STATUS_CANCELLED}
        )
        return "skipped"

    if message_type == MESSAGE_CONVERSION and user is not None and user.get("plan") != PLAN_FREE:
        notifications_db.update_notification(
            notification["id"], {"status": notifications_db.STATUS_CANCELLED}
        )
        return "skipped"

    result = sender.send(
        notification["user_email"],
        message_type,
        user_name=notification.get("user_name"),
        metadata=notification.get("metadata") or {},
    )

    if result.success:
        notifications_db.update_notification(
            notification["id"],
            {"status": notifications_db.STATUS_SENT, "sent_at": datetime.now(UTC).isoformat()},
        )
        return "sent"

    attempts = (notification.get("attempts") or 0) + 1
    status = (
        notifications_db.STATUS_FAILED
        if attempts >= NOTIFICATION_MAX_ATTEMPTS
        else notifications_db.STATUS_PENDING
    )
    notifications_db.update_notification(
        notification["id"], {"attempts": attempts, "status": status, "error": result.error}
    )
    return "failed"


def process_due_notifications(
    sender: NotificationSender, now: datetime | None = None
) -> DeliverySummary:
    """Send up to one batch of due notifications, oldest first."""
    now = now or datetime.now(UTC)
    summary = DeliverySummary()

    for notification in notifications_db.list_due(now, NOTIFICATION_BATCH_SIZE):
        summary.processed += 1
        try:
            outcome = _deliver(notification, sender)
        except Exception as e:
            logger.error(f"Error delivering notification {notification['id']}: {e}", exc_info=True)
            outcome = "failed"

        record_notification(notification["message_type"], outcome)
        if outcome == "sent":
            summary.sent += 1
        elif outcome == "skipped":
            summary.skipped += 1
        else:
            summary.failed += 1

    logger.info(
        f"Notification run: {summary.processed} processed, {summary.sent} sent, "
        f"{summary.failed} failed, {summary.skipped} skipped"
    )
    return summary
