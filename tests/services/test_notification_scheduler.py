"""
Tests for notification scheduling and delivery.

Covers:
- Scheduling with dedupe and opt-out
- Cancellation and unsubscribe
- Delivery outcomes and the retry bound
"""

from datetime import UTC, datetime, timedelta

import pytest

from palette.services.email_sender import SendResult
from palette.services.notification_scheduler import (
    cancel_all_notifications,
    cancel_notification,
    process_due_notifications,
    schedule_notification,
    unsubscribe_user,
)
from tests.helpers.mocks import mock_user

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


class FakeSender:
    def __init__(self, results=None):
        self.results = list(results or [])
        self.sent = []

    def send(self, to, message_type, user_name=None, metadata=None):
        self.sent.append((to, message_type))
        if self.results:
            return self.results.pop(0)
        return SendResult(success=True, message_id="msg_1")


@pytest.fixture
def user(fake_db):
    fake_db.add_test_data("users", [mock_user("u1", email="u1@example.com")])
    return fake_db


def _notifications(fake_db):
    return fake_db.rows("scheduled_notifications")


class TestSchedule:
    def test_schedule_with_delay(self, user):
        row = schedule_notification("u1", "u1@example.com", "engagement", delay_minutes=90, now=NOW)

        assert row["status"] == "pending"
        assert row["scheduled_for"] == (NOW + timedelta(minutes=90)).isoformat()
        assert row["attempts"] == 0

    def test_duplicate_pending_type_skipped(self, user):
        schedule_notification("u1", "u1@example.com", "welcome", now=NOW)
        assert schedule_notification("u1", "u1@example.com", "welcome", now=NOW) is None
        assert len(_notifications(user)) == 1

    def test_unsubscribed_user_skipped(self, fake_db):
        fake_db.add_test_data("users", [mock_user("u2", email_unsubscribed=True)])
        assert schedule_notification("u2", "test@example.com", "welcome", now=NOW) is None

    def test_unknown_type_rejected(self, user):
        with pytest.raises(ValueError):
            schedule_notification("u1", "u1@example.com", "newsletter")

    def test_cancel_by_type(self, user):
        schedule_notification("u1", "u1@example.com", "welcome", now=NOW)
        schedule_notification("u1", "u1@example.com", "conversion", now=NOW)

        assert cancel_notification("u1", "conversion") == 1

        statuses = {n["message_type"]: n["status"] for n in _notifications(user)}
        assert statuses == {"welcome": "pending", "conversion": "cancelled"}

    def test_cancel_all(self, user):
        schedule_notification("u1", "u1@example.com", "welcome", now=NOW)
        schedule_notification("u1", "u1@example.com", "engagement", now=NOW)

        assert cancel_all_notifications("u1") == 2


class TestUnsubscribe:
    def test_unsubscribe_marks_user_and_cancels(self, user):
        schedule_notification("u1", "u1@example.com", "welcome", now=NOW)

        assert unsubscribe_user("U1@example.com") is True

        assert user.rows("users")[0]["email_unsubscribed"] is True
        assert _notifications(user)[0]["status"] == "cancelled"

    def test_unknown_email(self, fake_db):
        assert unsubscribe_user("nobody@example.com") is False


class TestDelivery:
    def test_due_notification_sent(self, user):
        schedule_notification("u1", "u1@example.com", "welcome", now=NOW)
        sender = FakeSender()

        summary = process_due_notifications(sender, now=NOW + timedelta(minutes=1))

        assert summary.to_dict() == {"processed": 1, "sent": 1, "failed": 0, "skipped": 0}
        assert sender.sent == [("u1@example.com", "welcome")]
        row = _notifications(user)[0]
        assert row["status"] == "sent"
        assert row["sent_at"] is not None

    def test_future_notification_not_sent(self, user):
        schedule_notification("u1", "u1@example.com", "engagement", delay_minutes=60, now=NOW)

        summary = process_due_notifications(FakeSender(), now=NOW)

        assert summary.processed == 0

    def test_failure_retried_until_bound(self, user):
        """Three failed attempts leave the notification failed for good"""
        schedule_notification("u1", "u1@example.com", "welcome", now=NOW)
        sender = FakeSender([SendResult(success=False, error="boom")] * 5)

        for run in range(3):
            summary = process_due_notifications(sender, now=NOW + timedelta(minutes=run + 1))
            assert summary.failed == 1

        row = _notifications(user)[0]
        assert row["status"] == "failed"
        assert row["attempts"] == 3
        assert row["error"] == "boom"

        assert process_due_notifications(sender, now=NOW + timedelta(hours=1)).processed == 0
        assert len(sender.sent) == 3

    def test_failure_then_success(self, user):
        schedule_notification("u1", "u1@example.com", "welcome", now=NOW)
        sender = FakeSender([SendResult(success=False, error="timeout")])

        process_due_notifications(sender, now=NOW)
        summary = process_due_notifications(sender, now=NOW)

        assert summary.sent == 1
        row = _notifications(user)[0]
        assert row["status"] == "sent"
        assert row["attempts"] == 1

    def test_conversion_cancelled_for_paid_user(self, fake_db):
        fake_db.add_test_data("users", [mock_user("paid", plan="tier1", credits_remaining=50)])
        schedule_notification("paid", "test@example.com", "conversion", now=NOW)
        sender = FakeSender()

        summary = process_due_notifications(sender, now=NOW)

        assert summary.skipped == 1
        assert sender.sent == []
        assert fake_db.rows("scheduled_notifications")[0]["status"] == "cancelled"

    def test_opted_out_after_scheduling(self, user):
        schedule_notification("u1", "u1@example.com", "welcome", now=NOW)
        user.table("users").update({"email_unsubscribed": True}).eq("external_id", "u1").execute()

        summary = process_due_notifications(FakeSender(), now=NOW)

        assert summary.skipped == 1
        assert _notifications(user)[0]["status"] == "cancelled"
