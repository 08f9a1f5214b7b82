"""
Tests for processed billing event tracking.
"""

from unittest.mock import patch

from palette.db import webhook_events


class TestWebhookEvents:
    def test_record_then_detect(self, fake_db):
        assert webhook_events.is_event_processed("evt_1") is False

        assert webhook_events.record_processed_event("evt_1", "invoice.paid", user_id="u1")

        assert webhook_events.is_event_processed("evt_1") is True
        assert fake_db.rows("billing_webhook_events")[0]["user_id"] == "u1"

    def test_concurrent_duplicate_counts_as_recorded(self, fake_db):
        webhook_events.record_processed_event("evt_1", "invoice.paid")

        assert webhook_events.record_processed_event("evt_1", "invoice.paid") is True
        assert len(fake_db.rows("billing_webhook_events")) == 1

    def test_lookup_error_treated_as_unprocessed(self):
        with patch(
            "palette.db.webhook_events.execute_with_retry", side_effect=RuntimeError("down")
        ):
            assert webhook_events.is_event_processed("evt_1") is False
