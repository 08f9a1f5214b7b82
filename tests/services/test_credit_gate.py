"""
Tests for the consume-then-refund wrapper around protected operations.
"""

import pytest

from palette.services.credit_gate import run_protected_operation
from palette.services.credit_ledger import InsufficientCreditsError
from palette.services.notification_scheduler import schedule_notification
from tests.helpers.mocks import mock_user


def _balance(fake_db, external_id="u1"):
    return next(u for u in fake_db.rows("users") if u["external_id"] == external_id)[
        "credits_remaining"
    ]


class TestRunProtectedOperation:
    def test_success_keeps_charge(self, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", credits_remaining=3)])

        result = run_protected_operation("u1", lambda: "image-url")

        assert result.value == "image-url"
        assert result.remaining == 2
        assert _balance(fake_db) == 2

    def test_failure_refunds_and_reraises(self, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", credits_remaining=3)])

        def broken():
            raise RuntimeError("generation backend down")

        with pytest.raises(RuntimeError, match="backend down"):
            run_protected_operation("u1", broken)

        assert _balance(fake_db) == 3

    def test_insufficient_credits_skips_operation(self, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", credits_remaining=0)])
        calls = []

        with pytest.raises(InsufficientCreditsError):
            run_protected_operation("u1", lambda: calls.append(1))

        assert calls == []

    def test_paid_user_conversion_email_cancelled(self, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", plan="tier1", credits_remaining=50)])
        schedule_notification("u1", "test@example.com", "conversion")

        run_protected_operation("u1", lambda: None)

        assert fake_db.rows("scheduled_notifications")[0]["status"] == "cancelled"

    def test_free_user_conversion_email_kept(self, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", credits_remaining=3)])
        schedule_notification("u1", "test@example.com", "conversion")

        run_protected_operation("u1", lambda: None)

        assert fake_db.rows("scheduled_notifications")[0]["status"] == "pending"
