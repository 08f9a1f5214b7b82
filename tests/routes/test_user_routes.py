"""
Tests for user profile and credit routes.
"""

from palette.services.notification_scheduler import schedule_notification
from tests.helpers.http_headers import INTERNAL_HEADERS, user_headers
from tests.helpers.mocks import mock_user


class TestUserProfile:
    def test_requires_identity(self, client):
        assert client.get("/api/user").status_code == 401

    def test_first_visit_provisions_early_bird(self, client, fake_db):
        response = client.get(
            "/api/user",
            headers={**user_headers("new-user"), "X-User-Email": "new@example.com"},
        )

        assert response.status_code == 200
        user = response.json()["user"]
        assert user["external_id"] == "new-user"
        assert user["email"] == "new@example.com"
        assert user["credits_remaining"] == 2
        assert user["is_early_bird"] is True
        assert len(fake_db.rows("users")) == 1

    def test_second_visit_does_not_recount(self, client, fake_db):
        client.get("/api/user", headers=user_headers("new-user"))
        client.get("/api/user", headers=user_headers("new-user"))

        assert fake_db.rows("daily_signup_counts")[0]["count"] == 1


class TestCredits:
    def test_summary(self, client, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", plan="tier2", credits_remaining=120)])

        response = client.get("/api/user/credits", headers=user_headers("u1"))

        assert response.status_code == 200
        data = response.json()
        assert data["remaining"] == 120
        assert data["total"] == 150
        assert data["can_generate"] is True

    def test_summary_unknown_user(self, client):
        assert client.get("/api/user/credits", headers=user_headers("ghost")).status_code == 404

    def test_consume(self, client, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", credits_remaining=3)])

        response = client.post(
            "/api/user/credits/consume", json={"amount": 2}, headers=user_headers("u1")
        )

        assert response.status_code == 200
        assert response.json()["remaining"] == 1

    def test_paid_consume_cancels_pending_conversion(self, client, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", plan="tier1", credits_remaining=50)])
        schedule_notification("u1", "u1@example.com", "conversion", delay_minutes=60)

        response = client.post(
            "/api/user/credits/consume", json={"amount": 1}, headers=user_headers("u1")
        )

        assert response.status_code == 200
        assert fake_db.rows("scheduled_notifications")[0]["status"] == "cancelled"

    def test_free_consume_keeps_pending_conversion(self, client, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", credits_remaining=3)])
        schedule_notification("u1", "u1@example.com", "conversion", delay_minutes=60)

        client.post("/api/user/credits/consume", json={"amount": 1}, headers=user_headers("u1"))

        assert fake_db.rows("scheduled_notifications")[0]["status"] == "pending"

    def test_consume_insufficient_is_402(self, client, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", credits_remaining=1)])

        response = client.post(
            "/api/user/credits/consume", json={"amount": 2}, headers=user_headers("u1")
        )

        assert response.status_code == 402
        assert "Current balance: 1" in response.json()["detail"]

    def test_consume_rejects_non_positive(self, client, fake_db):
        fake_db.add_test_data("users", [mock_user("u1")])
        response = client.post(
            "/api/user/credits/consume", json={"amount": 0}, headers=user_headers("u1")
        )
        assert response.status_code == 422

    def test_internal_reset(self, client, fake_db):
        fake_db.add_test_data("users", [mock_user("u1", credits_remaining=0)])

        response = client.put(
            "/api/user/credits", json={"user_id": "u1", "plan": "tier1"}, headers=INTERNAL_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["user"]["credits_remaining"] == 50

    def test_internal_reset_requires_key(self, client, fake_db):
        fake_db.add_test_data("users", [mock_user("u1")])

        response = client.put(
            "/api/user/credits",
            json={"user_id": "u1", "plan": "tier1"},
            headers={"X-Internal-Key": "wrong"},
        )

        assert response.status_code == 401
        assert fake_db.rows("users")[0]["plan"] == "free"
