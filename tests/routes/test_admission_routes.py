"""
Tests for the admission check route and monitoring endpoints.
"""

from tests.helpers.http_headers import user_headers
from tests.helpers.mocks import mock_user


class TestAdmissionCheck:
    def test_free_user_counts_down(self, client, fake_db):
        fake_db.add_test_data("users", [mock_user("u1")])

        results = [
            client.post(
                "/api/admission/check", json={"operation": "generate"}, headers=user_headers("u1")
            ).json()
            for _ in range(3)
        ]

        assert [r["allowed"] for r in results] == [True, True, False]
        assert results[0]["remaining"] == 1
        assert results[2]["scope"] == "user"

    def test_anonymous_uses_ip(self, client):
        headers = {"X-Forwarded-For": "198.51.100.4"}
        allowed = [
            client.post("/api/admission/check", json={"operation": "analyze"}, headers=headers).json()[
                "allowed"
            ]
            for _ in range(3)
        ]
        assert allowed == [True, True, False]

    def test_unknown_operation(self, client):
        response = client.post("/api/admission/check", json={"operation": "mine-bitcoin"})
        assert response.status_code == 422


class TestMonitoring:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_metrics(self, client):
        client.get("/health")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_unknown_paths_share_one_label(self, client):
        client.get("/no-such-page-7f3a")
        client.get("/another/missing/path")
        client.get("/health")

        text = client.get("/metrics").text

        assert 'endpoint="unmatched"' in text
        assert 'endpoint="/health"' in text
        assert "no-such-page-7f3a" not in text
        assert "/another/missing/path" not in text
