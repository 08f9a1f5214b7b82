"""
Tests for batch job persistence: conditional transitions and time handling.
"""

from datetime import UTC, datetime, timedelta, timezone

from palette.db import batch_jobs


class TestInsertJob:
    def test_naive_datetime_stored_as_utc(self, fake_db):
        job = batch_jobs.insert_job("u1", datetime(2026, 10, 18, 8, 30), "daily-2026-10-18")
        assert job["scheduled_for"] == "2026-10-18T08:30:00+00:00"

    def test_offset_datetime_converted(self, fake_db):
        plus_two = timezone(timedelta(hours=2))
        job = batch_jobs.insert_job("u1", datetime(2026, 10, 18, 10, 30, tzinfo=plus_two), "p")
        assert job["scheduled_for"] == "2026-10-18T08:30:00+00:00"
        assert job["status"] == batch_jobs.STATUS_PENDING


class TestTransitions:
    def test_claim_only_once(self, fake_db):
        job = batch_jobs.insert_job("u1", datetime.now(UTC), "p")

        first = batch_jobs.transition_status(
            job["id"], batch_jobs.STATUS_PENDING, batch_jobs.STATUS_PROCESSING
        )
        second = batch_jobs.transition_status(
            job["id"], batch_jobs.STATUS_PENDING, batch_jobs.STATUS_PROCESSING
        )

        assert first["status"] == batch_jobs.STATUS_PROCESSING
        assert second is None

    def test_terminal_row_not_rewritten(self, fake_db):
        job = batch_jobs.insert_job("u1", datetime.now(UTC), "p")
        batch_jobs.transition_status(job["id"], "pending", "processing")
        batch_jobs.transition_status(job["id"], "processing", "completed", {"result_url": "x"})

        assert batch_jobs.transition_status(job["id"], "processing", "failed") is None
        assert fake_db.rows("batch_generation_jobs")[0]["status"] == "completed"

    def test_bind_brand_once(self, fake_db):
        job = batch_jobs.insert_job("u1", datetime.now(UTC), "p")

        assert batch_jobs.bind_brand(job["id"], 7)["brand_id"] == 7
        assert batch_jobs.bind_brand(job["id"], 8) is None


class TestQueries:
    def test_due_jobs_oldest_first(self, fake_db):
        now = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
        batch_jobs.insert_job("late", now - timedelta(minutes=5), "p")
        batch_jobs.insert_job("early", now - timedelta(hours=2), "p")
        batch_jobs.insert_job("future", now + timedelta(hours=1), "p")

        due = batch_jobs.list_due_jobs(now, limit=10)

        assert [j["user_id"] for j in due] == ["early", "late"]

    def test_scheduled_between_half_open(self, fake_db):
        start = datetime(2026, 10, 18, tzinfo=UTC)
        end = start + timedelta(days=1)
        batch_jobs.insert_job("u1", start, "p")
        batch_jobs.insert_job("u1", end, "p")

        assert len(batch_jobs.find_jobs_scheduled_between("u1", start, end)) == 1
