"""
Tests for the batch job scheduler.

Covers:
- Idempotent daily job creation for paid subscribers
- Job execution: claim, charge, generate, record, complete
- Failures: missing brand, no credits, generation error, timeout (with refund)
- Terminal states are never touched again
- Prompt construction and queue stats
"""

import random
import threading
import time
from datetime import UTC, datetime, timedelta

import pytest

from palette.db import batch_jobs
from palette.services import batch_scheduler
from palette.services.batch_scheduler import (
    NO_BRAND_ERROR,
    NO_CREDITS_ERROR,
    BatchScheduler,
    build_prompt,
    day_bounds,
    get_queue_stats,
    run_scheduler_tick,
)
from palette.services.generation_client import GenerationError
from palette.services.notification_scheduler import schedule_notification
from tests.helpers.mocks import FakeGenerationClient, mock_brand, mock_user

NOW = datetime(2026, 10, 18, 8, 30, tzinfo=UTC)


class SlowGenerator:
    def __init__(self, delay: float):
        self.delay = delay

    def generate_image(self, prompt, aspect_ratio="1:1"):
        time.sleep(self.delay)
        return "https://cdn.example.com/late.png"


@pytest.fixture
def subscribers(fake_db):
    fake_db.add_test_data(
        "users",
        [
            mock_user("paid1", email="p1@example.com", plan="tier1", credits_remaining=50),
            mock_user("paid2", email="p2@example.com", plan="tier2", credits_remaining=150),
            mock_user("nobrand", email="nb@example.com", plan="tier1", credits_remaining=50),
            mock_user("free1", email="f1@example.com", plan="free", credits_remaining=3),
        ],
    )
    fake_db.add_test_data(
        "brands",
        [
            mock_brand("paid1", id=11),
            mock_brand("paid2", id=22, name="Bolt Bikes"),
            mock_brand("free1", id=33),
        ],
    )
    return fake_db


def _jobs(fake_db):
    return fake_db.rows("batch_generation_jobs")


def _user(fake_db, external_id):
    return next(u for u in fake_db.rows("users") if u["external_id"] == external_id)


class TestDailyJobCreation:
    def test_creates_one_job_per_paid_subscriber_with_brand(self, subscribers):
        created = BatchScheduler(generator=FakeGenerationClient()).create_daily_jobs(NOW)

        assert created == 2
        jobs = _jobs(subscribers)
        assert {j["user_id"] for j in jobs} == {"paid1", "paid2"}
        assert all(j["prompt"] == "daily-2026-10-18" for j in jobs)
        assert all(j["status"] == "pending" for j in jobs)
        assert {j["brand_id"] for j in jobs} == {11, 22}

    def test_same_day_twice_is_idempotent(self, subscribers):
        scheduler = BatchScheduler(generator=FakeGenerationClient())
        scheduler.create_daily_jobs(NOW)

        assert scheduler.create_daily_jobs(NOW + timedelta(hours=10)) == 0
        assert len(_jobs(subscribers)) == 2

    def test_next_day_creates_again(self, subscribers):
        scheduler = BatchScheduler(generator=FakeGenerationClient())
        scheduler.create_daily_jobs(NOW)

        assert scheduler.create_daily_jobs(NOW + timedelta(days=1)) == 2

    def test_day_bounds_utc(self):
        start, end = day_bounds(NOW)
        assert start == datetime(2026, 10, 18, tzinfo=UTC)
        assert end == datetime(2026, 10, 19, tzinfo=UTC)


class TestExecution:
    def test_tick_creates_and_completes(self, subscribers):
        generator = FakeGenerationClient()

        summary = BatchScheduler(generator=generator, rng=random.Random(1)).run_tick(NOW)

        assert summary.to_dict() == {
            "created": 2,
            "processed": 2,
            "succeeded": 2,
            "failed": 0,
            "skipped": 0,
        }
        for job in _jobs(subscribers):
            assert job["status"] == "completed"
            assert job["result_url"] == generator.image_url
            assert job["processed_at"] is not None
        assert _user(subscribers, "paid1")["credits_remaining"] == 49
        generations = subscribers.rows("generations")
        assert len(generations) == 2
        assert all(g["type"] == "daily" and g["format"] == "1:1" for g in generations)

    def test_no_credits_fails_job(self, subscribers):
        subscribers.table("users").update({"credits_remaining": 0}).eq(
            "external_id", "paid1"
        ).execute()
        scheduler = BatchScheduler(generator=FakeGenerationClient())
        job = scheduler.enqueue_job("paid1", NOW, prompt="reactivation", brand_id=11)

        assert scheduler.execute_job(job) == "failed"

        stored = _jobs(subscribers)[0]
        assert stored["status"] == "failed"
        assert stored["error"] == NO_CREDITS_ERROR
        assert _user(subscribers, "paid1")["credits_remaining"] == 0

    def test_generation_error_refunds(self, subscribers):
        scheduler = BatchScheduler(generator=FakeGenerationClient(error=GenerationError("model down")))
        job = scheduler.enqueue_job("paid1", NOW, brand_id=11)

        assert scheduler.execute_job(job) == "failed"

        stored = _jobs(subscribers)[0]
        assert stored["status"] == "failed"
        assert "model down" in stored["error"]
        assert _user(subscribers, "paid1")["credits_remaining"] == 50
        assert subscribers.rows("generations") == []

    def test_empty_result_fails(self, subscribers):
        scheduler = BatchScheduler(generator=FakeGenerationClient(image_url=None))
        job = scheduler.enqueue_job("paid1", NOW, brand_id=11)

        assert scheduler.execute_job(job) == "failed"
        assert _user(subscribers, "paid1")["credits_remaining"] == 50

    def test_timeout_fails_and_refunds(self, subscribers):
        scheduler = BatchScheduler(generator=SlowGenerator(0.5), timeout_seconds=0.05)
        job = scheduler.enqueue_job("paid1", NOW, brand_id=11)

        assert scheduler.execute_job(job) == "failed"

        stored = _jobs(subscribers)[0]
        assert stored["status"] == "failed"
        assert "did not finish" in stored["error"]
        assert _user(subscribers, "paid1")["credits_remaining"] == 50

    def test_missing_brand_fails_without_charge(self, subscribers):
        scheduler = BatchScheduler(generator=FakeGenerationClient())
        job = scheduler.enqueue_job("nobrand", NOW)

        assert scheduler.execute_job(job) == "failed"

        assert _jobs(subscribers)[0]["error"] == NO_BRAND_ERROR
        assert _user(subscribers, "nobrand")["credits_remaining"] == 50

    def test_brand_bound_lazily(self, subscribers):
        scheduler = BatchScheduler(generator=FakeGenerationClient())
        job = scheduler.enqueue_job("paid2", NOW)
        assert job["brand_id"] is None

        assert scheduler.execute_job(job) == "succeeded"
        assert _jobs(subscribers)[0]["brand_id"] == 22

    def test_future_jobs_wait(self, subscribers):
        scheduler = BatchScheduler(generator=FakeGenerationClient())
        scheduler.enqueue_job("paid1", NOW + timedelta(hours=2), brand_id=11)

        summary = scheduler.drain_due_jobs(NOW)

        assert summary.processed == 0
        assert _jobs(subscribers)[0]["status"] == "pending"


class TestTerminalStates:
    def test_claimed_job_skipped(self, subscribers):
        scheduler = BatchScheduler(generator=FakeGenerationClient())
        job = scheduler.enqueue_job("paid1", NOW, brand_id=11)
        assert scheduler.execute_job(job) == "succeeded"

        # Stale copy of the row still says pending
        assert scheduler.execute_job(job) == "skipped"
        assert _user(subscribers, "paid1")["credits_remaining"] == 49

    def test_draining_terminal_jobs_is_noop(self, subscribers):
        scheduler = BatchScheduler(generator=FakeGenerationClient(error=GenerationError("x")))
        scheduler.run_tick(NOW)
        before = _jobs(subscribers)
        assert {j["status"] for j in before} == {"failed"}

        summary = scheduler.drain_due_jobs(NOW + timedelta(hours=1))

        assert summary.processed == 0
        assert _jobs(subscribers) == before


class TestPromptAndStats:
    def test_prompt_from_brand(self):
        brand = mock_brand()
        prompt = build_prompt(brand, random.Random(3))

        assert prompt.startswith("Create a professional social media visual for Acme Coffee")
        assert "in the Food & Beverage industry" in prompt
        assert "#112233, #445566, #778899" in prompt
        assert "#AABBCC" not in prompt
        assert "with minimal aesthetic" in prompt
        assert "emphasizing sustainability" in prompt
        assert ('"Morning ritual"' in prompt) or ('"Farm to cup"' in prompt)

    def test_prompt_deterministic_for_seed(self):
        brand = mock_brand()
        assert build_prompt(brand, random.Random(7)) == build_prompt(brand, random.Random(7))

    def test_prompt_minimal_brand(self):
        prompt = build_prompt({"name": "Solo"}, random.Random(0))
        assert prompt.startswith("Create a professional social media visual for Solo")
        assert "featuring" not in prompt

    def test_queue_stats(self, subscribers):
        scheduler = BatchScheduler(generator=FakeGenerationClient())
        scheduler.enqueue_job("paid1", NOW + timedelta(days=1), brand_id=11)
        done = scheduler.enqueue_job("paid2", NOW, brand_id=22)
        scheduler.execute_job(done)

        stats = get_queue_stats()

        assert stats["stats"] == {"pending": 1, "processing": 0, "completed": 1, "failed": 0}
        assert [j["user_id"] for j in stats["next_pending"]] == ["paid1"]


class HangingGenerator:
    """Blocks until released, counting how many calls actually started"""

    def __init__(self):
        self.release = threading.Event()
        self.calls = 0
        self._lock = threading.Lock()

    def generate_image(self, prompt, aspect_ratio="1:1"):
        with self._lock:
            self.calls += 1
        self.release.wait(5)
        return None


class TestFailureRecovery:
    def test_refund_survives_failed_status_write(self, subscribers, monkeypatch):
        original = batch_jobs.transition_status

        def failing_on_failed(job_id, expected_status, new_status, fields=None):
            if new_status == batch_jobs.STATUS_FAILED:
                raise RuntimeError("storage unavailable")
            return original(job_id, expected_status, new_status, fields)

        monkeypatch.setattr(batch_jobs, "transition_status", failing_on_failed)
        scheduler = BatchScheduler(generator=FakeGenerationClient(error=GenerationError("model down")))
        scheduler.enqueue_job("paid1", NOW - timedelta(minutes=1), brand_id=11)

        summary = scheduler.drain_due_jobs(NOW)

        assert summary.failed == 1
        assert _user(subscribers, "paid1")["credits_remaining"] == 50

    def test_hung_generations_do_not_starve_later_jobs(self, subscribers):
        generator = HangingGenerator()
        scheduler = BatchScheduler(generator=generator, timeout_seconds=0.1)
        for _ in range(10):
            scheduler.enqueue_job("paid1", NOW - timedelta(minutes=1), brand_id=11)

        try:
            summary = scheduler.drain_due_jobs(NOW)
        finally:
            generator.release.set()

        assert summary.failed == 10
        assert generator.calls == 10
        assert _user(subscribers, "paid1")["credits_remaining"] == 50

    def test_paid_job_cancels_pending_conversion(self, subscribers):
        schedule_notification("paid1", "p1@example.com", "conversion", delay_minutes=60)
        scheduler = BatchScheduler(generator=FakeGenerationClient())
        job = scheduler.enqueue_job("paid1", NOW, brand_id=11)

        assert scheduler.execute_job(job) == "succeeded"
        assert subscribers.rows("scheduled_notifications")[0]["status"] == "cancelled"


class TestSchedulerTick:
    def test_run_scheduler_tick_uses_default_scheduler(self, subscribers, monkeypatch):
        monkeypatch.setattr(
            batch_scheduler,
            "get_batch_scheduler",
            lambda: BatchScheduler(generator=FakeGenerationClient()),
        )

        summary = run_scheduler_tick(NOW)

        assert summary.created == 2
        assert summary.succeeded == 2
