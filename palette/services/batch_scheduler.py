"""
Batch Job Scheduler

Runs on an external periodic trigger. Each tick:

1. creates at most one ``daily-YYYY-MM-DD`` job per paid subscriber with a
   brand profile (skipped if any job is already scheduled that UTC day)
2. drains up to BATCH_SIZE due pending jobs, oldest first

Job lifecycle: pending -> processing -> completed | failed. Every status change
is conditional on the status the job is expected to be in, so a job claimed by
another worker is skipped and terminal jobs are never touched again. A job
whose generation fails after its credit was consumed gets the credit back.
"""

import logging
import random
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from palette.config import Config
from palette.config.usage_limits import (
    BATCH_SIZE,
    DAILY_JOB_CREDIT_COST,
    PAID_PLANS,
    QUEUE_STATS_UPCOMING_LIMIT,
)
from palette.db import batch_jobs as jobs_db
from palette.db import brands as brands_db
from palette.db import generations as generations_db
from palette.db import users as users_db
from palette.services import credit_gate, credit_ledger
from palette.services.generation_client import (
    GenerationError,
    ImageGenerator,
    call_with_timeout,
    get_generation_client,
)
from palette.services.prometheus_metrics import record_batch_job

logger = logging.getLogger(__name__)

NO_CREDITS_ERROR = "No credits remaining for daily visual"
NO_BRAND_ERROR = "No brand found for user"


@dataclass
class TickSummary:
    created: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class JobFailure(Exception):
    """Terminal failure of one job; the message is stored in the job's error column"""


def day_bounds(now: datetime) -> tuple[datetime, datetime]:
    """[00:00 UTC of now's date, 00:00 UTC of the next day)"""
    start = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def build_prompt(brand: dict[str, Any], rng: random.Random | None = None) -> str:
    """
    Deterministic prompt from brand attributes plus one marketing angle picked
    with ``rng``.
    """
    rng = rng or random.Random()
    name = brand.get("name") or "Brand"
    industry = brand.get("industry") or "business"
    colors = brand.get("colors") or []
    aesthetic = brand.get("aesthetic") or []
    values = brand.get("values") or []
    angles = brand.get("marketing_angles") or []
    angle = rng.choice(angles) if angles else None

    parts = [f"Create a professional social media visual for {name}"]
    if industry:
        parts.append(f"in the {industry} industry")
    if colors:
        parts.append(f"using brand colors: {', '.join(colors[:3])}")
    if aesthetic:
        parts.append(f"with {aesthetic[0]} aesthetic")
    if angle:
        concept = (angle.get("title") or angle.get("concept")) if isinstance(angle, dict) else angle
        if concept:
            parts.append(f'featuring the concept: "{concept}"')
    if values:
        parts.append(f"emphasizing {values[0]}")
    parts.append("Modern, clean design with professional typography.")
    parts.append("High quality, suitable for Instagram/LinkedIn.")
    return ". ".join(parts)


class BatchScheduler:
    def __init__(
        self,
        generator: ImageGenerator | None = None,
        rng: random.Random | None = None,
        timeout_seconds: float | None = None,
        batch_size: int = BATCH_SIZE,
    ):
        self._generator = generator
        self.rng = rng or random.Random()
        self.timeout_seconds = timeout_seconds or Config.GENERATION_TIMEOUT_SECONDS
        self.batch_size = batch_size

    @property
    def generator(self) -> ImageGenerator:
        if self._generator is None:
            self._generator = get_generation_client()
        return self._generator

    # ===== creation =====

    def create_daily_jobs(self, now: datetime | None = None) -> int:
        """Queue today's job for each paid subscriber that has none yet."""
        now = now or datetime.now(UTC)
        start, end = day_bounds(now)
        tag = f"daily-{start.date().isoformat()}"
        created = 0

        for user in users_db.list_users_by_plans(PAID_PLANS):
            user_id = user["external_id"]
            try:
                if jobs_db.find_jobs_scheduled_between(user_id, start, end):
                    continue
                brand = brands_db.get_latest_brand(user_id)
                if brand is None:
                    continue
                jobs_db.insert_job(user_id, now, tag, brand_id=brand["id"])
                created += 1
            except Exception as e:
                logger.error(f"Failed to create daily job for {user_id}: {e}", exc_info=True)

        if created:
            logger.info(f"Created {created} daily jobs for paid subscribers")
        return created

    def enqueue_job(
        self,
        user_id: str,
        scheduled_for: datetime | None = None,
        prompt: str = "reactivation",
        brand_id: int | None = None,
    ) -> dict[str, Any]:
        """On-demand job (e.g. reactivation) at any time."""
        job = jobs_db.insert_job(
            user_id, scheduled_for or datetime.now(UTC), prompt, brand_id=brand_id
        )
        logger.info(f"Enqueued {prompt} job {job['id']} for {user_id}")
        return job

    # ===== execution =====

    def _resolve_brand(self, job: dict[str, Any]) -> dict[str, Any]:
        if job.get("brand_id"):
            brand = brands_db.get_brand(job["brand_id"])
        else:
            brand = brands_db.get_latest_brand(job["user_id"])
            if brand is not None:
                jobs_db.bind_brand(job["id"], brand["id"])
        if brand is None:
            raise JobFailure(NO_BRAND_ERROR)
        return brand

    def _fail(self, job_id: int, message: str) -> None:
        updated = jobs_db.transition_status(
            job_id,
            jobs_db.STATUS_PROCESSING,
            jobs_db.STATUS_FAILED,
            {"error": message, "processed_at": datetime.now(UTC).isoformat()},
        )
        if updated is None:
            logger.warning(f"Batch job {job_id} left processing before it could be failed")

    def execute_job(self, job: dict[str, Any]) -> str:
        """
        Run one claimed-or-claimable job.

        Returns:
            "succeeded", "failed" or "skipped" (claim lost)
        """
        job_id = job["id"]
        user_id = job["user_id"]

        if jobs_db.transition_status(job_id, jobs_db.STATUS_PENDING, jobs_db.STATUS_PROCESSING) is None:
            logger.info(f"Batch job {job_id} already claimed, skipping")
            return "skipped"

        consumed: credit_ledger.ConsumeResult | None = None
        try:
            brand = self._resolve_brand(job)

            try:
                consumed = credit_gate.charge(user_id, DAILY_JOB_CREDIT_COST)
            except credit_ledger.InsufficientCreditsError as e:
                raise JobFailure(NO_CREDITS_ERROR) from e
            except credit_ledger.UserNotFoundError as e:
                raise JobFailure("User not found") from e

            prompt = build_prompt(brand, self.rng)
            image_url = call_with_timeout(
                self.generator.generate_image, self.timeout_seconds, prompt, "1:1"
            )
            if not image_url:
                raise GenerationError("Failed to generate image")

            generations_db.record_generation(user_id, brand["id"], prompt, image_url)
            completed = jobs_db.transition_status(
                job_id,
                jobs_db.STATUS_PROCESSING,
                jobs_db.STATUS_COMPLETED,
                {"result_url": image_url, "processed_at": datetime.now(UTC).isoformat()},
            )
            if completed is None:
                logger.warning(f"Batch job {job_id} left processing before completion")
            logger.info(f"Batch job {job_id} completed for user {user_id}")
            return "succeeded"

        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Batch job {job_id} failed: {message}")
            if consumed is not None:
                try:
                    credit_ledger.refund(user_id, DAILY_JOB_CREDIT_COST, owner=consumed)
                except Exception as refund_error:
                    logger.error(
                        f"Refund for failed batch job {job_id} ({user_id}) failed: {refund_error}",
                        exc_info=True,
                    )
            try:
                self._fail(job_id, message)
            except Exception as fail_error:
                logger.error(
                    f"Could not mark batch job {job_id} failed: {fail_error}", exc_info=True
                )
            return "failed"

    def drain_due_jobs(self, now: datetime | None = None, summary: TickSummary | None = None) -> TickSummary:
        now = now or datetime.now(UTC)
        summary = summary or TickSummary()

        due = jobs_db.list_due_jobs(now, self.batch_size)
        if due:
            logger.info(f"Processing {len(due)} batch jobs")

        for job in due:
            summary.processed += 1
            try:
                outcome = self.execute_job(job)
            except Exception as e:
                # Storage errors while claiming or failing; keep going with the rest
                logger.error(f"Unexpected error on batch job {job['id']}: {e}", exc_info=True)
                outcome = "failed"

            record_batch_job(outcome)
            if outcome == "succeeded":
                summary.succeeded += 1
            elif outcome == "skipped":
                summary.skipped += 1
            else:
                summary.failed += 1

        return summary

    def run_tick(self, now: datetime | None = None) -> TickSummary:
        now = now or datetime.now(UTC)
        summary = TickSummary(created=self.create_daily_jobs(now))
        self.drain_due_jobs(now, summary)
        logger.info(f"Scheduler tick: {summary.to_dict()}")
        return summary


def get_queue_stats() -> dict[str, Any]:
    """Job counts per status plus the next pending jobs."""
    counts = {status: 0 for status in jobs_db.JOB_STATUSES}
    for status in jobs_db.list_statuses():
        counts[status] = counts.get(status, 0) + 1

    return {
        "stats": counts,
        "next_pending": [
            {"id": job["id"], "user_id": job["user_id"], "scheduled_for": job["scheduled_for"]}
            for job in jobs_db.list_upcoming(QUEUE_STATS_UPCOMING_LIMIT)
        ],
    }


def get_batch_scheduler() -> BatchScheduler:
    return BatchScheduler()


def run_scheduler_tick(now: datetime | None = None) -> TickSummary:
    return get_batch_scheduler().run_tick(now)
