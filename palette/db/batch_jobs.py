"""
Batch generation job persistence.

Status changes go through ``transition_status`` which only updates a row that
is still in the expected status, so concurrent workers cannot both claim a job
and terminal rows are never rewritten.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from palette.config.supabase_config import get_supabase_client

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
JOB_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def insert_job(
    user_id: str,
    scheduled_for: datetime,
    prompt: str,
    brand_id: int | None = None,
) -> dict[str, Any]:
    client = get_supabase_client()
    result = (
        client.table("batch_generation_jobs")
        .insert(
            {
                "user_id": user_id,
                "brand_id": brand_id,
                "status": STATUS_PENDING,
                "scheduled_for": _as_utc(scheduled_for).isoformat(),
                "prompt": prompt,
                "result_url": None,
                "error": None,
                "processed_at": None,
                "created_at": datetime.now(UTC).isoformat(),
            }
        )
        .execute()
    )
    if not result.data:
        raise RuntimeError(f"Failed to create batch job for {user_id}")
    return result.data[0]


def find_jobs_scheduled_between(
    user_id: str, start: datetime, end: datetime
) -> list[dict[str, Any]]:
    """Jobs for a user with start <= scheduled_for < end."""
    client = get_supabase_client()
    result = (
        client.table("batch_generation_jobs")
        .select("id, status, scheduled_for")
        .eq("user_id", user_id)
        .gte("scheduled_for", start.isoformat())
        .lt("scheduled_for", end.isoformat())
        .execute()
    )
    return result.data or []


def list_due_jobs(now: datetime, limit: int) -> list[dict[str, Any]]:
    """Pending jobs whose scheduled_for has passed, oldest first."""
    client = get_supabase_client()
    result = (
        client.table("batch_generation_jobs")
        .select("*")
        .eq("status", STATUS_PENDING)
        .lte("scheduled_for", now.isoformat())
        .order("scheduled_for")
        .limit(limit)
        .execute()
    )
    return result.data or []


def transition_status(
    job_id: int,
    expected_status: str,
    new_status: str,
    fields: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """
    Conditionally move a job between statuses.

    Returns:
        The updated row, or None when the job was no longer in ``expected_status``.
    """
    client = get_supabase_client()
    payload = {**(fields or {}), "status": new_status}
    result = (
        client.table("batch_generation_jobs")
        .update(payload)
        .eq("id", job_id)
        .eq("status", expected_status)
        .execute()
    )
    return result.data[0] if result.data else None


def bind_brand(job_id: int, brand_id: int) -> dict[str, Any] | None:
    """Attach a brand to a job that has none yet."""
    client = get_supabase_client()
    result = (
        client.table("batch_generation_jobs")
        .update({"brand_id": brand_id})
        .eq("id", job_id)
        .is_("brand_id", "null")
        .execute()
    )
    return result.data[0] if result.data else None


def list_statuses() -> list[str]:
    client = get_supabase_client()
    result = client.table("batch_generation_jobs").select("status").execute()
    return [row["status"] for row in result.data or []]


def list_upcoming(limit: int) -> list[dict[str, Any]]:
    client = get_supabase_client()
    result = (
        client.table("batch_generation_jobs")
        .select("id, user_id, scheduled_for, status")
        .eq("status", STATUS_PENDING)
        .order("scheduled_for")
        .limit(limit)
        .execute()
    )
    return result.data or []
