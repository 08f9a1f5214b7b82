import logging
from datetime import UTC, datetime
from typing import Any

from palette.config.supabase_config import get_supabase_client

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"


def find_pending(user_id: str, message_type: str) -> dict[str, Any] | None:
    client = get_supabase_client()
    result = (
        client.table("scheduled_notifications")
        .select("id")
        .eq("user_id", user_id)
        .eq("message_type", message_type)
        .eq("status", STATUS_PENDING)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def insert_notification(
    user_id: str,
    user_email: str,
    user_name: str | None,
    message_type: str,
    scheduled_for: datetime,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    now = datetime.now(UTC).isoformat()
    client = get_supabase_client()
    result = (
        client.table("scheduled_notifications")
        .insert(
            {
                "user_id": user_id,
                "user_email": user_email,
                "user_name": user_name,
                "message_type": message_type,
                "scheduled_for": scheduled_for.isoformat(),
                "metadata": metadata or {},
                "status": STATUS_PENDING,
                "attempts": 0,
                "error": None,
                "sent_at": None,
                "created_at": now,
                "updated_at": now,
            }
        )
        .execute()
    )
    return result.data[0] if result.data else None


def cancel_pending(user_id: str, message_type: str | None = None) -> int:
    """Cancel pending notifications for a user (optionally one type). Returns rows changed."""
    client = get_supabase_client()
    query = (
        client.table("scheduled_notifications")
        .update({"status": STATUS_CANCELLED, "updated_at": datetime.now(UTC).isoformat()})
        .eq("user_id", user_id)
        .eq("status", STATUS_PENDING)
    )
    if message_type is not None:
        query = query.eq("message_type", message_type)
    result = query.execute()
    return len(result.data or [])


def list_due(now: datetime, limit: int) -> list[dict[str, Any]]:
    client = get_supabase_client()
    result = (
        client.table("scheduled_notifications")
        .select("*")
        .eq("status", STATUS_PENDING)
        .lte("scheduled_for", now.isoformat())
        .order("scheduled_for")
        .limit(limit)
        .execute()
    )
    return result.data or []


def update_notification(notification_id: int, fields: dict[str, Any]) -> dict[str, Any] | None:
    client = get_supabase_client()
    payload = {**fields, "updated_at": datetime.now(UTC).isoformat()}
    result = (
        client.table("scheduled_notifications").update(payload).eq("id", notification_id).execute()
    )
    return result.data[0] if result.data else None
