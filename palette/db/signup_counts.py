import logging
from datetime import UTC, datetime

from palette.config.supabase_config import get_supabase_client, is_unique_violation

logger = logging.getLogger(__name__)


def get_count(date_key: str) -> int | None:
    """Current counter value for a YYYY-MM-DD key, or None if no row exists yet."""
    client = get_supabase_client()
    result = (
        client.table("daily_signup_counts").select("count").eq("date", date_key).limit(1).execute()
    )
    return int(result.data[0]["count"]) if result.data else None


def insert_first(date_key: str) -> bool:
    """
    Create the day's row with count 1.

    Returns:
        True if this call created the row, False if it already existed.
    """
    now = datetime.now(UTC).isoformat()
    client = get_supabase_client()
    try:
        client.table("daily_signup_counts").insert(
            {"date": date_key, "count": 1, "created_at": now, "updated_at": now}
        ).execute()
    except Exception as e:
        if is_unique_violation(e):
            return False
        raise
    return True


def compare_and_set_count(date_key: str, expected: int, new_count: int) -> bool:
    """Set count to ``new_count`` only if it still equals ``expected``."""
    client = get_supabase_client()
    result = (
        client.table("daily_signup_counts")
        .update({"count": new_count, "updated_at": datetime.now(UTC).isoformat()})
        .eq("date", date_key)
        .eq("count", expected)  # Optimistic lock
        .execute()
    )
    return bool(result.data)
