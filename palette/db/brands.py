from typing import Any

from palette.config.supabase_config import get_supabase_client


def get_brand(brand_id: int) -> dict[str, Any] | None:
    client = get_supabase_client()
    result = client.table("brands").select("*").eq("id", brand_id).limit(1).execute()
    return result.data[0] if result.data else None


def get_latest_brand(user_id: str) -> dict[str, Any] | None:
    """The user's most recently updated brand profile."""
    client = get_supabase_client()
    result = (
        client.table("brands")
        .select("*")
        .eq("user_id", user_id)
        .order("updated_at", desc=True)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None
