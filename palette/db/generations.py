from datetime import UTC, datetime
from typing import Any

from palette.config.supabase_config import get_supabase_client


def record_generation(
    user_id: str,
    brand_id: int | None,
    prompt: str,
    image_url: str,
    generation_type: str = "daily",
    image_format: str = "1:1",
) -> dict[str, Any] | None:
    """Store a finished generation so it shows up in the user's gallery."""
    client = get_supabase_client()
    result = (
        client.table("generations")
        .insert(
            {
                "user_id": user_id,
                "brand_id": brand_id,
                "type": generation_type,
                "prompt": prompt,
                "image_url": image_url,
                "format": image_format,
                "created_at": datetime.now(UTC).isoformat(),
            }
        )
        .execute()
    )
    return result.data[0] if result.data else None
