"""
Team and team membership persistence.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from palette.config.supabase_config import get_supabase_client, is_unique_violation

logger = logging.getLogger(__name__)


# ===== teams =====


def get_team(team_id: int) -> dict[str, Any] | None:
    client = get_supabase_client()
    result = client.table("teams").select("*").eq("id", team_id).limit(1).execute()
    return result.data[0] if result.data else None


def get_team_by_owner(owner_id: str) -> dict[str, Any] | None:
    client = get_supabase_client()
    result = client.table("teams").select("*").eq("owner_id", owner_id).limit(1).execute()
    return result.data[0] if result.data else None


def insert_team(
    name: str, owner_id: str, credits_pool: int, credits_reset_at: datetime
) -> dict[str, Any]:
    now = datetime.now(UTC).isoformat()
    client = get_supabase_client()
    result = (
        client.table("teams")
        .insert(
            {
                "name": name,
                "owner_id": owner_id,
                "credits_pool": credits_pool,
                "credits_reset_at": credits_reset_at.isoformat(),
                "created_at": now,
                "updated_at": now,
            }
        )
        .execute()
    )
    if not result.data:
        raise RuntimeError(f"Failed to create team for {owner_id}")
    return result.data[0]


def update_team(team_id: int, fields: dict[str, Any]) -> dict[str, Any] | None:
    client = get_supabase_client()
    payload = {**fields, "updated_at": datetime.now(UTC).isoformat()}
    result = client.table("teams").update(payload).eq("id", team_id).execute()
    return result.data[0] if result.data else None


def delete_team(team_id: int) -> None:
    client = get_supabase_client()
    client.table("teams").delete().eq("id", team_id).execute()


def compare_and_set_pool(
    team_id: int,
    expected: int,
    new_pool: int,
    extra_fields: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Set credits_pool only if it still equals ``expected``. None on contention."""
    client = get_supabase_client()
    payload = {
        **(extra_fields or {}),
        "credits_pool": new_pool,
        "updated_at": datetime.now(UTC).isoformat(),
    }
    result = (
        client.table("teams")
        .update(payload)
        .eq("id", team_id)
        .eq("credits_pool", expected)  # Optimistic lock
        .execute()
    )
    return result.data[0] if result.data else None


# ===== team_members =====


def get_membership(user_id: str) -> dict[str, Any] | None:
    """A user's single membership row (pending or accepted)."""
    client = get_supabase_client()
    result = client.table("team_members").select("*").eq("user_id", user_id).limit(1).execute()
    return result.data[0] if result.data else None


def list_members(team_id: int) -> list[dict[str, Any]]:
    client = get_supabase_client()
    result = (
        client.table("team_members")
        .select("*")
        .eq("team_id", team_id)
        .order("invited_at")
        .execute()
    )
    return result.data or []


def insert_membership(
    team_id: int,
    user_id: str,
    role: str,
    invited_by: str | None = None,
    accepted: bool = False,
) -> dict[str, Any] | None:
    """
    Insert a membership row.

    Returns:
        The new row, or None when the user already has a membership.
    """
    now = datetime.now(UTC).isoformat()
    client = get_supabase_client()
    try:
        result = (
            client.table("team_members")
            .insert(
                {
                    "team_id": team_id,
                    "user_id": user_id,
                    "role": role,
                    "invited_by": invited_by,
                    "invited_at": now,
                    "accepted_at": now if accepted else None,
                }
            )
            .execute()
        )
    except Exception as e:
        if is_unique_violation(e):
            logger.info(f"User {user_id} already has a team membership")
            return None
        raise
    return result.data[0] if result.data else None


def mark_membership_accepted(user_id: str) -> dict[str, Any] | None:
    client = get_supabase_client()
    result = (
        client.table("team_members")
        .update({"accepted_at": datetime.now(UTC).isoformat()})
        .eq("user_id", user_id)
        .is_("accepted_at", "null")
        .execute()
    )
    return result.data[0] if result.data else None


def update_member_role(team_id: int, user_id: str, role: str) -> dict[str, Any] | None:
    client = get_supabase_client()
    result = (
        client.table("team_members")
        .update({"role": role})
        .eq("team_id", team_id)
        .eq("user_id", user_id)
        .execute()
    )
    return result.data[0] if result.data else None


def delete_membership(team_id: int, user_id: str) -> bool:
    client = get_supabase_client()
    result = (
        client.table("team_members")
        .delete()
        .eq("team_id", team_id)
        .eq("user_id", user_id)
        .execute()
    )
    return bool(result.data)


def delete_memberships_for_team(team_id: int) -> None:
    client = get_supabase_client()
    client.table("team_members").delete().eq("team_id", team_id).execute()
