import logging
from datetime import UTC, datetime
from typing import Any

from palette.config.supabase_config import get_supabase_client, is_unique_violation

logger = logging.getLogger(__name__)


def get_user(external_id: str) -> dict[str, Any] | None:
    """Fetch a user row by its external identity key."""
    client = get_supabase_client()
    result = client.table("users").select("*").eq("external_id", external_id).limit(1).execute()
    return result.data[0] if result.data else None


def get_user_by_email(email: str) -> dict[str, Any] | None:
    client = get_supabase_client()
    result = client.table("users").select("*").ilike("email", email).limit(1).execute()
    return result.data[0] if result.data else None


def get_user_by_stripe_subscription(subscription_id: str) -> dict[str, Any] | None:
    client = get_supabase_client()
    result = (
        client.table("users")
        .select("*")
        .eq("stripe_subscription_id", subscription_id)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def get_user_by_stripe_customer(customer_id: str) -> dict[str, Any] | None:
    client = get_supabase_client()
    result = (
        client.table("users").select("*").eq("stripe_customer_id", customer_id).limit(1).execute()
    )
    return result.data[0] if result.data else None


def insert_placeholder_user(
    external_id: str, email: str | None = None, name: str | None = None
) -> dict[str, Any] | None:
    """
    Insert a zero-balance free user row.

    Returns:
        The inserted row, or None when another caller created the identity first
        (unique violation on external_id).
    """
    now = datetime.now(UTC).isoformat()
    client = get_supabase_client()
    try:
        result = (
            client.table("users")
            .insert(
                {
                    "external_id": external_id,
                    "email": email,
                    "name": name,
                    "plan": "free",
                    "credits_remaining": 0,
                    "is_early_bird": False,
                    "signup_tier": None,
                    "email_unsubscribed": False,
                    "team_id": None,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            .execute()
        )
    except Exception as e:
        if is_unique_violation(e):
            logger.info(f"User {external_id} already provisioned by a concurrent request")
            return None
        raise

    return result.data[0] if result.data else None


def update_user(external_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
    """Update a user row, stamping updated_at. Returns the updated row."""
    client = get_supabase_client()
    payload = {**fields, "updated_at": datetime.now(UTC).isoformat()}
    result = client.table("users").update(payload).eq("external_id", external_id).execute()
    return result.data[0] if result.data else None


def complete_signup(external_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
    """
    Apply the signup grant to a placeholder that has no tier yet.

    Returns:
        The updated row, or None when the user was already provisioned.
    """
    client = get_supabase_client()
    payload = {**fields, "updated_at": datetime.now(UTC).isoformat()}
    result = (
        client.table("users")
        .update(payload)
        .eq("external_id", external_id)
        .is_("signup_tier", "null")
        .execute()
    )
    return result.data[0] if result.data else None


def claim_unprovisioned_user(external_id: str, seen_updated_at: str) -> dict[str, Any] | None:
    """
    Take over an abandoned placeholder by bumping updated_at from the value
    the caller read. Only one concurrent caller gets the row back.
    """
    client = get_supabase_client()
    result = (
        client.table("users")
        .update({"updated_at": datetime.now(UTC).isoformat()})
        .eq("external_id", external_id)
        .eq("updated_at", seen_updated_at)
        .is_("signup_tier", "null")
        .execute()
    )
    return result.data[0] if result.data else None


def delete_unprovisioned_user(external_id: str) -> None:
    client = get_supabase_client()
    client.table("users").delete().eq("external_id", external_id).is_(
        "signup_tier", "null"
    ).execute()


def compare_and_set_credits(
    external_id: str,
    expected: int,
    new_balance: int,
    extra_fields: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """
    Set credits_remaining only if it still equals ``expected``.

    Returns:
        The updated row, or None when the balance changed underneath us.
    """
    client = get_supabase_client()
    payload = {
        **(extra_fields or {}),
        "credits_remaining": new_balance,
        "updated_at": datetime.now(UTC).isoformat(),
    }
    result = (
        client.table("users")
        .update(payload)
        .eq("external_id", external_id)
        .eq("credits_remaining", expected)  # Optimistic lock
        .execute()
    )
    return result.data[0] if result.data else None


def list_users_by_plans(plans: list[str] | tuple[str, ...]) -> list[dict[str, Any]]:
    client = get_supabase_client()
    result = (
        client.table("users")
        .select("external_id, email, name, plan, team_id")
        .in_("plan", list(plans))
        .execute()
    )
    return result.data or []


def set_team(external_id: str, team_id: int | None) -> dict[str, Any] | None:
    return update_user(external_id, {"team_id": team_id})


def clear_team_for_all(team_id: int) -> list[dict[str, Any]]:
    """Detach every user pointing at a team."""
    client = get_supabase_client()
    result = (
        client.table("users")
        .update({"team_id": None, "updated_at": datetime.now(UTC).isoformat()})
        .eq("team_id", team_id)
        .execute()
    )
    return result.data or []
