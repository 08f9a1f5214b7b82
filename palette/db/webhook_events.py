#!/usr/bin/env python3
"""
Webhook Event Tracking Database Module
Handles storage and retrieval of processed billing webhook events for idempotency
"""

import logging
from datetime import UTC, datetime
from typing import Any

from palette.config.supabase_config import execute_with_retry, is_unique_violation

logger = logging.getLogger(__name__)

_missing_table_warning_logged = False


def _maybe_log_missing_table_hint(error: Exception) -> None:
    """
    Emit a single actionable warning when the billing_webhook_events table
    is missing from the Supabase schema cache.
    """
    global _missing_table_warning_logged

    if _missing_table_warning_logged:
        return

    message = str(error)
    if "billing_webhook_events" in message or "PGRST205" in message:
        logger.warning(
            "billing_webhook_events table is unavailable in Supabase (likely migrations not "
            "applied or schema cache stale). Apply supabase/migrations and run "
            "NOTIFY pgrst, 'reload schema'; to refresh PostgREST."
        )
        _missing_table_warning_logged = True


def is_event_processed(event_id: str) -> bool:
    """
    Check if a webhook event has already been processed

    Args:
        event_id: Stripe event ID (evt_xxx)

    Returns:
        True if event was already processed, False otherwise
    """
    try:

        def _check_event(client):
            return (
                client.table("billing_webhook_events")
                .select("event_id")
                .eq("event_id", event_id)
                .execute()
            )

        result = execute_with_retry(_check_event, operation_name="is_event_processed")

        exists = bool(result.data)
        if exists:
            logger.warning(f"Duplicate webhook event detected: {event_id}")

        return exists

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error checking if event is processed: {e}", exc_info=True)
        # Ledger handlers are idempotent, so processing twice beats dropping an event
        return False


def record_processed_event(
    event_id: str,
    event_type: str,
    user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """
    Record that a webhook event has been processed

    Args:
        event_id: Stripe event ID (evt_xxx)
        event_type: Stripe event type (e.g., invoice.paid)
        user_id: External id of the user the event resolved to (if any)
        metadata: Additional event metadata for debugging

    Returns:
        True if recorded successfully, False otherwise
    """
    try:

        def _record_event(client):
            return (
                client.table("billing_webhook_events")
                .insert(
                    {
                        "event_id": event_id,
                        "event_type": event_type,
                        "user_id": user_id,
                        "metadata": metadata or {},
                        "processed_at": datetime.now(UTC).isoformat(),
                    }
                )
                .execute()
            )

        result = execute_with_retry(_record_event, operation_name="record_processed_event")

        if result.data:
            logger.info(f"Recorded processed webhook event: {event_id} ({event_type})")
            return True
        logger.error(f"Failed to record webhook event: {event_id}")
        return False

    except Exception as e:
        if is_unique_violation(e):
            logger.info(f"Webhook event {event_id} was recorded by a concurrent delivery")
            return True
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error recording processed event: {e}", exc_info=True)
        return False
