#!/usr/bin/env python3
"""
Notification Routes
Delivery trigger for the external cron, internal scheduling, and the signed
unsubscribe link embedded in every email.
"""

import asyncio
import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from palette.config import Config
from palette.security.deps import require_cron_secret, require_internal_key
from palette.security.unsubscribe_tokens import verify_unsubscribe_token
from palette.services.email_sender import ResendEmailSender, get_email_sender
from palette.services.notification_scheduler import (
    process_due_notifications,
    schedule_notification,
    unsubscribe_user,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Notifications"])


class ScheduleNotificationRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    message_type: Literal["welcome", "engagement", "conversion"]
    delay_minutes: int = Field(default=0, ge=0)
    name: str | None = None
    metadata: dict[str, Any] | None = None


@router.post("/api/emails/process", dependencies=[Depends(require_cron_secret)])
async def process_emails(sender: ResendEmailSender = Depends(get_email_sender)):
    summary = await asyncio.to_thread(process_due_notifications, sender)
    return {"success": True, **summary.to_dict()}


@router.post("/api/emails/schedule", dependencies=[Depends(require_internal_key)])
async def schedule_email(body: ScheduleNotificationRequest):
    row = await asyncio.to_thread(
        schedule_notification,
        body.user_id,
        body.email,
        body.message_type,
        body.delay_minutes,
        body.metadata,
        body.name,
    )
    return {"success": True, "scheduled": row is not None, "notification": row}


@router.get("/api/unsubscribe")
async def unsubscribe(
    email: str | None = Query(default=None),
    token: str | None = Query(default=None),
):
    """One-click opt-out. Always redirects back to the frontend."""
    base_url = Config.FRONTEND_URL.rstrip("/")
    error_url = f"{base_url}?error=invalid_unsubscribe"

    try:
        if not email or not token or not verify_unsubscribe_token(email, token):
            logger.warning(f"Invalid unsubscribe attempt for {email}")
            return RedirectResponse(error_url, status_code=307)
        await asyncio.to_thread(unsubscribe_user, email)
    except Exception as e:
        logger.error(f"Unsubscribe failed for {email}: {e}", exc_info=True)
        return RedirectResponse(error_url, status_code=307)

    return RedirectResponse(f"{base_url}?unsubscribed=true", status_code=307)
