#!/usr/bin/env python3
"""
Stripe Webhook Route
Receives signed billing events and hands them to the billing sync service.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from palette.services.billing_sync import (
    BillingSyncService,
    WebhookSignatureError,
    get_billing_sync_service,
)
from palette.utils.exceptions import APIExceptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe Payments"])


@router.post("/webhook", status_code=200)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="stripe-signature"),
    billing: BillingSyncService = Depends(get_billing_sync_service),
):
    """
    Handle Stripe webhook events

    400 when the signature or payload is bad. Handled, duplicate and
    unknown-identity events answer 200. Anything else is a 500 so Stripe
    redelivers the event.
    """
    payload = await request.body()

    try:
        result = await asyncio.to_thread(billing.handle_webhook, payload, stripe_signature)
    except WebhookSignatureError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise APIExceptions.bad_request(str(e)) from e
    except Exception as e:
        raise APIExceptions.internal_error("webhook processing", e) from e

    return JSONResponse(
        status_code=200,
        content={
            "success": result.success,
            "event_type": result.event_type,
            "event_id": result.event_id,
            "message": result.message,
            "duplicate": result.duplicate,
            "processed_at": result.processed_at.isoformat(),
        },
    )
