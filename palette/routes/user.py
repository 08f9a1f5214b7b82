#!/usr/bin/env python3
"""
User Profile & Credits Routes
Get-or-create profile, balance summary, direct consumption and the internal
plan reset used by billing tooling.
"""

import asyncio
import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from palette.security.deps import get_current_user_id, require_internal_key
from palette.services import credit_gate, credit_ledger
from palette.utils.exceptions import APIExceptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/user", tags=["User"])


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================


class ConsumeCreditsRequest(BaseModel):
    amount: int = Field(default=1, gt=0, description="Credits to consume")


class ResetCreditsRequest(BaseModel):
    """Internal request to put a user on a plan and reset their balance"""

    user_id: str = Field(..., min_length=1, description="Identity key of the user")
    plan: Literal["free", "tier1", "tier2"] = Field(..., description="Plan to apply")


def _profile(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": user.get("id"),
        "external_id": user["external_id"],
        "email": user.get("email"),
        "name": user.get("name"),
        "plan": user["plan"],
        "credits_remaining": user["credits_remaining"],
        "credits_reset_at": user.get("credits_reset_at"),
        "team_id": user.get("team_id"),
        "is_early_bird": bool(user.get("is_early_bird")),
        "signup_tier": user.get("signup_tier"),
    }


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.get("")
async def get_user_profile(
    user_id: str = Depends(get_current_user_id),
    x_user_email: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
):
    """Return the caller's profile, provisioning it on first sight."""
    user = await asyncio.to_thread(
        credit_ledger.ensure_provisioned, user_id, x_user_email, x_user_name
    )
    return {"success": True, "user": _profile(user)}


@router.get("/credits")
async def get_credits(user_id: str = Depends(get_current_user_id)):
    try:
        summary = await asyncio.to_thread(credit_ledger.get_credit_summary, user_id)
    except credit_ledger.UserNotFoundError as e:
        raise APIExceptions.not_found("User", user_id) from e
    return {"success": True, **summary}


@router.post("/credits/consume")
async def consume_credits(
    body: ConsumeCreditsRequest, user_id: str = Depends(get_current_user_id)
):
    try:
        result = await asyncio.to_thread(credit_gate.charge, user_id, body.amount)
    except credit_ledger.InsufficientCreditsError as e:
        raise APIExceptions.payment_required(credits=e.balance) from e
    except credit_ledger.UserNotFoundError as e:
        raise APIExceptions.not_found("User", user_id) from e

    return {
        "success": True,
        "remaining": result.remaining,
        "is_team_credits": result.is_team_credits,
    }


@router.put("/credits", dependencies=[Depends(require_internal_key)])
async def reset_credits(body: ResetCreditsRequest):
    try:
        user = await asyncio.to_thread(credit_ledger.reset_for_plan, body.user_id, body.plan)
    except credit_ledger.UserNotFoundError as e:
        raise APIExceptions.not_found("User", body.user_id) from e

    logger.info(f"Internal credit reset for {body.user_id} to {body.plan}")
    return {"success": True, "user": _profile(user)}
