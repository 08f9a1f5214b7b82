"""
Admission check route.

Lets a client ask whether an operation would currently be admitted by the rate
limiter, without spending anything. Protected endpoints run the same check
themselves and answer 429 on denial.
"""

import asyncio
import logging
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from palette.db import users as users_db
from palette.security.deps import get_client_ip, get_optional_user_id
from palette.services.admission import check_admission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admission", tags=["Admission"])


class AdmissionCheckRequest(BaseModel):
    operation: Literal["generate", "analyze", "api", "stripe"] = Field(
        ..., description="Operation the caller is about to perform"
    )


def _lookup_plan(user_id: str | None) -> str | None:
    if user_id is None:
        return None
    user = users_db.get_user(user_id)
    return user["plan"] if user else None


@router.post("/check")
async def admission_check(
    body: AdmissionCheckRequest,
    request: Request,
    user_id: str | None = Depends(get_optional_user_id),
):
    plan = await asyncio.to_thread(_lookup_plan, user_id)
    decision = await asyncio.to_thread(
        check_admission, body.operation, plan, user_id, get_client_ip(request)
    )
    return {
        "allowed": decision.allowed,
        "remaining": decision.remaining,
        "reset_at": decision.reset_at,
        "scope": decision.scope,
        "reason": decision.reason,
    }
