#!/usr/bin/env python3
"""
Image Generation Route

Admission runs first (429), then the credit is consumed (402), then the image
is generated. A failed or timed-out generation refunds the credit and answers
502.
"""

import asyncio
import logging
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from palette.config import Config
from palette.db import generations as generations_db
from palette.security.deps import get_client_ip, get_current_user_id
from palette.services import credit_ledger
from palette.services.admission import enforce_admission
from palette.services.credit_gate import run_protected_operation
from palette.services.generation_client import (
    GenerationError,
    ImageGenerator,
    call_with_timeout,
    get_generation_client,
)
from palette.utils.exceptions import APIExceptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Generation"])


class GenerateRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=4000)
    aspect_ratio: Literal["1:1", "4:5", "9:16", "16:9"] = "1:1"
    brand_id: int | None = None


def _generate_and_charge(
    user_id: str, client_ip: str | None, body: GenerateRequest, generator: ImageGenerator
):
    user = credit_ledger.ensure_provisioned(user_id)
    enforce_admission("generate", user["plan"], user_id, client_ip)

    def generate() -> str:
        image_url = call_with_timeout(
            generator.generate_image,
            Config.GENERATION_TIMEOUT_SECONDS,
            body.prompt,
            body.aspect_ratio,
        )
        if not image_url:
            raise GenerationError("Failed to generate image")
        generations_db.record_generation(
            user_id,
            body.brand_id,
            body.prompt,
            image_url,
            generation_type="manual",
            image_format=body.aspect_ratio,
        )
        return image_url

    return run_protected_operation(user_id, generate)


@router.post("/generate")
async def generate_image(
    body: GenerateRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    generator: ImageGenerator = Depends(get_generation_client),
):
    try:
        result = await asyncio.to_thread(
            _generate_and_charge, user_id, get_client_ip(request), body, generator
        )
    except GenerationError as e:
        logger.warning(f"Generation failed for {user_id}, credit refunded: {e}")
        raise APIExceptions.service_error("Image generation failed, your credit was refunded") from e

    return {
        "success": True,
        "image_url": result.value,
        "credits_remaining": result.remaining,
        "is_team_credits": result.is_team_credits,
    }
