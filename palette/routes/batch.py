#!/usr/bin/env python3
"""
Batch Scheduler Routes
Trigger endpoint for the external cron, queue stats, and on-demand job
enqueueing for internal callers.
"""

import asyncio
import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from palette.security.deps import require_cron_secret, require_internal_key
from palette.services.batch_scheduler import BatchScheduler, get_batch_scheduler, get_queue_stats

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/batch", tags=["Batch"])


class EnqueueJobRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    scheduled_for: datetime | None = Field(default=None, description="Defaults to now")
    prompt: str = Field(default="reactivation", min_length=1)
    brand_id: int | None = None


@router.post("/process", dependencies=[Depends(require_cron_secret)])
async def process_batch(scheduler: BatchScheduler = Depends(get_batch_scheduler)):
    """Run one scheduler tick: create today's jobs, then drain due jobs."""
    summary = await asyncio.to_thread(scheduler.run_tick)
    return {"success": True, **summary.to_dict()}


@router.get("/process", dependencies=[Depends(require_cron_secret)])
async def batch_queue_stats():
    stats = await asyncio.to_thread(get_queue_stats)
    return {"success": True, **stats}


@router.post("/jobs", dependencies=[Depends(require_internal_key)])
async def enqueue_job(
    body: EnqueueJobRequest, scheduler: BatchScheduler = Depends(get_batch_scheduler)
):
    job = await asyncio.to_thread(
        scheduler.enqueue_job, body.user_id, body.scheduled_for, body.prompt, body.brand_id
    )
    return {"success": True, "job": job}
