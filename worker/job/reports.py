"""
리포트 생성 핸들러

단계별로 진행률(33, 67, 100)을 기록하며 리포트 생성을 흉내 냅니다.
"""

import asyncio
import logging
from typing import Literal

from pydantic import BaseModel

from common.model.job import Job

logger = logging.getLogger(__name__)

STEPS = ("Gathering data", "Aggregating metrics", "Formatting output")
STEP_SECONDS = 1.0


class ReportPayload(BaseModel):
    """리포트 잡 payload"""
    report_type: Literal["daily", "weekly", "monthly"]
    user_id: str | None = None


async def generate_report(job: Job) -> dict:
    payload = ReportPayload.model_validate(job.payload)
    logger.info(f"[reports] Processing job {job.id}: generating {payload.report_type} report")

    for i, step in enumerate(STEPS, start=1):
        logger.info(f"[reports] Job {job.id}: {step}...")
        await job.update_progress(round(i / len(STEPS) * 100))
        await asyncio.sleep(STEP_SECONDS)

    suffix = f" for user {payload.user_id}" if payload.user_id else ""
    logger.info(f"[reports] Job {job.id}: {payload.report_type} report complete{suffix}")
    return {"report_type": payload.report_type, "user_id": payload.user_id, "steps": len(STEPS)}
