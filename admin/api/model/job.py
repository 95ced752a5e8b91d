"""잡 API 요청/응답 모델"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from common.model.job import CronSpec, JobState, RepeatableRegistration


class EnqueueRequest(BaseModel):
    """잡 등록 요청"""
    model_config = ConfigDict(extra='forbid')

    name: str = Field(..., min_length=1, max_length=200)
    payload: Any = None
    # JobOptions 필드 (큐 기본 옵션과 병합)
    options: dict[str, Any] | None = None


class EnqueueResponse(BaseModel):
    """잡 등록 응답"""
    id: str
    queue: str
    name: str
    state: JobState


class RepeatableResponse(BaseModel):
    """반복 잡 등록 정보"""
    key: str
    queue: str
    name: str
    cron: CronSpec
    next_fire_at: int
    fired_count: int
    last_job_id: str | None = None

    @classmethod
    def from_registration(cls, registration: RepeatableRegistration) -> "RepeatableResponse":
        return cls(
            key=registration.key,
            queue=registration.queue_name,
            name=registration.name,
            cron=registration.cron,
            next_fire_at=registration.next_fire_at,
            fired_count=registration.fired_count,
            last_job_id=registration.last_job_id,
        )
