"""Scheduler 설정 모델"""

from typing import Any

from pydantic import BaseModel, Field

from common.model.job import CronSpec


class RepeatableEntry(BaseModel):
    """시작 시 등록할 반복 잡 (scheduler.yaml의 repeatables)"""
    queue: str
    name: str
    payload: Any = None
    cron: CronSpec
    options: dict[str, Any] = Field(default_factory=dict)


class SchedulerConfig(BaseModel):
    """Scheduler 설정"""
    tick_interval_ms: int = Field(default=1000, ge=10, le=60000)
    promote_batch_size: int = Field(default=1000, ge=1, le=10000)
    clear_repeatables_on_start: bool = True
    repeatables: list[RepeatableEntry] = Field(default_factory=list)
