"""Queue 설정 모델"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class QueueConfig(BaseModel):
    """큐 설정 (queue.yaml의 queues.<name>)"""
    model_config = ConfigDict(extra='forbid')

    # 잡별 옵션과 병합되는 기본 옵션 (JobOptions 필드)
    default_job_options: dict[str, Any] = Field(default_factory=dict)
    # payload 검증 모델 경로 ('module:Class'), 없으면 검증하지 않음
    payload_model: str | None = None
