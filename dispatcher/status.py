"""
잡 상태 조회 서비스 (읽기 전용)

외부 폴링(HTTP API, CLI)에서 잡 상태와 진행률, 큐 통계를 조회할 때 사용합니다.
"""

from typing import Any

from broker.base import BaseBroker
from common.model.job import JobCounts, JobStatus


class StatusService:
    """잡 상태 조회"""

    def __init__(self, broker: BaseBroker):
        self._broker = broker

    async def get_state(self, job_id: str, queue_name: str | None = None) -> JobStatus | None:
        """
        잡 상태 조회

        Args:
            job_id: 잡 ID
            queue_name: 지정 시 다른 큐의 잡이면 None

        Returns:
            JobStatus | None: 알 수 없는 ID면 None
        """
        job = await self._broker.get_job(job_id)
        if job is None:
            return None
        if queue_name is not None and job.queue_name != queue_name:
            return None
        return JobStatus.from_job(job)

    async def get_progress(self, job_id: str) -> Any | None:
        job = await self._broker.get_job(job_id)
        return job.progress if job else None

    async def get_counts(self, queue_name: str) -> JobCounts:
        return await self._broker.get_counts(queue_name)
