"""잡 등록/조회 비즈니스 로직 핸들러"""

import logging

from admin.api.model.job import EnqueueRequest, EnqueueResponse, RepeatableResponse
from admin.exception import JobNotFoundError, QueueNotConfiguredError, RepeatableNotFoundError
from common.model.job import JobCounts, JobStatus
from dispatcher.queue.main import Queue
from dispatcher.status import StatusService

logger = logging.getLogger(__name__)


class JobHandler:
    """
    잡 핸들러

    설정된 큐(queue.yaml)에 대해서만 등록/조회를 허용합니다.
    """

    def __init__(self, queues: dict[str, Queue], status: StatusService):
        self._queues = queues
        self._status = status

    @property
    def queue_names(self) -> list[str]:
        return list(self._queues)

    def _get_queue(self, queue_name: str) -> Queue:
        queue = self._queues.get(queue_name)
        if queue is None:
            raise QueueNotConfiguredError(queue_name)
        return queue

    async def enqueue(self, queue_name: str, request: EnqueueRequest) -> EnqueueResponse:
        """
        잡 등록

        Raises:
            QueueNotConfiguredError: 설정에 없는 큐
            DispatcherError: 옵션/payload 검증 실패
        """
        queue = self._get_queue(queue_name)
        job = await queue.add(request.name, request.payload, request.options)
        logger.info(f"Job enqueued via API: queue={queue_name}, id={job.id}, name={job.name}")
        return EnqueueResponse(id=job.id, queue=queue_name, name=job.name, state=job.state)

    async def get_status(self, job_id: str, queue_name: str | None = None) -> JobStatus:
        """
        잡 상태 조회

        Raises:
            QueueNotConfiguredError: 설정에 없는 큐
            JobNotFoundError: 알 수 없는 잡 (다른 큐의 잡 포함)
        """
        if queue_name is not None:
            self._get_queue(queue_name)
        status = await self._status.get_state(job_id, queue_name)
        if status is None:
            raise JobNotFoundError(job_id)
        return status

    async def get_counts(self, queue_name: str) -> JobCounts:
        self._get_queue(queue_name)
        return await self._status.get_counts(queue_name)

    async def get_all_counts(self) -> dict[str, JobCounts]:
        """설정된 모든 큐의 상태별 잡 개수"""
        return {name: await self._status.get_counts(name) for name in self._queues}

    async def get_repeatables(self, queue_name: str) -> list[RepeatableResponse]:
        queue = self._get_queue(queue_name)
        registrations = await queue.get_repeatables()
        return [RepeatableResponse.from_registration(r) for r in registrations]

    async def remove_repeatable(self, queue_name: str, key: str) -> None:
        """
        반복 잡 등록 해제

        Raises:
            RepeatableNotFoundError: 등록이 없는 경우
        """
        queue = self._get_queue(queue_name)
        if not await queue.remove_repeatable(key):
            raise RepeatableNotFoundError(queue_name, key)

    async def clear_repeatables(self, queue_name: str) -> int:
        queue = self._get_queue(queue_name)
        return await queue.clear_all_repeatables()
