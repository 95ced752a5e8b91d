"""
잡 실행기 모듈

claim된 잡 하나의 핸들러를 실행하고 결과에 따라
completed / 재시도(delayed) / failed로 전환합니다.
"""

import asyncio
import json
import logging
from typing import Any

from pydantic import BaseModel

from broker.base import BaseBroker
from broker.exception import BrokerError
from common.backoff import next_delay
from common.logging import job_log_context
from common.model.job import Job, JobError, JobState, now_ms
from worker.base import BaseHandler
from worker.events import EventChannel, EventKind, WorkerEvent
from worker.exception import HandlerTimeoutError

logger = logging.getLogger(__name__)


def _to_jsonable(result: Any) -> Any:
    """핸들러 결과를 저장 가능한 JSON 값으로 변환"""
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    try:
        json.dumps(result)
    except (TypeError, ValueError):
        logger.warning(f"Handler result is not JSON serializable, stored as string: type={type(result).__name__}")
        return repr(result)
    return result


def _error_message(error: BaseException) -> str:
    message = str(error)
    return message if message else type(error).__name__


class Executor:
    """잡 실행기"""

    def __init__(
        self,
        broker: BaseBroker,
        handler: BaseHandler,
        events: EventChannel,
        handler_timeout_seconds: float | None = None,
    ):
        self._broker = broker
        self._handler = handler
        self._events = events
        self._handler_timeout = handler_timeout_seconds

    def _emit(self, kind: EventKind, job: Job, **fields: Any) -> None:
        self._events.publish(WorkerEvent(
            kind=kind,
            queue_name=job.queue_name,
            job_id=job.id,
            attempts_made=job.attempts_made,
            **fields,
        ))

    async def execute(self, job: Job) -> JobState | None:
        """
        잡 실행

        핸들러 예외는 여기서 처리되어 호출자에게 전달되지 않습니다.
        작업 취소(CancelledError)는 전파되며 이 경우 잡은 active 상태로 남습니다.

        Args:
            job: claim된 잡 (state=active)

        Returns:
            JobState | None: 전환된 상태, 저장소 오류로 전환하지 못했으면 None
        """
        logger.info(
            f"Starting job: queue={job.queue_name}, id={job.id}, name={job.name}, "
            f"attempt={job.attempts_made}/{job.options.max_attempts}"
        )

        async def report_progress(progress: Any) -> None:
            await self._broker.update_progress(job.queue_name, job.id, progress)
            self._emit(EventKind.PROGRESS, job, data=progress)

        job.bind_progress_reporter(report_progress)
        self._emit(EventKind.ACTIVE, job)

        try:
            try:
                result = await self._run_handler(job)
            except Exception as e:
                return await self._handle_failure(job, e)
            return await self._handle_success(job, result)
        except BrokerError as e:
            logger.error(f"Broker error while finishing job, job left active: queue={job.queue_name}, id={job.id}, error={e}")
            self._emit(EventKind.ERROR, job, error=str(e))
            return None
        finally:
            job.bind_progress_reporter(None)

    async def _run_handler(self, job: Job) -> Any:
        with job_log_context(job.queue_name, job.id, job.attempts_made):
            if self._handler_timeout is None:
                return await self._handler.execute(job)
            try:
                return await asyncio.wait_for(self._handler.execute(job), timeout=self._handler_timeout)
            except asyncio.TimeoutError:
                raise HandlerTimeoutError(job.id, self._handler_timeout)

    async def _handle_success(self, job: Job, result: Any) -> JobState | None:
        result = _to_jsonable(result)
        completed = await self._broker.complete(
            job.queue_name,
            job.id,
            now_ms(),
            result=result,
            retention=job.options.retention_on_complete,
        )
        if not completed:
            logger.warning(f"Job no longer active, completion ignored: queue={job.queue_name}, id={job.id}")
            return None

        logger.info(f"Job completed: queue={job.queue_name}, id={job.id}")
        self._emit(EventKind.COMPLETED, job, data=result)
        return JobState.COMPLETED

    async def _handle_failure(self, job: Job, error: Exception) -> JobState | None:
        now = now_ms()
        job_error = JobError(message=_error_message(error), timestamp=now)
        delay = next_delay(job.attempts_made, job.options.max_attempts, job.options.backoff)

        if delay is not None:
            retried = await self._broker.retry(job.queue_name, job.id, now + delay, job_error)
            if not retried:
                logger.warning(f"Job no longer active, retry ignored: queue={job.queue_name}, id={job.id}")
                return None
            logger.warning(
                f"Job failed, retrying: queue={job.queue_name}, id={job.id}, "
                f"attempt={job.attempts_made}/{job.options.max_attempts}, delay={delay}ms, error={job_error.message}"
            )
            self._emit(EventKind.RETRYING, job, error=job_error.message, data={"delay_ms": delay})
            return JobState.DELAYED

        failed = await self._broker.fail(
            job.queue_name,
            job.id,
            now,
            job_error,
            retention=job.options.retention_on_fail,
        )
        if not failed:
            logger.warning(f"Job no longer active, failure ignored: queue={job.queue_name}, id={job.id}")
            return None
        logger.error(
            f"Job failed: queue={job.queue_name}, id={job.id}, "
            f"attempts={job.attempts_made}, error={job_error.message}"
        )
        self._emit(EventKind.FAILED, job, error=job_error.message)
        return JobState.FAILED
