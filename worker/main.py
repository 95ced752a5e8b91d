"""
Worker: 잡 실행 워커 모듈

큐의 대기열에서 잡을 claim 하여 핸들러를 실행합니다.
concurrency 개의 독립된 슬롯(asyncio.Task)이 각자 claim → 실행을 반복하므로
느린 핸들러 하나가 다른 슬롯을 막지 않습니다.

실행 방법:
    python main.py worker
"""

import asyncio
import logging
from typing import Any, Callable

from broker.base import BaseBroker
from broker.exception import BrokerError
from common.model.job import Job, now_ms
from worker.base import BaseHandler, resolve_handler
from worker.events import EventChannel, EventKind, WorkerEvent
from worker.exception import WorkerClosedError
from worker.executor import Executor
from worker.limiter import RateLimiter
from worker.model.worker import WorkerConfig

logger = logging.getLogger(__name__)

# 알림 채널에서 슬롯을 깨우는 이벤트
_WAKE_EVENTS = ("added", "waiting")


class Worker:
    """
    큐 Worker

    사용 예시:
        worker = Worker("email", send_email, broker, WorkerConfig(concurrency=3))
        await worker.start()
        ...
        await worker.close()
    """

    def __init__(
        self,
        queue_name: str,
        handler: "str | BaseHandler | Callable[[Job], Any]",
        broker: BaseBroker,
        config: WorkerConfig | None = None,
        events: EventChannel | None = None,
    ):
        """
        Args:
            queue_name: 처리할 큐 이름
            handler: 'module:attr' 경로, BaseHandler, 또는 (Job) -> result 함수
            broker: 브로커 (연결된 상태)
            config: Worker 설정
            events: 이벤트 채널 (없으면 새로 생성)

        Raises:
            HandlerResolveError: 핸들러를 찾을 수 없는 경우
        """
        self._queue_name = queue_name
        self._handler = resolve_handler(handler)
        self._broker = broker
        self._config = config or WorkerConfig()
        self._events = events or EventChannel()
        self._executor = Executor(
            broker, self._handler, self._events, self._config.handler_timeout_seconds,
        )
        self._limiter = (
            RateLimiter(broker, queue_name, self._config.rate_limit)
            if self._config.rate_limit else None
        )

        self._running = False
        self._closing = False
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._closed_event = asyncio.Event()
        self._slots: list[asyncio.Task] = []
        self._listener: asyncio.Task | None = None
        self._active_jobs: dict[str, Job] = {}

    # ============================================================
    # Lifecycle
    # ============================================================

    async def start(self) -> None:
        """슬롯 태스크 시작 (즉시 반환)"""
        if self._closing:
            raise WorkerClosedError(self._queue_name)
        if self._running:
            logger.warning(f"Worker already running: queue={self._queue_name}")
            return

        self._running = True
        self._slots = [
            asyncio.create_task(self._slot_loop(slot), name=f"worker-{self._queue_name}-{slot}")
            for slot in range(self._config.concurrency)
        ]
        self._listener = asyncio.create_task(self._listen_loop(), name=f"worker-{self._queue_name}-listener")

        logger.info(
            f"Worker started: queue={self._queue_name}, concurrency={self._config.concurrency}, "
            f"rate_limit={self._config.rate_limit.model_dump() if self._config.rate_limit else None}"
        )

    async def run(self) -> None:
        """시작 후 close() 될 때까지 대기"""
        await self.start()
        await self._closed_event.wait()

    async def close(self, timeout: float | None = None) -> None:
        """
        Graceful shutdown

        1. 새 잡 claim 중단
        2. 실행 중인 핸들러 완료 대기 (timeout 초과 시 중단된 잡 ID를 기록하고 슬롯 취소,
           해당 잡은 상태 전이 없이 active로 남음)
        3. close_broker 설정 시 브로커 연결 해제

        여러 번 호출해도 안전합니다.
        """
        if self._closing:
            await self._closed_event.wait()
            return

        self._closing = True
        self._stop_event.set()
        timeout = self._config.shutdown_timeout_seconds if timeout is None else timeout

        logger.info(f"Closing worker: queue={self._queue_name}, active_jobs={len(self._active_jobs)}")

        if self._listener:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)

        if self._slots:
            _, pending = await asyncio.wait(self._slots, timeout=timeout)
            if pending:
                abandoned = sorted(self._active_jobs)
                if abandoned:
                    logger.warning(
                        f"Shutdown timeout ({timeout}s), abandoning jobs left active: "
                        f"queue={self._queue_name}, job_ids={abandoned}"
                    )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self._running = False
        if self._config.close_broker:
            await self._broker.close()

        self._closed_event.set()
        logger.info(f"Worker closed: queue={self._queue_name}")

    # ============================================================
    # 슬롯 루프
    # ============================================================

    async def _slot_loop(self, slot: int) -> None:
        """슬롯: (처리율 제한) → claim → 실행 반복"""
        idle_ms = self._config.poll_interval_ms

        while not self._closing:
            token = None
            if self._limiter:
                token = await self._limiter.acquire(self._stop_event)
                if self._closing:
                    await self._limiter.release(token)
                    break

            try:
                job = await self._broker.claim(self._queue_name, now_ms())
            except BrokerError as e:
                logger.warning(f"Claim failed: queue={self._queue_name}, slot={slot}, error={e}")
                self._emit_error(str(e))
                if self._limiter:
                    await self._limiter.release(token)
                await self._idle(idle_ms)
                idle_ms = min(idle_ms * 2, self._config.max_poll_interval_ms)
                continue

            if job is None:
                if self._limiter:
                    await self._limiter.release(token)
                if await self._promote_due():
                    idle_ms = self._config.poll_interval_ms
                    continue
                await self._idle(idle_ms)
                idle_ms = min(idle_ms * 2, self._config.max_poll_interval_ms)
                continue

            idle_ms = self._config.poll_interval_ms
            self._active_jobs[job.id] = job
            try:
                await self._executor.execute(job)
            finally:
                self._active_jobs.pop(job.id, None)

    async def _promote_due(self) -> bool:
        """대기열이 비었을 때 due 지연 잡 승격 (승격된 잡이 있으면 True)"""
        if not self._config.promote_on_idle:
            return False
        try:
            promoted = await self._broker.promote_due(self._queue_name, now_ms())
        except BrokerError as e:
            logger.debug(f"Promote on idle failed: queue={self._queue_name}, error={e}")
            return False
        return bool(promoted)

    async def _idle(self, idle_ms: int) -> None:
        """다음 폴링까지 대기 (close 또는 새 잡 알림 시 즉시 깨어남)"""
        self._wake_event.clear()
        stop = asyncio.ensure_future(self._stop_event.wait())
        wake = asyncio.ensure_future(self._wake_event.wait())
        try:
            await asyncio.wait({stop, wake}, timeout=idle_ms / 1000, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            wake.cancel()

    async def _listen_loop(self) -> None:
        """큐 알림 구독 (새 잡 추가 시 대기 중인 슬롯을 깨움, 실패해도 폴링은 계속)"""
        try:
            async for event in self._broker.listen(self._queue_name):
                if event.get("event") in _WAKE_EVENTS:
                    self._wake_event.set()
        except BrokerError as e:
            logger.warning(f"Notification listener stopped, polling only: queue={self._queue_name}, error={e}")
        except Exception as e:
            logger.warning(f"Notification listener error, polling only: queue={self._queue_name}, error={e}")

    def _emit_error(self, message: str) -> None:
        self._events.publish(WorkerEvent(kind=EventKind.ERROR, queue_name=self._queue_name, error=message))

    # ============================================================
    # 상태
    # ============================================================

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def events(self) -> EventChannel:
        return self._events

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_job_ids(self) -> list[str]:
        """실행 중인 잡 ID 목록"""
        return list(self._active_jobs)
