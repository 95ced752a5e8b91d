"""
Scheduler: 지연 잡 승격 및 반복 잡 발생 모듈

tick_interval_ms 마다 큐별로
1. due_at이 지난 지연 잡을 대기열로 승격하고
2. next_fire_at이 지난 반복 잡 등록에 대해 잡을 생성한 뒤 다음 실행 시각으로 갱신합니다.

여러 프로세스에서 동시에 실행해도 안전합니다.
- 승격은 브로커의 원자적 연산으로 처리
- 반복 잡 발생은 key 단위 compare-and-set + 결정적 잡 ID(repeat:{key}:{fire_at})로 중복 방지

실행 방법:
    python main.py scheduler
"""

import asyncio
import logging

from broker.base import BaseBroker
from broker.exception import BrokerConnectionError, BrokerError
from common.cron import next_fire_time
from common.model.job import Job, JobState, RepeatableRegistration, now_ms, repeat_job_id
from dispatcher.exception import DispatcherError
from dispatcher.model.scheduler import SchedulerConfig
from dispatcher.queue.main import Queue

logger = logging.getLogger(__name__)


class Scheduler:
    """
    지연/반복 잡 스케줄러

    사용 예시:
        scheduler = Scheduler(broker, ["email", "reports"], SchedulerConfig())
        await scheduler.start()   # stop() 호출 시까지 실행
    """

    def __init__(
        self,
        broker: BaseBroker,
        queue_names: list[str],
        config: SchedulerConfig | None = None,
        queues: dict[str, Queue] | None = None,
    ):
        """
        Args:
            broker: 브로커
            queue_names: 관리할 큐 이름 목록
            config: Scheduler 설정
            queues: 반복 잡 등록에 사용할 Queue (없으면 기본 설정으로 생성)
        """
        self._broker = broker
        self._queue_names = list(queue_names)
        self._config = config or SchedulerConfig()
        self._queues = dict(queues or {})
        self._running = False
        self._stop_event: asyncio.Event | None = None

    def _queue(self, name: str) -> Queue:
        if name not in self._queues:
            self._queues[name] = Queue(name, self._broker)
        return self._queues[name]

    # ============================================================
    # 승격 / 반복 잡 발생
    # ============================================================

    async def promote_due_jobs(self, queue_name: str, now: int | None = None) -> list[Job]:
        """due_at이 지난 지연 잡을 대기열로 승격"""
        now = now if now is not None else now_ms()
        promoted = await self._broker.promote_due(queue_name, now, self._config.promote_batch_size)
        if promoted:
            logger.debug(f"Promoted delayed jobs: queue={queue_name}, count={len(promoted)}")
        return promoted

    async def fire_due_repeatables(self, queue_name: str, now: int | None = None) -> list[Job]:
        """
        next_fire_at이 지난 반복 잡 등록마다 잡을 생성하고 다음 실행 시각으로 갱신

        중단 기간 동안 놓친 발생은 한 번만 실행되며 이후 스케줄은 현재 시각 기준으로 이어집니다.
        limit에 도달한 등록은 삭제됩니다.

        Returns:
            list[Job]: 이번 호출에서 생성된 잡
        """
        now = now if now is not None else now_ms()
        fired: list[Job] = []

        for registration in await self._broker.due_repeatables(queue_name, now):
            try:
                job = await self._fire(registration, now)
            except ValueError as e:
                logger.error(f"Repeatable skipped: queue={queue_name}, key={registration.key}, error={e}")
                continue
            if job is not None:
                fired.append(job)

        return fired

    async def _fire(self, registration: RepeatableRegistration, now: int) -> Job | None:
        fire_at = registration.next_fire_at
        cron = registration.cron

        next_fire_at = None
        if not registration.is_last_fire:
            next_fire_at = next_fire_time(cron.pattern, max(now, fire_at), cron.tz)

        job = Job(
            id=repeat_job_id(registration.key, fire_at),
            queue_name=registration.queue_name,
            name=registration.name,
            payload=registration.payload,
            options=registration.options,
            state=JobState.WAITING,
            enqueued_at=now,
            repeat_key=registration.key,
        )

        created = await self._broker.fire_repeatable(
            registration.queue_name, registration.key, fire_at, next_fire_at, job,
        )
        if not created:
            logger.debug(
                f"Repeatable occurrence already handled: queue={registration.queue_name}, "
                f"key={registration.key}, fire_at={fire_at}"
            )
            return None

        if next_fire_at is None:
            logger.info(
                f"Repeatable fired (limit reached, registration removed): "
                f"queue={registration.queue_name}, key={registration.key}, job_id={job.id}"
            )
        else:
            logger.info(
                f"Repeatable fired: queue={registration.queue_name}, key={registration.key}, "
                f"job_id={job.id}, next_fire_at={next_fire_at}"
            )
        return job

    async def tick(self, now: int | None = None) -> None:
        """모든 큐에 대해 반복 잡 발생과 지연 잡 승격 1회 실행 (큐별 오류는 격리)"""
        now = now if now is not None else now_ms()
        for queue_name in self._queue_names:
            try:
                await self.fire_due_repeatables(queue_name, now)
                await self.promote_due_jobs(queue_name, now)
            except BrokerConnectionError as e:
                logger.warning(f"Broker unreachable during tick: queue={queue_name}, error={e}")
            except BrokerError as e:
                logger.error(f"Broker error during tick: queue={queue_name}, error={e}")
            except Exception as e:
                logger.error(f"Unexpected error during tick: queue={queue_name}, error={e}", exc_info=True)

    # ============================================================
    # 반복 잡 등록 (시작 시)
    # ============================================================

    async def register_repeatables(self) -> int:
        """
        설정된 반복 잡 등록

        clear_repeatables_on_start가 True면 관리 큐의 기존 등록을 모두 제거한 뒤
        다시 등록하여 재시작 후 중복 스케줄이 남지 않도록 합니다.

        Returns:
            int: 등록된 반복 잡 수
        """
        if self._config.clear_repeatables_on_start:
            for queue_name in self._queue_names:
                await self._queue(queue_name).clear_all_repeatables()

        registered = 0
        for entry in self._config.repeatables:
            if entry.queue not in self._queue_names:
                logger.warning(f"Repeatable for unmanaged queue skipped: queue={entry.queue}, name={entry.name}")
                continue
            try:
                await self._queue(entry.queue).add_repeatable(entry.cron, entry.name, entry.payload, entry.options)
                registered += 1
            except DispatcherError as e:
                logger.error(f"Repeatable registration failed: queue={entry.queue}, name={entry.name}, error={e}")
        return registered

    # ============================================================
    # 메인 루프
    # ============================================================

    async def start(self) -> None:
        """Scheduler 메인 루프 시작 (stop() 호출 시까지)"""
        if self._running:
            logger.warning("Scheduler is already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()

        logger.info(
            f"Scheduler started (queues={self._queue_names}, "
            f"tick_interval={self._config.tick_interval_ms}ms)"
        )

        try:
            await self.register_repeatables()
            while self._running:
                await self.tick()
                await self._sleep(self._config.tick_interval_ms / 1000)
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled")
        finally:
            self._running = False
            logger.info("Scheduler stopped")

    async def stop(self) -> None:
        """Scheduler graceful shutdown"""
        if not self._running:
            return

        logger.info("Stopping scheduler...")
        self._running = False
        if self._stop_event:
            self._stop_event.set()

    async def _sleep(self, seconds: float) -> None:
        """인터럽트 가능한 sleep"""
        if self._stop_event:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass

    @property
    def is_running(self) -> bool:
        return self._running
