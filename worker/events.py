"""
Worker 잡 생명주기 이벤트 채널

Worker는 잡 처리 흐름과 분리된 채널로 이벤트를 발행합니다.
publish()는 블로킹하지 않고 예외를 던지지 않으므로 구독자가 느리거나
멈춰도 잡 처리에는 영향이 없습니다 (가득 찬 구독자 큐의 이벤트는 버림).

사용 예시:
    events = EventChannel()
    subscription = events.subscribe()
    async for event in subscription:
        if event.kind == EventKind.FAILED:
            ...
"""

import asyncio
import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from common.model.job import now_ms

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 1000


class EventKind(str, Enum):
    """Worker 이벤트 종류"""
    ACTIVE = "active"
    PROGRESS = "progress"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    ERROR = "error"


class WorkerEvent(BaseModel):
    """Worker 이벤트"""
    kind: EventKind
    queue_name: str
    job_id: str | None = None
    attempts_made: int | None = None
    data: Any = None
    error: str | None = None
    timestamp: int = Field(default_factory=now_ms)


class Subscription:
    """
    이벤트 구독 (async iterator)

    생성 즉시 채널에 등록되므로 subscribe() 이후 발행된 이벤트는 모두 받을 수 있습니다.
    """

    def __init__(self, channel: "EventChannel", maxsize: int):
        self._channel = channel
        self._queue: asyncio.Queue[WorkerEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> WorkerEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def get(self, timeout: float | None = None) -> WorkerEvent:
        """다음 이벤트 (timeout 초과 시 asyncio.TimeoutError)"""
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    def _offer(self, event: WorkerEvent | None) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    def close(self) -> None:
        """구독 해제 (대기 중인 반복은 종료)"""
        if self._closed:
            return
        self._closed = True
        self._channel._unsubscribe(self)
        if not self._offer(None):
            # 종료 신호를 넣을 자리 확보
            self._queue.get_nowait()
            self._offer(None)

    @property
    def closed(self) -> bool:
        return self._closed


class EventChannel:
    """여러 구독자에게 Worker 이벤트를 전달하는 채널"""

    def __init__(self, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE):
        self._maxsize = maxsize
        self._subscribers: set[Subscription] = set()

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._maxsize)
        self._subscribers.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def publish(self, event: WorkerEvent) -> None:
        """이벤트 발행 (블로킹/예외 없음)"""
        for subscription in list(self._subscribers):
            if not subscription._offer(event):
                logger.warning(
                    f"Subscriber queue full, event dropped: kind={event.kind.value}, "
                    f"queue={event.queue_name}, job_id={event.job_id}"
                )

    def close(self) -> None:
        """모든 구독 종료"""
        for subscription in list(self._subscribers):
            subscription.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
