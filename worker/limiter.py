"""
큐 단위 처리율 제한

브로커에 저장되는 슬라이딩 윈도우 로그를 사용하므로 같은 큐를 처리하는
모든 Worker(프로세스, 슬롯)가 하나의 제한을 공유합니다.
저장소 오류 시에는 제한 없이 진행합니다 (fail open).
"""

import asyncio
import logging
import uuid

from broker.base import BaseBroker
from broker.exception import BrokerError
from common.model.job import now_ms
from worker.model.worker import RateLimitConfig

logger = logging.getLogger(__name__)


class RateLimiter:
    """슬라이딩 윈도우 처리율 제한 (window_ms 동안 최대 max개 잡 시작)"""

    def __init__(self, broker: BaseBroker, queue_name: str, config: RateLimitConfig):
        self._broker = broker
        self._queue_name = queue_name
        self._config = config

    async def acquire(self, stop_event: asyncio.Event | None = None) -> str | None:
        """
        시작 슬롯 획득 (윈도우가 가득 차면 빈 자리가 생길 때까지 대기)

        Args:
            stop_event: set되면 대기를 중단하고 None 반환

        Returns:
            str | None: 획득한 슬롯 토큰 (release()에 전달),
                저장소 오류로 제한 없이 진행하거나 중단된 경우 None
        """
        while True:
            token = uuid.uuid4().hex
            try:
                wait_ms = await self._broker.acquire_rate_limit(
                    self._queue_name,
                    self._config.max,
                    self._config.window_ms,
                    now_ms(),
                    token,
                )
            except BrokerError as e:
                logger.warning(f"Rate limiter unavailable, proceeding without limit: queue={self._queue_name}, error={e}")
                return None

            if wait_ms <= 0:
                return token

            logger.debug(f"Rate limit reached: queue={self._queue_name}, wait={wait_ms}ms")
            if stop_event is None:
                await asyncio.sleep(wait_ms / 1000)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=wait_ms / 1000)
                return None
            except asyncio.TimeoutError:
                pass

    async def release(self, token: str | None) -> None:
        """잡을 시작하지 않은 슬롯 반환"""
        if token is None:
            return
        try:
            await self._broker.release_rate_limit(self._queue_name, token)
        except BrokerError as e:
            logger.warning(f"Rate limit release failed: queue={self._queue_name}, error={e}")
