"""
Redis 비동기 연결 모듈

redis.asyncio 클라이언트를 생성합니다. 네트워크 오류에 대한 전송 계층 재시도는
유한한 횟수의 지수 백오프로 제한되며, 잡 재시도 정책과는 별개입니다.
"""

import logging

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from broker.model import RedisOptions

logger = logging.getLogger(__name__)


class RedisKeys:
    """
    Redis 키 구성

    {prefix}:{queue}:waiting   list   (LPUSH 추가, RPOP 꺼냄)
    {prefix}:{queue}:delayed   zset   score=due_at
    {prefix}:{queue}:active    zset   score=processed_at
    {prefix}:{queue}:completed zset   score=finished_at
    {prefix}:{queue}:failed    zset   score=finished_at
    {prefix}:{queue}:repeat    zset   member=key, score=next_fire_at
    {prefix}:{queue}:repeat:{key} hash
    {prefix}:{queue}:limiter   zset   슬라이딩 윈도우 로그
    {prefix}:{queue}:events    pub/sub 채널
    {prefix}:job:{id}          hash   잡 레코드
    """

    def __init__(self, prefix: str):
        self.prefix = prefix

    @property
    def job_prefix(self) -> str:
        return f"{self.prefix}:job:"

    def job(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"

    def queue(self, queue_name: str, suffix: str) -> str:
        return f"{self.prefix}:{queue_name}:{suffix}"

    def repeat(self, queue_name: str, key: str) -> str:
        return f"{self.prefix}:{queue_name}:repeat:{key}"


def create_client(options: RedisOptions) -> redis.Redis:
    """Redis 클라이언트 생성 (연결은 첫 명령 시 수립)"""
    retry = Retry(
        ExponentialBackoff(cap=options.retry_backoff_cap, base=options.retry_backoff_base),
        options.retry_attempts,
    )
    client = redis.Redis.from_url(
        options.url,
        decode_responses=True,
        socket_timeout=options.socket_timeout,
        socket_connect_timeout=options.socket_timeout,
        retry=retry,
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
    )
    logger.debug(f"Redis client created: url={options.url}, retry_attempts={options.retry_attempts}")
    return client
