"""
Redis 브로커 구현

상태 전이는 broker/redis/scripts.py의 Lua 스크립트로 원자적으로 처리되며,
알림은 큐별 pub/sub 채널로 발행됩니다.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from broker.base import BaseBroker
from broker.exception import BrokerConnectionError, BrokerError, BrokerNotConnectedError
from broker.model import RedisOptions
from broker.redis import scripts
from broker.redis.connection import RedisKeys, create_client
from common.model.job import Job, JobCounts, JobError, JobState, RepeatableRegistration

logger = logging.getLogger(__name__)

_FINISHED_STATES = (JobState.COMPLETED.value, JobState.FAILED.value)


def _field_pairs(record: dict[str, Any]) -> list[Any]:
    """해시 필드/값 평탄화 (None 값은 저장하지 않음)"""
    pairs: list[Any] = []
    for key, value in record.items():
        if value is None:
            continue
        pairs.extend((key, value))
    return pairs


def _pairs_to_dict(values: list[Any]) -> dict[str, Any]:
    return dict(zip(values[::2], values[1::2]))


class RedisBroker(BaseBroker):
    """
    Redis 기반 브로커

    단일 Redis 노드를 전제로 합니다. Lua 스크립트가
    잡 해시 키를 ARGV의 prefix로 조합하므로 Redis Cluster에서는 사용할 수 없습니다.

    사용 예시:
        broker = RedisBroker(RedisOptions(url="redis://localhost:6379/0"))
        await broker.connect()
        await broker.add_job(job)
    """

    def __init__(self, options: RedisOptions | None = None, prefix: str = "jobline"):
        super().__init__(prefix)
        self._options = options or RedisOptions()
        self._keys = RedisKeys(prefix)
        self._client: redis.Redis | None = None
        self._scripts: dict[str, Any] = {}

    async def connect(self) -> None:
        if self._client is not None:
            logger.warning("RedisBroker already connected")
            return

        client = create_client(self._options)
        try:
            await client.ping()
        except RedisError as e:
            await client.aclose()
            raise BrokerConnectionError("connect", str(e))

        self._scripts = {
            "add_job": client.register_script(scripts.ADD_JOB),
            "claim": client.register_script(scripts.CLAIM),
            "promote": client.register_script(scripts.PROMOTE),
            "complete": client.register_script(scripts.COMPLETE),
            "retry": client.register_script(scripts.RETRY),
            "fail": client.register_script(scripts.FAIL),
            "update_progress": client.register_script(scripts.UPDATE_PROGRESS),
            "remove_repeatable": client.register_script(scripts.REMOVE_REPEATABLE),
            "fire_repeatable": client.register_script(scripts.FIRE_REPEATABLE),
            "acquire_rate_limit": client.register_script(scripts.ACQUIRE_RATE_LIMIT),
        }
        self._client = client
        logger.info(f"RedisBroker connected: {self._options.url} (prefix={self.prefix})")

    async def close(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        self._scripts = {}
        logger.info("RedisBroker closed")

    async def ping(self) -> bool:
        try:
            async with self._guard("ping") as client:
                return bool(await client.ping())
        except BrokerError:
            return False

    @asynccontextmanager
    async def _guard(self, operation: str):
        """redis 예외를 BrokerError로 변환"""
        if self._client is None:
            raise BrokerNotConnectedError(operation)
        try:
            yield self._client
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise BrokerConnectionError(operation, str(e))
        except RedisError as e:
            raise BrokerError(operation, f"Redis error during {operation}: {e}")

    async def _run_script(self, name: str, keys: list[str], args: list[Any]) -> Any:
        async with self._guard(name):
            return await self._scripts[name](keys=keys, args=args)

    async def _fetch_jobs(self, job_ids: list[str]) -> list[Job]:
        if not job_ids:
            return []
        async with self._guard("fetch_jobs") as client:
            pipe = client.pipeline(transaction=False)
            for job_id in job_ids:
                pipe.hgetall(self._keys.job(job_id))
            records = await pipe.execute()
        return [Job.from_record(record) for record in records if record]

    # ============================================================
    # Job 등록 / 조회
    # ============================================================

    async def add_job(self, job: Job) -> bool:
        q = job.queue_name
        added = await self._run_script(
            "add_job",
            keys=[
                self._keys.job(job.id),
                self._keys.queue(q, "waiting"),
                self._keys.queue(q, "delayed"),
                self._keys.queue(q, "events"),
            ],
            args=[job.id, q, job.state.value, job.due_at or 0, *_field_pairs(job.to_record())],
        )
        return int(added) == 1

    async def get_job(self, job_id: str) -> Job | None:
        async with self._guard("get_job") as client:
            record = await client.hgetall(self._keys.job(job_id))
        return Job.from_record(record) if record else None

    async def get_counts(self, queue_name: str) -> JobCounts:
        async with self._guard("get_counts") as client:
            pipe = client.pipeline(transaction=False)
            pipe.llen(self._keys.queue(queue_name, "waiting"))
            for state in ("delayed", "active", *_FINISHED_STATES):
                pipe.zcard(self._keys.queue(queue_name, state))
            waiting, delayed, active, completed, failed = await pipe.execute()
        return JobCounts(
            waiting=waiting, delayed=delayed, active=active, completed=completed, failed=failed,
        )

    # ============================================================
    # 상태 전이
    # ============================================================

    async def claim(self, queue_name: str, now_ms: int) -> Job | None:
        values = await self._run_script(
            "claim",
            keys=[
                self._keys.queue(queue_name, "waiting"),
                self._keys.queue(queue_name, "active"),
                self._keys.queue(queue_name, "events"),
            ],
            args=[self._keys.job_prefix, now_ms, queue_name],
        )
        if not values:
            return None
        return Job.from_record(_pairs_to_dict(values))

    async def promote_due(self, queue_name: str, now_ms: int, limit: int = 1000) -> list[Job]:
        job_ids = await self._run_script(
            "promote",
            keys=[
                self._keys.queue(queue_name, "delayed"),
                self._keys.queue(queue_name, "waiting"),
                self._keys.queue(queue_name, "events"),
            ],
            args=[self._keys.job_prefix, now_ms, limit, queue_name],
        )
        return await self._fetch_jobs(list(job_ids or []))

    async def complete(
        self,
        queue_name: str,
        job_id: str,
        now_ms: int,
        result: Any = None,
        retention: int | None = None,
    ) -> bool:
        updated = await self._run_script(
            "complete",
            keys=[
                self._keys.queue(queue_name, "active"),
                self._keys.queue(queue_name, "completed"),
                self._keys.queue(queue_name, "events"),
            ],
            args=[
                self._keys.job_prefix, job_id, now_ms,
                json.dumps(result) if result is not None else "",
                -1 if retention is None else retention,
                queue_name,
            ],
        )
        return int(updated) == 1

    async def retry(self, queue_name: str, job_id: str, due_ms: int, error: JobError) -> bool:
        updated = await self._run_script(
            "retry",
            keys=[
                self._keys.queue(queue_name, "active"),
                self._keys.queue(queue_name, "delayed"),
                self._keys.queue(queue_name, "events"),
            ],
            args=[self._keys.job_prefix, job_id, due_ms, error.model_dump_json(), queue_name],
        )
        return int(updated) == 1

    async def fail(
        self,
        queue_name: str,
        job_id: str,
        now_ms: int,
        error: JobError,
        retention: int | None = None,
    ) -> bool:
        updated = await self._run_script(
            "fail",
            keys=[
                self._keys.queue(queue_name, "active"),
                self._keys.queue(queue_name, "failed"),
                self._keys.queue(queue_name, "events"),
            ],
            args=[
                self._keys.job_prefix, job_id, now_ms, error.model_dump_json(),
                -1 if retention is None else retention,
                queue_name, error.message,
            ],
        )
        return int(updated) == 1

    async def update_progress(self, queue_name: str, job_id: str, progress: Any) -> bool:
        updated = await self._run_script(
            "update_progress",
            keys=[self._keys.queue(queue_name, "active"), self._keys.queue(queue_name, "events")],
            args=[self._keys.job_prefix, job_id, json.dumps(progress), queue_name],
        )
        return int(updated) == 1

    # ============================================================
    # 반복 잡 등록
    # ============================================================

    async def upsert_repeatable(self, registration: RepeatableRegistration) -> None:
        q = registration.queue_name
        hash_key = self._keys.repeat(q, registration.key)
        async with self._guard("upsert_repeatable") as client:
            pipe = client.pipeline(transaction=True)
            pipe.delete(hash_key)
            pipe.hset(hash_key, mapping={
                k: v for k, v in registration.to_record().items() if v is not None
            })
            pipe.zadd(self._keys.queue(q, "repeat"), {registration.key: registration.next_fire_at})
            await pipe.execute()

    async def remove_repeatable(self, queue_name: str, key: str) -> bool:
        removed = await self._run_script(
            "remove_repeatable",
            keys=[
                self._keys.queue(queue_name, "repeat"),
                self._keys.repeat(queue_name, key),
                self._keys.queue(queue_name, "delayed"),
            ],
            args=[key, self._keys.job_prefix],
        )
        return int(removed) == 1

    async def _fetch_repeatables(self, queue_name: str, keys: list[str]) -> list[RepeatableRegistration]:
        if not keys:
            return []
        async with self._guard("fetch_repeatables") as client:
            pipe = client.pipeline(transaction=False)
            for key in keys:
                pipe.hgetall(self._keys.repeat(queue_name, key))
            records = await pipe.execute()
        return [RepeatableRegistration.from_record(record) for record in records if record]

    async def list_repeatables(self, queue_name: str) -> list[RepeatableRegistration]:
        async with self._guard("list_repeatables") as client:
            keys = await client.zrange(self._keys.queue(queue_name, "repeat"), 0, -1)
        return await self._fetch_repeatables(queue_name, keys)

    async def due_repeatables(self, queue_name: str, now_ms: int) -> list[RepeatableRegistration]:
        async with self._guard("due_repeatables") as client:
            keys = await client.zrangebyscore(self._keys.queue(queue_name, "repeat"), "-inf", now_ms)
        return await self._fetch_repeatables(queue_name, keys)

    async def fire_repeatable(
        self,
        queue_name: str,
        key: str,
        fire_at: int,
        next_fire_at: int | None,
        job: Job,
    ) -> bool:
        fired = await self._run_script(
            "fire_repeatable",
            keys=[
                self._keys.queue(queue_name, "repeat"),
                self._keys.repeat(queue_name, key),
                self._keys.job(job.id),
                self._keys.queue(queue_name, "waiting"),
                self._keys.queue(queue_name, "delayed"),
                self._keys.queue(queue_name, "events"),
            ],
            args=[
                key, fire_at, "" if next_fire_at is None else next_fire_at,
                job.id, queue_name, job.state.value, job.due_at or 0,
                *_field_pairs(job.to_record()),
            ],
        )
        return int(fired) == 1

    # ============================================================
    # 처리율 제한
    # ============================================================

    async def acquire_rate_limit(
        self,
        queue_name: str,
        max_starts: int,
        window_ms: int,
        now_ms: int,
        token: str,
    ) -> int:
        wait_ms = await self._run_script(
            "acquire_rate_limit",
            keys=[self._keys.queue(queue_name, "limiter")],
            args=[now_ms, window_ms, max_starts, token],
        )
        return int(wait_ms)

    async def release_rate_limit(self, queue_name: str, token: str) -> None:
        async with self._guard("release_rate_limit") as client:
            await client.zrem(self._keys.queue(queue_name, "limiter"), token)

    # ============================================================
    # 알림
    # ============================================================

    async def publish(self, queue_name: str, event: dict[str, Any]) -> None:
        async with self._guard("publish") as client:
            await client.publish(self._keys.queue(queue_name, "events"), self._encode_event(event))

    async def listen(self, queue_name: str) -> AsyncIterator[dict[str, Any]]:
        if self._client is None:
            raise BrokerNotConnectedError("listen")
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self._keys.queue(queue_name, "events"))
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except json.JSONDecodeError:
                    logger.warning(f"Malformed event ignored: queue={queue_name}, data={message['data']!r}")
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()
