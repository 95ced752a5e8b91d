"""
SQLite 브로커 구현

aiosql로 로드한 SQL(sql/broker.sql)을 BEGIN IMMEDIATE 트랜잭션 안에서 실행하여
상태 전이를 원자적으로 처리합니다. 같은 DB 파일을 공유하는 여러 프로세스에서도
claim이 직렬화됩니다.

알림은 같은 프로세스 안의 listen() 구독자에게만 전달됩니다.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import aiosql

from broker.base import BaseBroker
from broker.exception import BrokerConnectionError, BrokerError, BrokerNotConnectedError
from broker.model import SqliteConfig
from broker.sqlite3.connection import AsyncConnectionPool, ManagedTransaction
from common.model.job import Job, JobCounts, JobError, JobState, RepeatableRegistration

logger = logging.getLogger(__name__)

SQL_DIR = Path(__file__).parent / "sql"

# 구독자 큐 최대 크기 (초과 시 이벤트 버림)
LISTENER_QUEUE_SIZE = 1000


class SQLiteBroker(BaseBroker):
    """
    SQLite 기반 브로커

    사용 예시:
        broker = SQLiteBroker(SqliteConfig(path="./data/jobline.db"))
        await broker.connect()
        await broker.add_job(job)
        claimed = await broker.claim("email", now_ms())
    """

    def __init__(self, config: SqliteConfig | None = None, prefix: str = "jobline"):
        super().__init__(prefix)
        self._config = config or SqliteConfig()
        self._pool: AsyncConnectionPool | None = None
        self._queries: Any | None = None
        self._listeners: dict[str, set[asyncio.Queue]] = {}

    async def connect(self) -> None:
        if self._pool is not None:
            logger.warning("SQLiteBroker already connected")
            return

        self._queries = aiosql.from_path(str(SQL_DIR / "broker.sql"), "aiosqlite")
        pool = AsyncConnectionPool(
            db_path=self._config.path,
            pool_options=self._config.pool,
            sqlite_options=self._config.options,
        )
        try:
            await pool.initialize()
            await self._run_init_sql(pool)
        except sqlite3.Error as e:
            await pool.close()
            raise BrokerConnectionError("connect", str(e))

        self._pool = pool
        logger.info(f"SQLiteBroker connected: {self._config.path}")

    async def _run_init_sql(self, pool: AsyncConnectionPool) -> None:
        """초기 테이블 생성 SQL 실행"""
        init_queries = aiosql.from_path(str(SQL_DIR / "init.sql"), "aiosqlite")
        pooled_conn = await pool.acquire()
        try:
            await init_queries.create_tables(pooled_conn.connection)
        finally:
            await pool.release(pooled_conn)

    async def close(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        logger.info("SQLiteBroker closed")

    async def ping(self) -> bool:
        try:
            async with self._transaction("ping", readonly=True) as conn:
                await conn.execute("SELECT 1")
            return True
        except BrokerError:
            return False

    @asynccontextmanager
    async def _transaction(self, operation: str, readonly: bool = False):
        """트랜잭션 실행 (sqlite3 오류를 BrokerError로 변환)"""
        if self._pool is None:
            raise BrokerNotConnectedError(operation)
        try:
            async with ManagedTransaction(self._pool, readonly=readonly) as conn:
                yield conn
        except sqlite3.OperationalError as e:
            raise BrokerConnectionError(operation, str(e))
        except sqlite3.Error as e:
            raise BrokerError(operation, f"SQLite error during {operation}: {e}")

    @staticmethod
    def _row_to_job(row) -> Job:
        return Job.from_record(dict(row))

    async def _fetch_jobs(self, conn, job_ids: list[str]) -> list[Job]:
        if not job_ids:
            return []
        rows = await self._queries.get_jobs_by_ids(conn, ids=json.dumps(job_ids))
        jobs = {row["id"]: self._row_to_job(row) for row in rows}
        return [jobs[job_id] for job_id in job_ids if job_id in jobs]

    @staticmethod
    def _job_params(job: Job) -> dict[str, Any]:
        params = job.to_record()
        params["ready_at"] = job.enqueued_at if job.state == JobState.WAITING else None
        return params

    # ============================================================
    # Job 등록 / 조회
    # ============================================================

    async def add_job(self, job: Job) -> bool:
        async with self._transaction("add_job") as conn:
            inserted = await self._queries.insert_job(conn, **self._job_params(job))

        if inserted:
            await self.publish(job.queue_name, {
                "event": "added", "job_id": job.id, "queue": job.queue_name, "state": job.state.value,
            })
        return inserted > 0

    async def get_job(self, job_id: str) -> Job | None:
        async with self._transaction("get_job", readonly=True) as conn:
            row = await self._queries.get_job_by_id(conn, id=job_id)
        return self._row_to_job(row) if row else None

    async def get_counts(self, queue_name: str) -> JobCounts:
        async with self._transaction("get_counts", readonly=True) as conn:
            rows = await self._queries.count_jobs_by_state(conn, queue_name=queue_name)
        return JobCounts(**{row["state"]: row["cnt"] for row in rows})

    # ============================================================
    # 상태 전이
    # ============================================================

    async def claim(self, queue_name: str, now_ms: int) -> Job | None:
        async with self._transaction("claim") as conn:
            row = await self._queries.get_next_waiting(conn, queue_name=queue_name)
            if not row:
                return None
            claimed = await self._queries.claim_job(conn, id=row["id"], now=now_ms)
            if not claimed:
                return None
            job_row = await self._queries.get_job_by_id(conn, id=row["id"])

        job = self._row_to_job(job_row)
        await self.publish(queue_name, {
            "event": "active", "job_id": job.id, "queue": queue_name, "attempts_made": job.attempts_made,
        })
        return job

    async def promote_due(self, queue_name: str, now_ms: int, limit: int = 1000) -> list[Job]:
        async with self._transaction("promote_due") as conn:
            rows = await self._queries.get_due_job_ids(conn, queue_name=queue_name, now=now_ms, limit=limit)
            job_ids = [row["id"] for row in rows]
            if not job_ids:
                return []
            await self._queries.promote_jobs(conn, ids=json.dumps(job_ids), now=now_ms)
            jobs = await self._fetch_jobs(conn, job_ids)

        for job in jobs:
            await self.publish(queue_name, {"event": "waiting", "job_id": job.id, "queue": queue_name})
        return jobs

    async def complete(
        self,
        queue_name: str,
        job_id: str,
        now_ms: int,
        result: Any = None,
        retention: int | None = None,
    ) -> bool:
        result_json = json.dumps(result) if result is not None else None
        async with self._transaction("complete") as conn:
            updated = await self._queries.complete_job(
                conn, id=job_id, queue_name=queue_name, now=now_ms, result=result_json,
            )
            if updated and retention is not None:
                await self._queries.prune_finished_jobs(
                    conn, queue_name=queue_name, state=JobState.COMPLETED.value, keep=retention,
                )

        if updated:
            await self.publish(queue_name, {"event": "completed", "job_id": job_id, "queue": queue_name})
        return updated > 0

    async def retry(self, queue_name: str, job_id: str, due_ms: int, error: JobError) -> bool:
        async with self._transaction("retry") as conn:
            updated = await self._queries.retry_job(
                conn, id=job_id, queue_name=queue_name, due_at=due_ms, last_error=error.model_dump_json(),
            )

        if updated:
            await self.publish(queue_name, {
                "event": "retrying", "job_id": job_id, "queue": queue_name, "due_at": due_ms,
            })
        return updated > 0

    async def fail(
        self,
        queue_name: str,
        job_id: str,
        now_ms: int,
        error: JobError,
        retention: int | None = None,
    ) -> bool:
        async with self._transaction("fail") as conn:
            updated = await self._queries.fail_job(
                conn, id=job_id, queue_name=queue_name, now=now_ms, last_error=error.model_dump_json(),
            )
            if updated and retention is not None:
                await self._queries.prune_finished_jobs(
                    conn, queue_name=queue_name, state=JobState.FAILED.value, keep=retention,
                )

        if updated:
            await self.publish(queue_name, {
                "event": "failed", "job_id": job_id, "queue": queue_name, "error": error.message,
            })
        return updated > 0

    async def update_progress(self, queue_name: str, job_id: str, progress: Any) -> bool:
        async with self._transaction("update_progress") as conn:
            updated = await self._queries.update_job_progress(
                conn, id=job_id, queue_name=queue_name, progress=json.dumps(progress),
            )

        if updated:
            await self.publish(queue_name, {
                "event": "progress", "job_id": job_id, "queue": queue_name, "progress": progress,
            })
        return updated > 0

    # ============================================================
    # 반복 잡 등록
    # ============================================================

    async def upsert_repeatable(self, registration: RepeatableRegistration) -> None:
        async with self._transaction("upsert_repeatable") as conn:
            await self._queries.upsert_repeatable(conn, **registration.to_record())

    async def remove_repeatable(self, queue_name: str, key: str) -> bool:
        async with self._transaction("remove_repeatable") as conn:
            row = await self._queries.get_repeatable(conn, queue_name=queue_name, key=key)
            if not row:
                return False
            if row["last_job_id"]:
                await self._queries.delete_pending_job(conn, id=row["last_job_id"])
            await self._queries.delete_repeatable(conn, queue_name=queue_name, key=key)
        return True

    async def list_repeatables(self, queue_name: str) -> list[RepeatableRegistration]:
        async with self._transaction("list_repeatables", readonly=True) as conn:
            rows = await self._queries.get_repeatables(conn, queue_name=queue_name)
        return [RepeatableRegistration.from_record(dict(row)) for row in rows]

    async def due_repeatables(self, queue_name: str, now_ms: int) -> list[RepeatableRegistration]:
        async with self._transaction("due_repeatables", readonly=True) as conn:
            rows = await self._queries.get_due_repeatables(conn, queue_name=queue_name, now=now_ms)
        return [RepeatableRegistration.from_record(dict(row)) for row in rows]

    async def fire_repeatable(
        self,
        queue_name: str,
        key: str,
        fire_at: int,
        next_fire_at: int | None,
        job: Job,
    ) -> bool:
        async with self._transaction("fire_repeatable") as conn:
            if next_fire_at is None:
                advanced = await self._queries.delete_fired_repeatable(
                    conn, queue_name=queue_name, key=key, fire_at=fire_at,
                )
            else:
                advanced = await self._queries.advance_repeatable(
                    conn, queue_name=queue_name, key=key, fire_at=fire_at,
                    next_fire_at=next_fire_at, last_job_id=job.id,
                )
            if not advanced:
                return False
            inserted = await self._queries.insert_job(conn, **self._job_params(job))

        if inserted:
            await self.publish(queue_name, {
                "event": "added", "job_id": job.id, "queue": queue_name, "state": job.state.value,
            })
        return inserted > 0

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
        async with self._transaction("acquire_rate_limit") as conn:
            await self._queries.expire_rate_limits(
                conn, queue_name=queue_name, window_start=now_ms - window_ms,
            )
            current = await self._queries.count_rate_limits(conn, queue_name=queue_name)
            if current >= max_starts:
                oldest = await self._queries.oldest_rate_limit(conn, queue_name=queue_name)
                return max(int(oldest) + window_ms - now_ms, 1)
            await self._queries.insert_rate_limit(
                conn, queue_name=queue_name, token=token, started_at=now_ms,
            )
        return 0

    async def release_rate_limit(self, queue_name: str, token: str) -> None:
        async with self._transaction("release_rate_limit") as conn:
            await self._queries.delete_rate_limit(conn, queue_name=queue_name, token=token)

    # ============================================================
    # 알림 (프로세스 내부)
    # ============================================================

    async def publish(self, queue_name: str, event: dict[str, Any]) -> None:
        for listener in list(self._listeners.get(queue_name, ())):
            try:
                listener.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Listener queue full, event dropped: queue={queue_name}, event={event.get('event')}")

    async def listen(self, queue_name: str) -> AsyncIterator[dict[str, Any]]:
        listener: asyncio.Queue = asyncio.Queue(maxsize=LISTENER_QUEUE_SIZE)
        self._listeners.setdefault(queue_name, set()).add(listener)
        try:
            while True:
                yield await listener.get()
        finally:
            self._listeners[queue_name].discard(listener)
