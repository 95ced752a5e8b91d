"""
SQLite3 비동기 커넥션풀 모듈

aiosqlite를 사용하여 브로커 저장소용 커넥션풀과 트랜잭션을 제공합니다.
쓰기 트랜잭션은 BEGIN IMMEDIATE로 시작하여 프로세스 간에도 직렬화됩니다.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import aiosqlite

from broker.exception import BrokerConnectionError, BrokerNotConnectedError
from broker.model import SqliteOptions, SqlitePoolOptions

logger = logging.getLogger(__name__)


@dataclass
class PooledConnection:
    """풀에서 관리되는 연결"""
    connection: aiosqlite.Connection
    created_at: datetime = field(default_factory=datetime.now)
    last_used_at: datetime = field(default_factory=datetime.now)
    in_use: bool = False


class AsyncConnectionPool:
    """비동기 SQLite 커넥션풀 클래스"""

    def __init__(
        self,
        db_path: str,
        pool_options: SqlitePoolOptions | None = None,
        sqlite_options: SqliteOptions | None = None
    ):
        self._db_path = Path(db_path)
        self._pool_options = pool_options or SqlitePoolOptions()
        self._sqlite_options = sqlite_options or SqliteOptions()

        self._pool: list[PooledConnection] = []
        self._lock = asyncio.Lock()
        self._semaphore: asyncio.Semaphore | None = None
        self._initialized = False
        self._closed = False

    async def initialize(self) -> None:
        """커넥션풀 초기화"""
        if self._initialized:
            logger.warning("Connection pool already initialized")
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._semaphore = asyncio.Semaphore(self._pool_options.pool_size)

        for _ in range(self._pool_options.pool_size):
            conn = await self._create_connection()
            self._pool.append(PooledConnection(connection=conn))

        self._initialized = True
        self._closed = False

        logger.info(
            f"Connection pool initialized: {self._db_path} "
            f"(size={self._pool_options.pool_size}, timeout={self._pool_options.pool_timeout}s)"
        )

    async def _create_connection(self) -> aiosqlite.Connection:
        """새로운 SQLite 연결 생성 (autocommit 모드, 트랜잭션은 명시적으로 시작)"""
        conn = await aiosqlite.connect(
            self._db_path,
            timeout=self._sqlite_options.busy_timeout / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = aiosqlite.Row

        await conn.execute(f"PRAGMA busy_timeout={self._sqlite_options.busy_timeout}")
        await conn.execute(f"PRAGMA journal_mode={self._sqlite_options.journal_mode}")
        await conn.execute(f"PRAGMA synchronous={self._sqlite_options.synchronous}")

        logger.debug("New connection created with PRAGMA settings applied")
        return conn

    async def acquire(self) -> PooledConnection:
        """커넥션풀에서 연결 획득"""
        if not self._initialized or self._closed:
            raise BrokerNotConnectedError("acquire")

        timeout = self._pool_options.pool_timeout
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            raise BrokerConnectionError("acquire", f"connection pool exhausted after {timeout}s")

        async with self._lock:
            for pooled_conn in self._pool:
                if not pooled_conn.in_use:
                    pooled_conn.in_use = True
                    pooled_conn.last_used_at = datetime.now()
                    return pooled_conn

        self._semaphore.release()
        raise BrokerConnectionError("acquire", "no available connection in pool")

    async def release(self, pooled_conn: PooledConnection) -> None:
        """연결을 풀에 반환"""
        async with self._lock:
            pooled_conn.in_use = False
            pooled_conn.last_used_at = datetime.now()
        self._semaphore.release()

    async def close(self) -> None:
        """모든 연결을 닫고 풀 종료"""
        self._closed = True

        async with self._lock:
            for pooled_conn in self._pool:
                try:
                    await pooled_conn.connection.close()
                except sqlite3.Error as e:
                    logger.error(f"Error closing connection: {e}")
            self._pool.clear()

        self._initialized = False
        logger.info("Connection pool closed")

    @property
    def size(self) -> int:
        """현재 풀의 연결 수"""
        return len(self._pool)

    @property
    def available(self) -> int:
        """사용 가능한 연결 수"""
        return sum(1 for pc in self._pool if not pc.in_use)


class ManagedTransaction:
    """
    SQLite 트랜잭션 컨텍스트 매니저

    정상 종료 시 커밋, 예외 발생 시 롤백합니다.
    """

    def __init__(self, pool: AsyncConnectionPool, readonly: bool = False):
        self._pool = pool
        self._readonly = readonly
        self._pooled_conn: PooledConnection | None = None

    async def __aenter__(self) -> aiosqlite.Connection:
        self._pooled_conn = await self._pool.acquire()
        conn = self._pooled_conn.connection
        try:
            if self._readonly:
                await conn.execute("BEGIN DEFERRED")
            else:
                await conn.execute("BEGIN IMMEDIATE")
        except BaseException:
            await self._pool.release(self._pooled_conn)
            raise
        return conn

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        conn = self._pooled_conn.connection
        try:
            if exc_type:
                await conn.rollback()
            else:
                await conn.commit()
        finally:
            await self._pool.release(self._pooled_conn)
