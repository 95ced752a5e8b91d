"""Broker 설정 모델"""

from pydantic import BaseModel, Field


class RedisOptions(BaseModel):
    """Redis 연결 설정"""
    url: str = "redis://localhost:6379/0"
    socket_timeout: float = Field(default=5.0, gt=0)
    # 전송 계층 재시도 (잡 재시도 정책과 별개로 유한하게 유지)
    retry_attempts: int = Field(default=3, ge=0, le=10)
    retry_backoff_base: float = Field(default=0.1, gt=0)
    retry_backoff_cap: float = Field(default=2.0, gt=0)


class SqlitePoolOptions(BaseModel):
    """커넥션풀 설정"""
    pool_size: int = Field(default=5, ge=1, le=50)
    pool_timeout: float = Field(default=30.0, gt=0)


class SqliteOptions(BaseModel):
    """SQLite 연결 옵션"""
    busy_timeout: int = Field(default=5000, ge=0)
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"


class SqliteConfig(BaseModel):
    """SQLite 브로커 설정"""
    path: str = "./data/jobline.db"
    pool: SqlitePoolOptions = Field(default_factory=SqlitePoolOptions)
    options: SqliteOptions = Field(default_factory=SqliteOptions)


class BrokerConfig(BaseModel):
    """브로커 설정 (broker.yaml)"""
    type: str = Field(default="redis", description="redis | sqlite")
    prefix: str = Field(default="jobline", min_length=1)
    redis: RedisOptions = Field(default_factory=RedisOptions)
    sqlite: SqliteConfig = Field(default_factory=SqliteConfig)
