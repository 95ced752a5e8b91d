"""Worker 설정 모델"""

from pydantic import BaseModel, Field, model_validator


class RateLimitConfig(BaseModel):
    """처리율 제한 (window_ms 동안 최대 max개 잡 시작)"""
    max: int = Field(..., ge=1)
    window_ms: int = Field(..., ge=1)


class WorkerConfig(BaseModel):
    """단일 큐 Worker 설정"""
    concurrency: int = Field(default=1, ge=1, le=1000)
    rate_limit: RateLimitConfig | None = None
    poll_interval_ms: int = Field(default=100, ge=1, le=60000)
    max_poll_interval_ms: int = Field(default=2000, ge=1, le=300000)
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0)
    handler_timeout_seconds: float | None = Field(default=None, gt=0)
    # 대기열이 비었을 때 due 지연 잡을 직접 승격 (Scheduler 없이도 지연/재시도 잡 처리)
    promote_on_idle: bool = True
    close_broker: bool = False

    @model_validator(mode='after')
    def _check_poll_interval(self) -> "WorkerConfig":
        if self.max_poll_interval_ms < self.poll_interval_ms:
            raise ValueError("max_poll_interval_ms must be >= poll_interval_ms")
        return self


class WorkerQueueEntry(BaseModel):
    """worker.yaml의 큐별 항목"""
    queue: str
    handler: str = Field(..., description="'module:callable' 경로")
    concurrency: int = Field(default=1, ge=1, le=1000)
    rate_limit: RateLimitConfig | None = None
    handler_timeout_seconds: float | None = Field(default=None, gt=0)


class WorkerPoolConfig(BaseModel):
    """worker.yaml 전체 설정 (프로세스 내 모든 Worker 공통 값 + 큐별 항목)"""
    poll_interval_ms: int = Field(default=100, ge=1, le=60000)
    max_poll_interval_ms: int = Field(default=2000, ge=1, le=300000)
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0)
    promote_on_idle: bool = True
    queues: list[WorkerQueueEntry] = Field(default_factory=list)

    def worker_config(self, entry: WorkerQueueEntry) -> WorkerConfig:
        """큐 항목에 대한 WorkerConfig 생성"""
        return WorkerConfig(
            concurrency=entry.concurrency,
            rate_limit=entry.rate_limit,
            poll_interval_ms=self.poll_interval_ms,
            max_poll_interval_ms=self.max_poll_interval_ms,
            shutdown_timeout_seconds=self.shutdown_timeout_seconds,
            handler_timeout_seconds=entry.handler_timeout_seconds,
            promote_on_idle=self.promote_on_idle,
        )
