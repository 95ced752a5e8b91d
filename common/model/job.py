"""
잡 데이터 모델

Queue, Scheduler, Worker, Broker가 공유하는 잡 엔벨로프와 옵션 모델.
모든 시각은 epoch milliseconds(int)로 저장합니다.
"""

import json
import time
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator

from common.cron import validate_cron

ProgressReporter = Callable[[Any], Awaitable[None]]

# 저장소 레코드에서 JSON 문자열로 직렬화되는 필드
_JSON_FIELDS = ('payload', 'options', 'last_error', 'progress', 'result')
_INT_FIELDS = ('attempts_made', 'enqueued_at', 'processed_at', 'finished_at', 'due_at')


def now_ms() -> int:
    """현재 시각 (epoch milliseconds)"""
    return int(time.time() * 1000)


def repeat_job_id(key: str, fire_at: int) -> str:
    """반복 잡의 결정적 ID (동일 발생 시점 중복 생성 방지)"""
    return f"repeat:{key}:{fire_at}"


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value


class JobState(str, Enum):
    """잡 상태"""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffKind(str, Enum):
    """재시도 대기 전략"""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class BackoffSpec(BaseModel):
    """재시도 간격 설정"""
    model_config = ConfigDict(extra='forbid')

    kind: BackoffKind = BackoffKind.FIXED
    base_delay_ms: int = Field(default=0, ge=0)


class CronSpec(BaseModel):
    """반복 실행 스케줄 (5필드 크론 표현식)"""
    model_config = ConfigDict(extra='forbid')

    pattern: str = Field(..., min_length=9, max_length=100)
    tz: str | None = Field(default=None, description="IANA 타임존 (기본 UTC)")
    limit: int | None = Field(default=None, ge=1, description="최대 실행 횟수")
    key: str | None = Field(default=None, min_length=1, max_length=200)

    @field_validator('pattern')
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        return ' '.join(value.split())

    @model_validator(mode='after')
    def _check_schedule(self) -> "CronSpec":
        validate_cron(self.pattern, self.tz)
        return self


class JobOptions(BaseModel):
    """잡 실행 옵션"""
    model_config = ConfigDict(extra='forbid')

    max_attempts: int = Field(default=1, ge=1, le=1000)
    backoff: BackoffSpec = Field(default_factory=BackoffSpec)
    delay_ms: int = Field(default=0, ge=0)
    repeat: CronSpec | None = None
    retention_on_complete: int | None = Field(default=None, ge=0)
    retention_on_fail: int | None = Field(default=None, ge=0)
    job_id: str | None = Field(default=None, min_length=1, max_length=200)


class JobError(BaseModel):
    """마지막 실패 정보"""
    message: str
    timestamp: int


class Job(BaseModel):
    """
    잡 엔벨로프

    payload는 호출자 소유의 불투명한 값이며 코어는 내용을 해석하지 않습니다.
    핸들러 실행 중에는 update_progress()로 진행률을 기록할 수 있습니다.
    """
    id: str
    queue_name: str
    name: str
    payload: Any = None
    options: JobOptions = Field(default_factory=JobOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    last_error: JobError | None = None
    enqueued_at: int = Field(default_factory=now_ms)
    processed_at: int | None = None
    finished_at: int | None = None
    progress: Any = None
    due_at: int | None = None
    repeat_key: str | None = None
    result: Any = None

    _progress_reporter: ProgressReporter | None = PrivateAttr(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def bind_progress_reporter(self, reporter: ProgressReporter | None) -> None:
        """Worker가 실행 중인 잡에 진행률 기록 함수를 연결"""
        self._progress_reporter = reporter

    async def update_progress(self, progress: Any) -> None:
        """
        진행률 기록 (상태는 변경하지 않음)

        Raises:
            RuntimeError: Worker에서 실행 중인 잡이 아닌 경우
        """
        if self._progress_reporter is None:
            raise RuntimeError(f"Job {self.id} is not running in a worker")
        self.progress = progress
        await self._progress_reporter(progress)

    def to_record(self) -> dict[str, Any]:
        """저장소 레코드로 변환 (JSON 필드는 문자열로 직렬화, None 값 포함)"""
        data = self.model_dump(mode='json')
        record: dict[str, Any] = {}
        for key, value in data.items():
            if key in _JSON_FIELDS:
                record[key] = json.dumps(value) if value is not None else None
            else:
                record[key] = value
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Job":
        """저장소 레코드(Redis hash / SQLite row)에서 Job 생성"""
        data: dict[str, Any] = {}
        for key, value in record.items():
            key = _decode(key)
            value = _decode(value)
            if value is None or value == '':
                continue
            if key in _JSON_FIELDS:
                data[key] = json.loads(value)
            elif key in _INT_FIELDS:
                data[key] = int(value)
            else:
                data[key] = value
        return cls.model_validate(data)


class RepeatableRegistration(BaseModel):
    """반복 잡 등록 정보 (key당 하나)"""
    key: str
    queue_name: str
    name: str
    payload: Any = None
    options: JobOptions = Field(default_factory=JobOptions)
    cron: CronSpec
    next_fire_at: int
    fired_count: int = 0
    last_job_id: str | None = None

    @property
    def is_last_fire(self) -> bool:
        """다음 발생이 limit에 도달하는 마지막 실행인지"""
        return self.cron.limit is not None and self.fired_count + 1 >= self.cron.limit

    def to_record(self) -> dict[str, Any]:
        return {
            'key': self.key,
            'queue_name': self.queue_name,
            'name': self.name,
            'payload': json.dumps(self.payload),
            'options': self.options.model_dump_json(),
            'cron': self.cron.model_dump_json(),
            'next_fire_at': self.next_fire_at,
            'fired_count': self.fired_count,
            'last_job_id': self.last_job_id,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "RepeatableRegistration":
        data = {_decode(k): _decode(v) for k, v in record.items()}
        return cls(
            key=data['key'],
            queue_name=data['queue_name'],
            name=data['name'],
            payload=json.loads(data['payload']) if data.get('payload') else None,
            options=JobOptions.model_validate_json(data['options']),
            cron=CronSpec.model_validate_json(data['cron']),
            next_fire_at=int(data['next_fire_at']),
            fired_count=int(data.get('fired_count') or 0),
            last_job_id=data.get('last_job_id') or None,
        )


class JobStatus(BaseModel):
    """상태 조회 응답 (외부 폴링용)"""
    id: str
    name: str
    queue_name: str
    state: JobState
    progress: Any = None
    attempts_made: int = 0
    last_error: JobError | None = None
    enqueued_at: int
    processed_at: int | None = None
    finished_at: int | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatus":
        return cls(
            id=job.id,
            name=job.name,
            queue_name=job.queue_name,
            state=job.state,
            progress=job.progress,
            attempts_made=job.attempts_made,
            last_error=job.last_error,
            enqueued_at=job.enqueued_at,
            processed_at=job.processed_at,
            finished_at=job.finished_at,
        )


class JobCounts(BaseModel):
    """큐 상태별 잡 개수"""
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
