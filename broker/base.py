"""Broker Store Adapter 기본 인터페이스"""

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from common.model.job import Job, JobCounts, JobError, JobState, RepeatableRegistration


class BaseBroker(ABC):
    """
    잡 상태 저장소 어댑터 기본 클래스

    Redis, SQLite 등 저장소별 구현이 제공해야 하는 원자적 연산을 정의합니다.
    비즈니스 로직은 포함하지 않습니다.

    원자성 규칙:
    - 잡 상태를 변경하는 모든 연산은 저장소 수준에서 단일 연산
      (Lua 스크립트 또는 단일 트랜잭션)으로 수행되어야 합니다.
    - claim()은 여러 워커가 동시에 호출해도 같은 잡을 두 번 반환하지 않습니다.
    - 상태 변경 시 큐 알림 채널에 이벤트를 발행합니다 (폴링만으로도 정확해야 함).
    """

    def __init__(self, prefix: str = "jobline"):
        self._prefix = prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    # ============================================================
    # Lifecycle
    # ============================================================

    @abstractmethod
    async def connect(self) -> None:
        """저장소 연결"""
        ...

    @abstractmethod
    async def close(self) -> None:
        """저장소 연결 해제"""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """연결 상태 확인 (readiness probe)"""
        ...

    # ============================================================
    # Job 등록 / 조회
    # ============================================================

    @abstractmethod
    async def add_job(self, job: Job) -> bool:
        """
        잡 저장 후 대기열(waiting) 또는 지연 집합(delayed)에 추가

        job.state가 DELAYED이면 job.due_at 기준으로 지연 집합에 추가합니다.

        Returns:
            bool: 새로 추가되었으면 True, 같은 ID의 잡이 이미 있으면 False
        """
        ...

    async def schedule_at(self, job: Job, when_ms: int) -> bool:
        """지정 시각에 대기열로 승격될 지연 잡 추가"""
        delayed = job.model_copy(update={"state": JobState.DELAYED, "due_at": when_ms})
        return await self.add_job(delayed)

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        """ID로 잡 조회 (없으면 None)"""
        ...

    @abstractmethod
    async def get_counts(self, queue_name: str) -> JobCounts:
        """큐 상태별 잡 개수"""
        ...

    # ============================================================
    # 상태 전이
    # ============================================================

    @abstractmethod
    async def claim(self, queue_name: str, now_ms: int) -> Job | None:
        """
        대기열에서 잡 하나를 원자적으로 꺼내 active로 전환

        attempts_made를 1 증가시키고 processed_at을 기록합니다.

        Returns:
            Job | None: 꺼낸 잡, 대기열이 비어 있으면 None
        """
        ...

    @abstractmethod
    async def promote_due(self, queue_name: str, now_ms: int, limit: int = 1000) -> list[Job]:
        """
        due_at <= now_ms 인 지연 잡을 원자적으로 대기열로 승격

        여러 프로세스에서 동시에 호출해도 같은 잡이 두 번 승격되지 않습니다.

        Returns:
            list[Job]: 승격된 잡 목록
        """
        ...

    @abstractmethod
    async def complete(
        self,
        queue_name: str,
        job_id: str,
        now_ms: int,
        result: Any = None,
        retention: int | None = None,
    ) -> bool:
        """
        active -> completed 전환 후 보관 개수 초과분을 오래된 순으로 삭제

        Returns:
            bool: 전환 성공 여부 (active 상태가 아니면 False)
        """
        ...

    @abstractmethod
    async def retry(self, queue_name: str, job_id: str, due_ms: int, error: JobError) -> bool:
        """active -> delayed 전환 (재시도 예약, last_error 기록)"""
        ...

    @abstractmethod
    async def fail(
        self,
        queue_name: str,
        job_id: str,
        now_ms: int,
        error: JobError,
        retention: int | None = None,
    ) -> bool:
        """active -> failed 전환 (last_error 기록, 보관 개수 초과분 삭제)"""
        ...

    @abstractmethod
    async def update_progress(self, queue_name: str, job_id: str, progress: Any) -> bool:
        """active 잡의 진행률 기록 (상태 변경 없음)"""
        ...

    # ============================================================
    # 반복 잡 등록
    # ============================================================

    @abstractmethod
    async def upsert_repeatable(self, registration: RepeatableRegistration) -> None:
        """반복 잡 등록 (같은 key면 교체)"""
        ...

    @abstractmethod
    async def remove_repeatable(self, queue_name: str, key: str) -> bool:
        """반복 잡 등록 해제 (대기 중인 다음 발생 잡도 함께 삭제)"""
        ...

    @abstractmethod
    async def list_repeatables(self, queue_name: str) -> list[RepeatableRegistration]:
        """반복 잡 등록 목록 (next_fire_at 오름차순)"""
        ...

    @abstractmethod
    async def due_repeatables(self, queue_name: str, now_ms: int) -> list[RepeatableRegistration]:
        """next_fire_at <= now_ms 인 반복 잡 등록 목록"""
        ...

    @abstractmethod
    async def fire_repeatable(
        self,
        queue_name: str,
        key: str,
        fire_at: int,
        next_fire_at: int | None,
        job: Job,
    ) -> bool:
        """
        반복 잡 발생 처리 (key 단위 compare-and-set)

        등록의 next_fire_at이 fire_at과 같을 때만 job을 생성하고
        next_fire_at을 갱신합니다. next_fire_at이 None이면 등록을 삭제합니다.
        job.id는 repeat_job_id(key, fire_at)로 결정적이므로 같은 발생 시점의
        잡은 두 번 생성되지 않습니다.

        Returns:
            bool: 이번 호출에서 잡이 생성되었으면 True
        """
        ...

    # ============================================================
    # 처리율 제한
    # ============================================================

    @abstractmethod
    async def acquire_rate_limit(
        self,
        queue_name: str,
        max_starts: int,
        window_ms: int,
        now_ms: int,
        token: str,
    ) -> int:
        """
        슬라이딩 윈도우 처리율 제한 슬롯 획득

        Returns:
            int: 0이면 획득 성공, 양수면 슬롯이 비기까지 대기할 시간(ms)
        """
        ...

    @abstractmethod
    async def release_rate_limit(self, queue_name: str, token: str) -> None:
        """사용하지 않은 처리율 제한 슬롯 반환"""
        ...

    # ============================================================
    # 알림
    # ============================================================

    @abstractmethod
    async def publish(self, queue_name: str, event: dict[str, Any]) -> None:
        """큐 알림 채널에 이벤트 발행"""
        ...

    @abstractmethod
    def listen(self, queue_name: str) -> AsyncIterator[dict[str, Any]]:
        """
        큐 알림 채널 구독 (async generator)

        Yields:
            dict: {"event", "job_id", "queue", ...}
        """
        ...

    @staticmethod
    def _encode_event(event: dict[str, Any]) -> str:
        return json.dumps(event, separators=(",", ":"))
