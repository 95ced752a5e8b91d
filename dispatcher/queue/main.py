"""
Queue: 잡 등록(producer) 모듈

잡을 검증하여 브로커의 대기열(waiting) 또는 지연 집합(delayed)에 추가하고,
반복(cron) 잡 등록과 잡/큐 조회를 제공합니다.
add()는 잡 실행을 기다리지 않고 즉시 반환합니다.

사용 예시:
    queue = Queue("email", broker, QueueConfig(default_job_options={"max_attempts": 3}))
    job = await queue.add("welcome", {"to": "a@example.com"}, {"delay_ms": 5000})
"""

import hashlib
import logging
import uuid
from typing import Any

from pydantic import BaseModel, ValidationError

from broker.base import BaseBroker
from common.cron import next_fire_time
from common.loader import import_string
from common.model.job import (
    CronSpec,
    Job,
    JobCounts,
    JobOptions,
    JobState,
    RepeatableRegistration,
    now_ms,
    repeat_job_id,
)
from dispatcher.exception import CronParseError, InvalidOptionsError, InvalidPayloadError
from dispatcher.model.queue import QueueConfig

logger = logging.getLogger(__name__)

# 반복 잡이 생성하는 잡에는 전달하지 않는 옵션
_REPEAT_ONLY_OPTIONS = {"repeat", "job_id", "delay_ms"}


class Queue:
    """
    잡 큐 (producer 측)

    payload_model이 지정되면 add() 시점에 payload를 검증하고
    검증된 값을 JSON 호환 형태로 저장합니다.
    """

    def __init__(
        self,
        name: str,
        broker: BaseBroker,
        config: QueueConfig | None = None,
        payload_model: type[BaseModel] | None = None,
    ):
        if not name or ":" in name:
            raise ValueError(f"Invalid queue name: '{name}'")
        self._name = name
        self._broker = broker
        self._config = config or QueueConfig()
        self._payload_model = payload_model

    @classmethod
    def from_config(cls, name: str, broker: BaseBroker, config: QueueConfig | None = None) -> "Queue":
        """
        설정으로 Queue 생성 (payload_model 경로를 import)

        Raises:
            InvalidOptionsError: payload_model을 import 할 수 없거나 pydantic 모델이 아닌 경우
        """
        config = config or QueueConfig()
        payload_model = None
        if config.payload_model:
            try:
                payload_model = import_string(config.payload_model)
            except (ImportError, AttributeError, ValueError) as e:
                raise InvalidOptionsError(name, f"cannot load payload_model '{config.payload_model}': {e}")
            if not (isinstance(payload_model, type) and issubclass(payload_model, BaseModel)):
                raise InvalidOptionsError(name, f"payload_model '{config.payload_model}' is not a pydantic model")
        return cls(name, broker, config, payload_model)

    @property
    def name(self) -> str:
        return self._name

    @property
    def broker(self) -> BaseBroker:
        return self._broker

    # ============================================================
    # 검증
    # ============================================================

    def _merge_options(self, options: JobOptions | dict[str, Any] | None) -> JobOptions:
        """큐 기본 옵션과 잡별 옵션 병합 (잡별 옵션 우선)"""
        if isinstance(options, JobOptions):
            overrides = options.model_dump(exclude_unset=True)
        else:
            overrides = dict(options or {})

        merged = {**self._config.default_job_options, **overrides}
        try:
            return JobOptions.model_validate(merged)
        except ValidationError as e:
            repeat = merged.get("repeat")
            if any(err["loc"] and err["loc"][0] == "repeat" for err in e.errors()):
                pattern = repeat.get("pattern", "") if isinstance(repeat, dict) else str(repeat)
                raise CronParseError(self._name, pattern, _first_error(e))
            raise InvalidOptionsError(self._name, _first_error(e))

    def _validate_payload(self, payload: Any) -> Any:
        if self._payload_model is None:
            return payload
        try:
            validated = self._payload_model.model_validate(payload)
        except ValidationError as e:
            raise InvalidPayloadError(self._name, _first_error(e))
        return validated.model_dump(mode="json")

    def _parse_cron(self, cron: CronSpec | dict[str, Any] | str) -> CronSpec:
        if isinstance(cron, CronSpec):
            return cron
        data = {"pattern": cron} if isinstance(cron, str) else cron
        try:
            return CronSpec.model_validate(data)
        except ValidationError as e:
            raise CronParseError(self._name, str(data.get("pattern", "")), _first_error(e))

    # ============================================================
    # 등록
    # ============================================================

    async def add(
        self,
        name: str,
        payload: Any = None,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> Job:
        """
        잡 등록

        delay_ms > 0 이면 delayed, repeat이 있으면 반복 등록 후 첫 발생 잡(delayed)을
        반환하며, 그 외에는 waiting 상태로 추가합니다.
        job_id가 이미 존재하면 새로 추가하지 않고 기존 잡을 반환합니다.

        Raises:
            InvalidOptionsError: 시도 횟수, 지연, 백오프 설정이 잘못된 경우
            CronParseError: 반복 설정의 크론 표현식이 잘못된 경우
            InvalidPayloadError: payload 모델 검증 실패
            BrokerError: 저장소 오류
        """
        if not name:
            raise InvalidOptionsError(self._name, "job name must not be empty")

        opts = self._merge_options(options)
        payload = self._validate_payload(payload)

        if opts.repeat is not None:
            _, job = await self._register_repeatable(opts.repeat, name, payload, opts)
            return job

        enqueued_at = now_ms()
        delayed = opts.delay_ms > 0
        job = Job(
            id=opts.job_id or uuid.uuid4().hex,
            queue_name=self._name,
            name=name,
            payload=payload,
            options=opts,
            state=JobState.DELAYED if delayed else JobState.WAITING,
            enqueued_at=enqueued_at,
            due_at=enqueued_at + opts.delay_ms if delayed else None,
        )

        added = await self._broker.add_job(job)
        if not added:
            existing = await self._broker.get_job(job.id)
            logger.debug(f"Job already exists, add skipped: queue={self._name}, id={job.id}")
            return existing or job

        logger.info(
            f"Job added: queue={self._name}, id={job.id}, name={name}, "
            f"state={job.state.value}, max_attempts={opts.max_attempts}"
        )
        return job

    async def add_repeatable(
        self,
        cron: CronSpec | dict[str, Any] | str,
        name: str,
        payload: Any = None,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> RepeatableRegistration:
        """
        반복 잡 등록 (같은 key면 교체되어 스케줄은 하나만 유지)

        Raises:
            CronParseError: 크론 표현식이 잘못된 경우
            InvalidOptionsError, InvalidPayloadError: add()와 동일
        """
        if not name:
            raise InvalidOptionsError(self._name, "job name must not be empty")
        spec = self._parse_cron(cron)
        opts = self._merge_options(options)
        payload = self._validate_payload(payload)

        registration, _ = await self._register_repeatable(spec, name, payload, opts)
        return registration

    async def _register_repeatable(
        self,
        cron: CronSpec,
        name: str,
        payload: Any,
        options: JobOptions,
    ) -> tuple[RepeatableRegistration, Job]:
        key = cron.key or _repeat_key(name, cron)
        job_options = JobOptions.model_validate(
            options.model_dump(exclude=_REPEAT_ONLY_OPTIONS, exclude_unset=True)
        )

        now = now_ms()
        first_fire_at = next_fire_time(cron.pattern, now, cron.tz)

        # 같은 key의 이전 등록과 대기 중인 발생 잡 제거 후 재등록
        replaced = await self._broker.remove_repeatable(self._name, key)

        job = Job(
            id=repeat_job_id(key, first_fire_at),
            queue_name=self._name,
            name=name,
            payload=payload,
            options=job_options,
            state=JobState.DELAYED,
            enqueued_at=now,
            due_at=first_fire_at,
            repeat_key=key,
        )
        registration = RepeatableRegistration(
            key=key,
            queue_name=self._name,
            name=name,
            payload=payload,
            options=job_options,
            cron=cron,
            next_fire_at=first_fire_at,
            last_job_id=job.id,
        )
        await self._broker.upsert_repeatable(registration)
        await self._broker.add_job(job)

        logger.info(
            f"Repeatable registered: queue={self._name}, key={key}, pattern='{cron.pattern}', "
            f"next_fire_at={first_fire_at}, replaced={replaced}"
        )
        return registration, job

    async def remove_repeatable(self, key: str) -> bool:
        """반복 잡 등록 해제 (대기 중인 다음 발생 잡도 삭제)"""
        removed = await self._broker.remove_repeatable(self._name, key)
        if removed:
            logger.info(f"Repeatable removed: queue={self._name}, key={key}")
        return removed

    async def clear_all_repeatables(self) -> int:
        """큐의 모든 반복 잡 등록 해제 (프로세스 시작 시 재등록 전에 호출)"""
        removed = 0
        for registration in await self._broker.list_repeatables(self._name):
            if await self._broker.remove_repeatable(self._name, registration.key):
                removed += 1
        logger.info(f"Repeatables cleared: queue={self._name}, removed={removed}")
        return removed

    async def get_repeatables(self) -> list[RepeatableRegistration]:
        return await self._broker.list_repeatables(self._name)

    # ============================================================
    # 조회
    # ============================================================

    async def get_job(self, job_id: str) -> Job | None:
        """잡 조회 (없거나 다른 큐의 잡이면 None)"""
        job = await self._broker.get_job(job_id)
        if job is None or job.queue_name != self._name:
            return None
        return job

    async def get_job_counts(self) -> JobCounts:
        return await self._broker.get_counts(self._name)


def _repeat_key(name: str, cron: CronSpec) -> str:
    """이름 + 크론 표현식 + 타임존으로 결정되는 반복 잡 key"""
    digest = hashlib.sha1(f"{name}|{cron.pattern}|{cron.tz or 'UTC'}".encode("utf-8")).hexdigest()
    return f"{name}:{digest[:12]}"


def _first_error(error: ValidationError) -> str:
    err = error.errors()[0]
    location = ".".join(str(part) for part in err["loc"])
    return f"{location}: {err['msg']}" if location else err["msg"]
