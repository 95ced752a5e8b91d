"""
Queue(producer) 테스트

테스트 항목:
1. 즉시 / 지연 잡 등록
2. 큐 기본 옵션 병합
3. job_id 중복 등록 시 기존 잡 반환
4. 옵션 / 크론 / payload 검증 실패
5. 반복 잡 등록, 교체, 해제, 전체 해제
6. 잡 / 큐 조회
7. 상태 조회 서비스 (상태, 진행률)

실행: python -m pytest test/queue_test.py -v
"""

import logging
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from pydantic import BaseModel

# 프로젝트 루트 경로 추가
sys.path.insert(0, str(Path(__file__).parent.parent))

from broker.model import SqliteConfig
from broker.sqlite3 import SQLiteBroker
from common.model.job import JobError, JobOptions, JobState, now_ms, repeat_job_id
from dispatcher.exception import CronParseError, InvalidOptionsError, InvalidPayloadError
from dispatcher.model.queue import QueueConfig
from dispatcher.queue.main import Queue
from dispatcher.status import StatusService

# 테스트용 로깅 설정
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class WelcomePayload(BaseModel):
    to: str
    retries: int = 0


# ============================================================
# Fixtures
# ============================================================

@pytest_asyncio.fixture
async def broker(tmp_path):
    b = SQLiteBroker(SqliteConfig(path=str(tmp_path / "jobline.db")))
    await b.connect()
    yield b
    await b.close()


@pytest_asyncio.fixture
async def queue(broker):
    return Queue(
        "email",
        broker,
        QueueConfig(default_job_options={"max_attempts": 3, "backoff": {"kind": "exponential", "base_delay_ms": 100}}),
    )


# ============================================================
# 등록
# ============================================================

class TestAdd:
    """잡 등록 테스트"""

    @pytest.mark.asyncio
    async def test_add_waiting(self, queue, broker):
        job = await queue.add("welcome", {"to": "a@example.com"})

        assert job.state == JobState.WAITING
        assert job.queue_name == "email"
        stored = await broker.get_job(job.id)
        assert stored.state == JobState.WAITING
        assert stored.payload == {"to": "a@example.com"}

    @pytest.mark.asyncio
    async def test_default_options_merged(self, queue):
        job = await queue.add("welcome", None, {"max_attempts": 5})

        assert job.options.max_attempts == 5
        assert job.options.backoff.kind == "exponential"
        assert job.options.backoff.base_delay_ms == 100

    @pytest.mark.asyncio
    async def test_options_model_accepted(self, queue):
        job = await queue.add("welcome", None, JobOptions(delay_ms=10))
        assert job.options.max_attempts == 3
        assert job.state == JobState.DELAYED

    @pytest.mark.asyncio
    async def test_add_delayed(self, queue, broker):
        before = now_ms()
        job = await queue.add("welcome", None, {"delay_ms": 5000})

        assert job.state == JobState.DELAYED
        assert job.due_at >= before + 5000
        assert (await broker.get_counts("email")).delayed == 1
        assert await broker.claim("email", now_ms()) is None

    @pytest.mark.asyncio
    async def test_duplicate_job_id_returns_existing(self, queue, broker):
        first = await queue.add("welcome", {"n": 1}, {"job_id": "welcome-42"})
        second = await queue.add("welcome", {"n": 2}, {"job_id": "welcome-42"})

        assert first.id == second.id == "welcome-42"
        assert second.payload == {"n": 1}
        assert (await broker.get_counts("email")).waiting == 1

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, queue):
        ids = {(await queue.add("welcome")).id for _ in range(20)}
        assert len(ids) == 20


class TestValidation:
    """검증 실패 테스트"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("options", [
        {"max_attempts": 0},
        {"delay_ms": -1},
        {"backoff": {"kind": "random"}},
        {"priority": 1},
    ])
    async def test_invalid_options(self, queue, broker, options):
        with pytest.raises(InvalidOptionsError):
            await queue.add("welcome", None, options)
        assert (await broker.get_counts("email")).waiting == 0

    @pytest.mark.asyncio
    async def test_invalid_cron(self, queue):
        with pytest.raises(CronParseError) as exc_info:
            await queue.add("digest", None, {"repeat": {"pattern": "every day at 8"}})
        assert exc_info.value.cron_expression == "every day at 8"

    @pytest.mark.asyncio
    async def test_empty_name(self, queue):
        with pytest.raises(InvalidOptionsError):
            await queue.add("", None)

    def test_invalid_queue_name(self, broker):
        with pytest.raises(ValueError):
            Queue("email:high", broker)
        with pytest.raises(ValueError):
            Queue("", broker)

    @pytest.mark.asyncio
    async def test_payload_model(self, broker):
        queue = Queue("email", broker, payload_model=WelcomePayload)

        job = await queue.add("welcome", {"to": "a@example.com"})
        assert job.payload == {"to": "a@example.com", "retries": 0}

        with pytest.raises(InvalidPayloadError):
            await queue.add("welcome", {"retries": "many"})

    def test_from_config_resolves_payload_model(self, broker):
        queue = Queue.from_config(
            "email", broker, QueueConfig(payload_model="worker.job.email:EmailPayload"),
        )
        assert queue.name == "email"

    @pytest.mark.parametrize("path", ["worker.job.email:Missing", "no.such.module:Model", "common.backoff:next_delay"])
    def test_from_config_rejects_bad_payload_model(self, broker, path):
        with pytest.raises(InvalidOptionsError):
            Queue.from_config("email", broker, QueueConfig(payload_model=path))


# ============================================================
# 반복 잡
# ============================================================

class TestRepeatable:
    """반복 잡 등록 테스트"""

    @pytest.mark.asyncio
    async def test_add_repeatable(self, queue, broker):
        before = now_ms()
        registration = await queue.add_repeatable("*/5 * * * *", "digest", {"kind": "digest"})

        assert registration.key.startswith("digest:")
        assert registration.next_fire_at > before
        assert registration.next_fire_at % 300_000 == 0
        assert registration.fired_count == 0
        assert registration.options.repeat is None

        # 첫 발생 잡은 지연 잡으로 미리 생성됨
        first = await broker.get_job(repeat_job_id(registration.key, registration.next_fire_at))
        assert first.state == JobState.DELAYED
        assert first.due_at == registration.next_fire_at
        assert first.repeat_key == registration.key
        assert first.options.max_attempts == 3

    @pytest.mark.asyncio
    async def test_add_with_repeat_option(self, queue):
        job = await queue.add("digest", None, {"repeat": {"pattern": "0 * * * *", "key": "hourly"}})

        assert job.state == JobState.DELAYED
        assert job.id.startswith("repeat:hourly:")
        registrations = await queue.get_repeatables()
        assert [r.key for r in registrations] == ["hourly"]

    @pytest.mark.asyncio
    async def test_same_key_replaces(self, queue, broker):
        await queue.add_repeatable("0 * * * *", "digest", {"v": 1})
        await queue.add_repeatable("0 * * * *", "digest", {"v": 2})

        registrations = await queue.get_repeatables()
        assert len(registrations) == 1
        assert registrations[0].payload == {"v": 2}
        assert (await broker.get_counts("email")).delayed == 1

    @pytest.mark.asyncio
    async def test_different_patterns_are_separate(self, queue):
        await queue.add_repeatable("0 * * * *", "digest")
        await queue.add_repeatable({"pattern": "0 8 * * *", "tz": "Asia/Seoul"}, "digest")

        assert len(await queue.get_repeatables()) == 2

    @pytest.mark.asyncio
    async def test_remove_repeatable(self, queue, broker):
        registration = await queue.add_repeatable("0 * * * *", "digest")

        assert await queue.remove_repeatable(registration.key)
        assert await queue.get_repeatables() == []
        assert (await broker.get_counts("email")).delayed == 0
        assert not await queue.remove_repeatable(registration.key)

    @pytest.mark.asyncio
    async def test_clear_all_repeatables(self, queue):
        await queue.add_repeatable("0 * * * *", "a")
        await queue.add_repeatable("30 * * * *", "b")

        assert await queue.clear_all_repeatables() == 2
        assert await queue.get_repeatables() == []

    @pytest.mark.asyncio
    async def test_clear_keeps_retrying_occurrence(self, queue, broker):
        """재시작 시 등록을 정리해도 재시도 대기 중인 발생 잡은 남음"""
        registration = await queue.add_repeatable("* * * * *", "digest")
        fire_at = registration.next_fire_at
        job_id = repeat_job_id(registration.key, fire_at)

        await broker.promote_due("email", fire_at, 10)
        claimed = await broker.claim("email", fire_at)
        assert claimed.id == job_id
        await broker.retry("email", job_id, fire_at + 60_000, JobError(message="smtp down", timestamp=fire_at))

        assert await queue.clear_all_repeatables() == 1
        job = await broker.get_job(job_id)
        assert job is not None
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 1

    @pytest.mark.asyncio
    async def test_invalid_repeatable(self, queue):
        with pytest.raises(CronParseError):
            await queue.add_repeatable("* * *", "digest")
        with pytest.raises(CronParseError):
            await queue.add_repeatable({"pattern": "0 * * * *", "tz": "Nowhere/City"}, "digest")


# ============================================================
# 조회
# ============================================================

class TestLookup:
    """잡 / 큐 조회 테스트"""

    @pytest.mark.asyncio
    async def test_get_job(self, queue, broker):
        job = await queue.add("welcome")
        assert (await queue.get_job(job.id)).id == job.id

        other = Queue("reports", broker)
        assert await other.get_job(job.id) is None
        assert await queue.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_get_job_counts(self, queue):
        await queue.add("welcome")
        await queue.add("welcome", None, {"delay_ms": 60_000})

        counts = await queue.get_job_counts()
        assert counts.waiting == 1
        assert counts.delayed == 1


class TestStatusService:
    """상태 조회 서비스 테스트"""

    @pytest.mark.asyncio
    async def test_state_and_progress(self, queue, broker):
        status = StatusService(broker)
        job = await queue.add("welcome")

        result = await status.get_state(job.id)
        assert result.state == JobState.WAITING
        assert result.attempts_made == 0
        assert await status.get_progress(job.id) is None

        await broker.claim(queue.name, now_ms())
        await broker.update_progress(queue.name, job.id, {"step": 2})
        assert await status.get_progress(job.id) == {"step": 2}
        assert (await status.get_state(job.id)).state == JobState.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_or_other_queue(self, queue, broker):
        status = StatusService(broker)
        job = await queue.add("welcome")

        assert await status.get_state("missing") is None
        assert await status.get_progress("missing") is None
        assert await status.get_state(job.id, "reports") is None
        assert (await status.get_state(job.id, queue.name)).id == job.id
