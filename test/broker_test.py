"""
Broker 테스트 (SQLite, Redis 공통)

같은 테스트를 두 브로커 구현에 대해 실행합니다.
Redis 테스트는 localhost:6379에 연결할 수 없으면 건너뜁니다.

테스트 항목:
1. 잡 추가 / 중복 ID 무시 / 조회
2. claim 순서(FIFO)와 동시 claim 시 중복 없음
3. 지연 잡 승격 (due 기준)
4. complete / retry / fail 상태 전이와 보관 개수 정리
5. 진행률 기록
6. 반복 잡 compare-and-set
7. 처리율 제한 슬롯
8. 알림 구독 (SQLite)

실행: python -m pytest test/broker_test.py -v
"""

import asyncio
import logging
import socket
import sys
import uuid
from pathlib import Path

import pytest
import pytest_asyncio

# 프로젝트 루트 경로 추가
sys.path.insert(0, str(Path(__file__).parent.parent))

from broker import create_broker
from broker.exception import BrokerNotConnectedError, UnsupportedBrokerError
from broker.model import RedisOptions, SqliteConfig
from broker.redis import RedisBroker
from broker.sqlite3 import SQLiteBroker
from common.model.job import (
    CronSpec,
    Job,
    JobError,
    JobOptions,
    JobState,
    RepeatableRegistration,
    repeat_job_id,
)

# 테스트용 로깅 설정
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

QUEUE = "email"
NOW = 1_700_000_000_000


def _redis_available() -> bool:
    try:
        with socket.create_connection(("localhost", 6379), timeout=0.5):
            return True
    except OSError:
        return False


REDIS_AVAILABLE = _redis_available()


# ============================================================
# Fixtures
# ============================================================

@pytest_asyncio.fixture(params=["sqlite", "redis"])
async def broker(request, tmp_path):
    """브로커 인스턴스 (테스트마다 격리된 저장소)"""
    if request.param == "sqlite":
        b = SQLiteBroker(SqliteConfig(path=str(tmp_path / "jobline.db")))
        await b.connect()
        yield b
        await b.close()
        return

    if not REDIS_AVAILABLE:
        pytest.skip("Redis not available on localhost:6379")

    prefix = f"jobline-test-{uuid.uuid4().hex[:8]}"
    b = RedisBroker(RedisOptions(url="redis://localhost:6379/15"), prefix=prefix)
    await b.connect()
    yield b
    # 테스트 키 정리
    client = b._client
    keys = [key async for key in client.scan_iter(match=f"{prefix}:*")]
    if keys:
        await client.delete(*keys)
    await b.close()


def make_job(job_id: str, state: JobState = JobState.WAITING, due_at: int | None = None, **options) -> Job:
    return Job(
        id=job_id,
        queue_name=QUEUE,
        name="welcome",
        payload={"to": f"{job_id}@example.com"},
        options=JobOptions(**options),
        state=state,
        enqueued_at=NOW,
        due_at=due_at,
    )


async def add_waiting(broker, count: int) -> list[str]:
    ids = [f"job-{i}" for i in range(count)]
    for job_id in ids:
        assert await broker.add_job(make_job(job_id))
    return ids


# ============================================================
# 등록 / 조회
# ============================================================

class TestAddJob:
    """잡 추가 테스트"""

    @pytest.mark.asyncio
    async def test_add_and_get(self, broker):
        assert await broker.add_job(make_job("job-1", max_attempts=3))

        job = await broker.get_job("job-1")
        assert job is not None
        assert job.state == JobState.WAITING
        assert job.payload == {"to": "job-1@example.com"}
        assert job.options.max_attempts == 3
        assert job.attempts_made == 0

    @pytest.mark.asyncio
    async def test_duplicate_id_is_ignored(self, broker):
        assert await broker.add_job(make_job("job-1"))
        assert not await broker.add_job(make_job("job-1"))

        counts = await broker.get_counts(QUEUE)
        assert counts.waiting == 1

    @pytest.mark.asyncio
    async def test_unknown_job(self, broker):
        assert await broker.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_counts_by_state(self, broker):
        await add_waiting(broker, 2)
        await broker.add_job(make_job("later", JobState.DELAYED, due_at=NOW + 60_000))

        counts = await broker.get_counts(QUEUE)
        assert counts.waiting == 2
        assert counts.delayed == 1
        assert counts.active == 0

        other = await broker.get_counts("reports")
        assert other.waiting == 0


# ============================================================
# claim
# ============================================================

class TestClaim:
    """claim 테스트"""

    @pytest.mark.asyncio
    async def test_claim_fifo(self, broker):
        ids = await add_waiting(broker, 3)

        claimed = [await broker.claim(QUEUE, NOW + 1) for _ in ids]
        assert [job.id for job in claimed] == ids
        assert all(job.state == JobState.ACTIVE for job in claimed)
        assert all(job.attempts_made == 1 for job in claimed)
        assert claimed[0].processed_at == NOW + 1

        assert await broker.claim(QUEUE, NOW + 2) is None

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_duplicate(self, broker):
        """동시 claim 시 같은 잡이 두 번 반환되지 않음"""
        ids = await add_waiting(broker, 10)

        results = await asyncio.gather(*(broker.claim(QUEUE, NOW) for _ in range(20)))
        claimed = [job.id for job in results if job is not None]

        assert sorted(claimed) == sorted(ids)
        assert len(set(claimed)) == len(claimed)

        counts = await broker.get_counts(QUEUE)
        assert counts.active == 10
        assert counts.waiting == 0

    @pytest.mark.asyncio
    async def test_delayed_job_not_claimable(self, broker):
        await broker.add_job(make_job("later", JobState.DELAYED, due_at=NOW + 1000))
        assert await broker.claim(QUEUE, NOW + 5000) is None


# ============================================================
# 승격
# ============================================================

class TestPromote:
    """지연 잡 승격 테스트"""

    @pytest.mark.asyncio
    async def test_promote_only_due(self, broker):
        await broker.add_job(make_job("due", JobState.DELAYED, due_at=NOW + 1000))
        await broker.add_job(make_job("not-due", JobState.DELAYED, due_at=NOW + 5000))

        promoted = await broker.promote_due(QUEUE, NOW + 1000)
        assert [job.id for job in promoted] == ["due"]
        assert promoted[0].state == JobState.WAITING

        claimed = await broker.claim(QUEUE, NOW + 1001)
        assert claimed.id == "due"

        counts = await broker.get_counts(QUEUE)
        assert counts.delayed == 1

    @pytest.mark.asyncio
    async def test_concurrent_promote_once(self, broker):
        for i in range(5):
            await broker.add_job(make_job(f"d-{i}", JobState.DELAYED, due_at=NOW))

        results = await asyncio.gather(*(broker.promote_due(QUEUE, NOW) for _ in range(4)))
        promoted = [job.id for batch in results for job in batch]
        assert sorted(promoted) == [f"d-{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_promote_respects_limit(self, broker):
        for i in range(5):
            await broker.add_job(make_job(f"d-{i}", JobState.DELAYED, due_at=NOW + i))

        promoted = await broker.promote_due(QUEUE, NOW + 10, limit=2)
        assert [job.id for job in promoted] == ["d-0", "d-1"]

    @pytest.mark.asyncio
    async def test_schedule_at(self, broker):
        assert await broker.schedule_at(make_job("scheduled"), NOW + 500)

        job = await broker.get_job("scheduled")
        assert job.state == JobState.DELAYED
        assert job.due_at == NOW + 500


# ============================================================
# 상태 전이
# ============================================================

class TestTransitions:
    """complete / retry / fail 테스트"""

    @pytest.mark.asyncio
    async def test_complete(self, broker):
        await add_waiting(broker, 1)
        await broker.claim(QUEUE, NOW)

        assert await broker.complete(QUEUE, "job-0", NOW + 10, result={"sent": True})

        job = await broker.get_job("job-0")
        assert job.state == JobState.COMPLETED
        assert job.finished_at == NOW + 10
        assert job.result == {"sent": True}

        # active가 아니면 전환하지 않음
        assert not await broker.complete(QUEUE, "job-0", NOW + 20)

    @pytest.mark.asyncio
    async def test_complete_requires_active(self, broker):
        await add_waiting(broker, 1)
        assert not await broker.complete(QUEUE, "job-0", NOW)
        assert (await broker.get_job("job-0")).state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_retry_moves_to_delayed(self, broker):
        await add_waiting(broker, 1)
        await broker.claim(QUEUE, NOW)

        error = JobError(message="smtp down", timestamp=NOW + 5)
        assert await broker.retry(QUEUE, "job-0", NOW + 1000, error)

        job = await broker.get_job("job-0")
        assert job.state == JobState.DELAYED
        assert job.due_at == NOW + 1000
        assert job.last_error == error
        assert job.attempts_made == 1

        assert await broker.claim(QUEUE, NOW + 2000) is None
        await broker.promote_due(QUEUE, NOW + 1000)
        again = await broker.claim(QUEUE, NOW + 1000)
        assert again.id == "job-0"
        assert again.attempts_made == 2

    @pytest.mark.asyncio
    async def test_fail(self, broker):
        await add_waiting(broker, 1)
        await broker.claim(QUEUE, NOW)

        error = JobError(message="boom", timestamp=NOW + 5)
        assert await broker.fail(QUEUE, "job-0", NOW + 5, error)

        job = await broker.get_job("job-0")
        assert job.state == JobState.FAILED
        assert job.last_error.message == "boom"
        assert job.finished_at == NOW + 5

    @pytest.mark.asyncio
    async def test_complete_retention_prunes_oldest(self, broker):
        ids = await add_waiting(broker, 4)
        for offset, job_id in enumerate(ids):
            await broker.claim(QUEUE, NOW)
            await broker.complete(QUEUE, job_id, NOW + offset, retention=2)

        assert await broker.get_job("job-0") is None
        assert await broker.get_job("job-1") is None
        assert (await broker.get_job("job-2")).state == JobState.COMPLETED
        assert (await broker.get_job("job-3")).state == JobState.COMPLETED
        assert (await broker.get_counts(QUEUE)).completed == 2

    @pytest.mark.asyncio
    async def test_fail_retention_zero_removes_job(self, broker):
        await add_waiting(broker, 1)
        await broker.claim(QUEUE, NOW)

        await broker.fail(QUEUE, "job-0", NOW, JobError(message="boom", timestamp=NOW), retention=0)
        assert await broker.get_job("job-0") is None

    @pytest.mark.asyncio
    async def test_no_retention_keeps_everything(self, broker):
        ids = await add_waiting(broker, 3)
        for job_id in ids:
            await broker.claim(QUEUE, NOW)
            await broker.complete(QUEUE, job_id, NOW)

        assert (await broker.get_counts(QUEUE)).completed == 3

    @pytest.mark.asyncio
    async def test_update_progress(self, broker):
        await add_waiting(broker, 1)
        assert not await broker.update_progress(QUEUE, "job-0", 10)

        await broker.claim(QUEUE, NOW)
        assert await broker.update_progress(QUEUE, "job-0", 33)
        assert await broker.update_progress(QUEUE, "job-0", {"step": "aggregate", "percent": 67})

        job = await broker.get_job("job-0")
        assert job.state == JobState.ACTIVE
        assert job.progress == {"step": "aggregate", "percent": 67}


# ============================================================
# 반복 잡
# ============================================================

def make_registration(next_fire_at: int, limit: int | None = None, last_job_id: str | None = None):
    return RepeatableRegistration(
        key="every-minute",
        queue_name=QUEUE,
        name="digest",
        payload={"kind": "digest"},
        cron=CronSpec(pattern="* * * * *", limit=limit),
        next_fire_at=next_fire_at,
        last_job_id=last_job_id,
    )


def make_occurrence(fire_at: int) -> Job:
    return Job(
        id=repeat_job_id("every-minute", fire_at),
        queue_name=QUEUE,
        name="digest",
        payload={"kind": "digest"},
        state=JobState.WAITING,
        enqueued_at=fire_at,
        repeat_key="every-minute",
    )


class TestRepeatables:
    """반복 잡 등록 테스트"""

    @pytest.mark.asyncio
    async def test_upsert_list_and_due(self, broker):
        await broker.upsert_repeatable(make_registration(NOW + 60_000))

        registrations = await broker.list_repeatables(QUEUE)
        assert len(registrations) == 1
        assert registrations[0].cron.pattern == "* * * * *"

        assert await broker.due_repeatables(QUEUE, NOW) == []
        assert len(await broker.due_repeatables(QUEUE, NOW + 60_000)) == 1

    @pytest.mark.asyncio
    async def test_upsert_replaces_same_key(self, broker):
        await broker.upsert_repeatable(make_registration(NOW + 60_000))
        await broker.upsert_repeatable(make_registration(NOW + 120_000))

        registrations = await broker.list_repeatables(QUEUE)
        assert [r.next_fire_at for r in registrations] == [NOW + 120_000]

    @pytest.mark.asyncio
    async def test_fire_is_compare_and_set(self, broker):
        """같은 발생 시점은 한 번만 처리됨"""
        await broker.upsert_repeatable(make_registration(NOW))

        first = await broker.fire_repeatable(QUEUE, "every-minute", NOW, NOW + 60_000, make_occurrence(NOW))
        second = await broker.fire_repeatable(QUEUE, "every-minute", NOW, NOW + 60_000, make_occurrence(NOW))
        assert first is True
        assert second is False

        registration = (await broker.list_repeatables(QUEUE))[0]
        assert registration.next_fire_at == NOW + 60_000
        assert registration.fired_count == 1
        assert registration.last_job_id == repeat_job_id("every-minute", NOW)

        job = await broker.get_job(repeat_job_id("every-minute", NOW))
        assert job.state == JobState.WAITING
        assert job.repeat_key == "every-minute"

    @pytest.mark.asyncio
    async def test_fire_last_occurrence_removes_registration(self, broker):
        await broker.upsert_repeatable(make_registration(NOW, limit=1))

        assert await broker.fire_repeatable(QUEUE, "every-minute", NOW, None, make_occurrence(NOW))
        assert await broker.list_repeatables(QUEUE) == []
        assert await broker.get_job(repeat_job_id("every-minute", NOW)) is not None

    @pytest.mark.asyncio
    async def test_remove_deletes_pending_occurrence(self, broker):
        pending_id = repeat_job_id("every-minute", NOW + 60_000)
        await broker.upsert_repeatable(make_registration(NOW + 60_000, last_job_id=pending_id))
        await broker.add_job(make_job(pending_id, JobState.DELAYED, due_at=NOW + 60_000))

        assert await broker.remove_repeatable(QUEUE, "every-minute")
        assert await broker.list_repeatables(QUEUE) == []
        assert await broker.get_job(pending_id) is None

        assert not await broker.remove_repeatable(QUEUE, "every-minute")

    @pytest.mark.asyncio
    async def test_remove_keeps_started_occurrence(self, broker):
        """이미 대기열에 들어간 발생 잡은 삭제하지 않음"""
        fired_id = repeat_job_id("every-minute", NOW)
        await broker.upsert_repeatable(make_registration(NOW + 60_000, last_job_id=fired_id))
        await broker.add_job(make_job(fired_id))

        assert await broker.remove_repeatable(QUEUE, "every-minute")
        assert (await broker.get_job(fired_id)).state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_remove_keeps_retrying_occurrence(self, broker):
        """재시도 대기 중(delayed, attempts_made >= 1)인 발생 잡은 삭제하지 않음"""
        occurrence_id = repeat_job_id("every-minute", NOW)
        await broker.upsert_repeatable(make_registration(NOW + 60_000, last_job_id=occurrence_id))
        await broker.add_job(make_job(occurrence_id, JobState.DELAYED, due_at=NOW, max_attempts=3))

        await broker.promote_due(QUEUE, NOW, 10)
        claimed = await broker.claim(QUEUE, NOW)
        assert claimed.id == occurrence_id
        assert await broker.retry(QUEUE, occurrence_id, NOW + 60_000, JobError(message="smtp down", timestamp=NOW))

        assert await broker.remove_repeatable(QUEUE, "every-minute")
        job = await broker.get_job(occurrence_id)
        assert job is not None
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 1


# ============================================================
# 처리율 제한
# ============================================================

class TestRateLimit:
    """처리율 제한 슬롯 테스트"""

    @pytest.mark.asyncio
    async def test_window_is_enforced(self, broker):
        assert await broker.acquire_rate_limit(QUEUE, 2, 1000, NOW, "a") == 0
        assert await broker.acquire_rate_limit(QUEUE, 2, 1000, NOW + 100, "b") == 0

        wait_ms = await broker.acquire_rate_limit(QUEUE, 2, 1000, NOW + 200, "c")
        assert wait_ms == 800

        # 윈도우가 지나면 다시 획득 가능
        assert await broker.acquire_rate_limit(QUEUE, 2, 1000, NOW + 1000, "d") == 0

    @pytest.mark.asyncio
    async def test_release_frees_slot(self, broker):
        assert await broker.acquire_rate_limit(QUEUE, 1, 1000, NOW, "a") == 0
        assert await broker.acquire_rate_limit(QUEUE, 1, 1000, NOW, "b") > 0

        await broker.release_rate_limit(QUEUE, "a")
        assert await broker.acquire_rate_limit(QUEUE, 1, 1000, NOW, "b") == 0

    @pytest.mark.asyncio
    async def test_limits_are_per_queue(self, broker):
        assert await broker.acquire_rate_limit(QUEUE, 1, 1000, NOW, "a") == 0
        assert await broker.acquire_rate_limit("reports", 1, 1000, NOW, "b") == 0


# ============================================================
# 연결 / 생성
# ============================================================

class TestLifecycle:
    """브로커 생성 및 연결 테스트"""

    @pytest.mark.asyncio
    async def test_ping(self, broker):
        assert await broker.ping()

    @pytest.mark.asyncio
    async def test_not_connected(self, tmp_path):
        b = SQLiteBroker(SqliteConfig(path=str(tmp_path / "jobline.db")))
        with pytest.raises(BrokerNotConnectedError):
            await b.get_job("job-1")
        assert not await b.ping()

    @pytest.mark.asyncio
    async def test_claim_after_pool_closed(self, tmp_path):
        """close와 claim이 겹쳐 풀이 먼저 닫혀도 BrokerError로 전달됨"""
        b = SQLiteBroker(SqliteConfig(path=str(tmp_path / "jobline.db")))
        await b.connect()
        await b._pool.close()

        with pytest.raises(BrokerNotConnectedError):
            await b.claim(QUEUE, NOW)
        await b.close()

    def test_create_broker(self, tmp_path):
        assert isinstance(create_broker({"type": "sqlite", "sqlite": {"path": str(tmp_path / "x.db")}}), SQLiteBroker)
        assert isinstance(create_broker({"type": "redis"}), RedisBroker)
        with pytest.raises(UnsupportedBrokerError):
            create_broker({"type": "kafka"})


class TestNotifications:
    """알림 구독 테스트 (SQLite, 프로세스 내부)"""

    @pytest.mark.asyncio
    async def test_listen_receives_events(self, tmp_path):
        b = SQLiteBroker(SqliteConfig(path=str(tmp_path / "jobline.db")))
        await b.connect()
        try:
            events = b.listen(QUEUE)
            first = asyncio.create_task(events.__anext__())
            await asyncio.sleep(0)

            await b.add_job(make_job("job-1"))
            event = await asyncio.wait_for(first, timeout=1)
            assert event == {"event": "added", "job_id": "job-1", "queue": QUEUE, "state": "waiting"}

            await b.claim(QUEUE, NOW)
            event = await asyncio.wait_for(events.__anext__(), timeout=1)
            assert event["event"] == "active"
            assert event["attempts_made"] == 1

            await events.aclose()
        finally:
            await b.close()
