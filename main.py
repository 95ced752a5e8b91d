"""
jobline 통합 진입점

Scheduler, Worker, Admin API를 한 번에 실행합니다.
브로커 연결 하나를 모든 모듈이 공유합니다.

사용법:
    python main.py                    # 전체 실행
    python main.py scheduler          # Scheduler만
    python main.py worker             # Worker만
    python main.py admin              # Admin API만
    python main.py scheduler worker   # 복수 선택
"""

import sys
import os

# Windows 인코딩 설정 (cp949 -> UTF-8)
if sys.platform == "win32":
    os.environ["PYTHONUTF8"] = "1"

import asyncio
import signal
import logging

from broker import create_broker
from broker.base import BaseBroker
from common.config import LoggingConfig, load_config
from common.logging import setup_logging

logger = logging.getLogger(__name__)

VALID_MODULES = ("scheduler", "worker", "admin")


async def run_scheduler(config: dict, broker: BaseBroker, stop_event: asyncio.Event):
    """Scheduler 실행"""
    from admin.main import build_queues
    from dispatcher.cron.main import Scheduler
    from dispatcher.model.scheduler import SchedulerConfig

    queues = build_queues(broker, config.get("queues") or {})
    scheduler = Scheduler(
        broker,
        list(queues),
        SchedulerConfig.model_validate(config.get("scheduler") or {}),
        queues=queues,
    )

    async def wait_stop():
        await stop_event.wait()
        await scheduler.stop()

    stopper = asyncio.create_task(wait_stop())
    try:
        await scheduler.start()
    finally:
        stopper.cancel()


async def run_worker(config: dict, broker: BaseBroker, stop_event: asyncio.Event):
    """큐별 Worker 실행"""
    from worker.events import EventChannel
    from worker.main import Worker
    from worker.model.worker import WorkerPoolConfig

    pool_config = WorkerPoolConfig.model_validate(config.get("worker") or {})
    events = EventChannel()
    workers = [
        Worker(entry.queue, entry.handler, broker, pool_config.worker_config(entry), events)
        for entry in pool_config.queues
    ]
    if not workers:
        logger.warning("No worker queues configured")
        return

    for worker in workers:
        await worker.start()

    await stop_event.wait()
    await asyncio.gather(*(worker.close() for worker in workers))


async def run_admin(config: dict, broker: BaseBroker, stop_event: asyncio.Event):
    """Admin API 실행"""
    import uvicorn
    from admin.main import AdminConfig, create_app

    admin_config = AdminConfig.model_validate(config.get("admin") or {})
    uv_config = uvicorn.Config(
        create_app(config, broker=broker),
        host=admin_config.host,
        port=admin_config.port,
        log_level="info",
    )
    server = uvicorn.Server(uv_config)

    async def wait_stop():
        await stop_event.wait()
        server.should_exit = True

    stopper = asyncio.create_task(wait_stop())
    try:
        await server.serve()
    finally:
        stopper.cancel()


async def main(modules: list[str]):
    """메인 함수"""
    config = load_config()

    # 로깅 설정
    logging_config = LoggingConfig.model_validate(config.get("logging") or {})
    setup_logging(logging_config.level, logging_config.json_format, logging_config.log_file)

    broker = create_broker(config.get("broker"))
    await broker.connect()

    # 종료 이벤트
    stop_event = asyncio.Event()

    # 시그널 핸들러
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    # Windows는 add_signal_handler를 지원하지 않음
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

    runners = {
        "scheduler": run_scheduler,
        "worker": run_worker,
        "admin": run_admin,
    }
    tasks = []
    for module in modules:
        tasks.append(asyncio.create_task(runners[module](config, broker, stop_event)))
        logger.info(f"{module} started")

    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        logger.info("Tasks cancelled")
    finally:
        await broker.close()
        logger.info("All modules stopped")


if __name__ == "__main__":
    # 인자 파싱
    args = sys.argv[1:]

    if args:
        modules = [m for m in args if m in VALID_MODULES]
        if not modules:
            print("Usage: python main.py [scheduler] [worker] [admin]")
            sys.exit(1)
    else:
        modules = list(VALID_MODULES)

    print(f"Starting jobline: {', '.join(modules)}")
    try:
        asyncio.run(main(modules))
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
