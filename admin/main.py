"""Admin API 서버 진입점"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from admin.api.handler.job import JobHandler
from admin.api.router.api import router
from broker import create_broker
from broker.base import BaseBroker
from common.config import load_config
from dispatcher.model.queue import QueueConfig
from dispatcher.queue.main import Queue
from dispatcher.status import StatusService

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


class CorsConfig(BaseModel):
    origins: list[str] = Field(default_factory=lambda: ["*"])
    allow_credentials: bool = True
    allow_methods: list[str] = Field(default_factory=lambda: ["*"])
    allow_headers: list[str] = Field(default_factory=lambda: ["*"])


class AdminConfig(BaseModel):
    """Admin API 설정 (admin.yaml)"""
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    debug: bool = False
    cors: CorsConfig = Field(default_factory=CorsConfig)


def build_queues(broker: BaseBroker, queue_configs: dict[str, Any]) -> dict[str, Queue]:
    """queue.yaml의 queues 섹션으로 Queue 생성"""
    return {
        name: Queue.from_config(name, broker, QueueConfig.model_validate(cfg or {}))
        for name, cfg in queue_configs.items()
    }


def create_app(config: dict[str, Any] | None = None, broker: BaseBroker | None = None) -> FastAPI:
    """
    FastAPI 앱 생성

    Args:
        config: 병합된 설정 dict (None이면 config/*.yaml 로드)
        broker: 연결된 브로커 (None이면 broker 설정으로 생성하여 lifespan에서 연결/해제)
    """
    config = load_config() if config is None else config
    admin_config = AdminConfig.model_validate(config.get('admin') or {})

    owns_broker = broker is None
    if broker is None:
        broker = create_broker(config.get('broker'))

    queues = build_queues(broker, config.get('queues') or {})

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """앱 생명주기 관리"""
        if owns_broker:
            await broker.connect()
            logger.info("Broker connected")

        yield

        if owns_broker:
            await broker.close()
            logger.info("Broker closed")

    app = FastAPI(
        title="jobline Admin API",
        description="잡 등록 및 상태 조회 API",
        version=VERSION,
        debug=admin_config.debug,
        lifespan=lifespan,
    )
    app.state.broker = broker
    app.state.job_handler = JobHandler(queues, StatusService(broker))

    # CORS 설정
    app.add_middleware(
        CORSMiddleware,
        allow_origins=admin_config.cors.origins,
        allow_credentials=admin_config.cors.allow_credentials,
        allow_methods=admin_config.cors.allow_methods,
        allow_headers=admin_config.cors.allow_headers,
    )

    # API 라우터 등록
    app.include_router(router)

    return app


if __name__ == "__main__":
    import uvicorn

    from common.logging import setup_logging
    from common.config import LoggingConfig

    config = load_config()
    logging_config = LoggingConfig.model_validate(config.get('logging') or {})
    setup_logging(logging_config.level, logging_config.json_format, logging_config.log_file)
    admin_config = AdminConfig.model_validate(config.get('admin') or {})

    uvicorn.run(
        create_app(config),
        host=admin_config.host,
        port=admin_config.port,
    )
