"""
설정 파일 로더

config/ 디렉토리의 YAML 파일을 읽어 하나의 dict로 병합합니다.
각 모듈은 자신의 섹션(broker, queues, scheduler, worker, admin, logging)을
pydantic 설정 모델로 변환하여 사용합니다.

JOBLINE_CONFIG_DIR 환경변수로 설정 디렉토리를 변경할 수 있습니다.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_FILES = (
    "broker.yaml",
    "queue.yaml",
    "scheduler.yaml",
    "worker.yaml",
    "admin.yaml",
    "logging.yaml",
)


class LoggingConfig(BaseModel):
    """로깅 설정"""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    json_format: bool = True
    log_file: str | None = None


def get_config_dir() -> Path:
    """설정 디렉토리 경로 (프로젝트 루트 기준)"""
    env_dir = os.environ.get("JOBLINE_CONFIG_DIR")
    if env_dir:
        return Path(env_dir)
    return Path(__file__).parent.parent / "config"


def load_config(config_dir: str | Path | None = None) -> dict[str, Any]:
    """
    설정 파일 로드

    존재하지 않는 파일은 건너뛰며, 최상위 키 기준으로 병합합니다.

    Args:
        config_dir: 설정 디렉토리 (None이면 get_config_dir())

    Returns:
        병합된 설정 dict
    """
    path = Path(config_dir) if config_dir else get_config_dir()
    config: dict[str, Any] = {}

    for file_name in CONFIG_FILES:
        file_path = path / file_name
        if not file_path.exists():
            logger.debug(f"Config file not found, skipped: {file_path}")
            continue
        with open(file_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        config.update(data)

    return config
