"""
설정 / 로깅 테스트

테스트 항목:
1. 설정 디렉토리 YAML 병합 (JOBLINE_CONFIG_DIR)
2. 기본 설정 파일 검증
3. Worker 큐별 설정 생성
4. JSON 로그에 잡 식별 필드 추가

실행: python -m pytest test/config_test.py -v
"""

import json
import logging
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

# 프로젝트 루트 경로 추가
sys.path.insert(0, str(Path(__file__).parent.parent))

from broker.model import BrokerConfig
from common.config import LoggingConfig, load_config
from common.logging import job_log_context, setup_logging
from dispatcher.model.queue import QueueConfig
from dispatcher.model.scheduler import SchedulerConfig
from worker.model.worker import WorkerConfig, WorkerPoolConfig


class TestLoadConfig:
    """설정 로드 테스트"""

    def test_merge_from_env_dir(self, tmp_path, monkeypatch):
        (tmp_path / "broker.yaml").write_text("broker:\n  type: sqlite\n", encoding="utf-8")
        (tmp_path / "worker.yaml").write_text(
            "worker:\n  queues:\n    - queue: email\n      handler: worker.job.email:send_email\n",
            encoding="utf-8",
        )
        monkeypatch.setenv("JOBLINE_CONFIG_DIR", str(tmp_path))

        config = load_config()
        assert config["broker"]["type"] == "sqlite"
        assert config["worker"]["queues"][0]["queue"] == "email"
        assert "admin" not in config

    def test_bundled_config_is_valid(self, monkeypatch):
        monkeypatch.delenv("JOBLINE_CONFIG_DIR", raising=False)
        config = load_config()

        BrokerConfig.model_validate(config["broker"])
        SchedulerConfig.model_validate(config["scheduler"])
        WorkerPoolConfig.model_validate(config["worker"])
        LoggingConfig.model_validate(config["logging"])
        for queue_config in config["queues"].values():
            QueueConfig.model_validate(queue_config)


class TestWorkerConfig:
    """Worker 설정 테스트"""

    def test_worker_config_per_queue(self):
        pool = WorkerPoolConfig.model_validate({
            "poll_interval_ms": 50,
            "shutdown_timeout_seconds": 10,
            "queues": [
                {"queue": "email", "handler": "worker.job.email:send_email", "concurrency": 3,
                 "rate_limit": {"max": 10, "window_ms": 1000}},
            ],
        })

        config = pool.worker_config(pool.queues[0])
        assert config.concurrency == 3
        assert config.rate_limit.max == 10
        assert config.poll_interval_ms == 50
        assert config.shutdown_timeout_seconds == 10

    @pytest.mark.parametrize("data", [
        {"concurrency": 0},
        {"poll_interval_ms": 500, "max_poll_interval_ms": 100},
        {"rate_limit": {"max": 0, "window_ms": 1000}},
        {"handler_timeout_seconds": 0},
    ])
    def test_invalid_worker_config(self, data):
        with pytest.raises(ValidationError):
            WorkerConfig.model_validate(data)


class TestLogging:
    """로깅 설정 테스트"""

    def test_json_log_includes_job_fields(self, capsys):
        setup_logging("INFO", json_format=True)
        logger = logging.getLogger("jobline.test")

        logger.info("outside job")
        with job_log_context("email", "job-1", 2):
            logger.info("inside job")

        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
        outside = next(line for line in lines if line["message"] == "outside job")
        inside = next(line for line in lines if line["message"] == "inside job")

        assert "job_id" not in outside
        assert inside["job_id"] == "job-1"
        assert inside["queue"] == "email"
        assert inside["attempt"] == 2
        assert inside["level"] == "INFO"

    def test_text_log_includes_job_fields(self, capsys):
        setup_logging("INFO", json_format=False)

        with job_log_context("reports", "job-9", 1):
            logging.getLogger("jobline.test").warning("slow step")

        assert "[reports/job-9#1]" in capsys.readouterr().out
