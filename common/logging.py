"""
JSON 구조화 로깅 설정

ELK/Loki 등 로그 수집 시스템과 연동 가능한 JSON 포맷 로깅을 제공합니다.
Worker가 잡을 실행하는 동안 남긴 로그(핸들러 로그 포함)에는
queue, job_id, attempt 필드가 자동으로 추가됩니다.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

from pythonjsonlogger.json import JsonFormatter

_JOB_FIELDS = ('queue', 'job_id', 'attempt')

_job_context: ContextVar[dict[str, Any] | None] = ContextVar('jobline_job_context', default=None)


@contextmanager
def job_log_context(queue: str, job_id: str, attempt: int) -> Iterator[None]:
    """블록 안에서 남긴 로그에 잡 식별 필드 추가"""
    token = _job_context.set({'queue': queue, 'job_id': job_id, 'attempt': attempt})
    try:
        yield
    finally:
        _job_context.reset(token)


class JobContextFilter(logging.Filter):
    """현재 실행 중인 잡 정보를 로그 레코드에 기록"""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _job_context.get() or {}
        for field in _JOB_FIELDS:
            setattr(record, field, context.get(field))
        return True


class CustomJsonFormatter(JsonFormatter):
    """JSON 로그 포매터"""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['timestamp'] = self.formatTime(record)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name

        for field in _JOB_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value
            else:
                log_record.pop(field, None)

        if 'message' not in log_record and record.getMessage():
            log_record['message'] = record.getMessage()


class TextFormatter(logging.Formatter):
    """텍스트 포매터 (잡 실행 중이면 [queue/job_id#attempt] 표시)"""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        job_id = getattr(record, 'job_id', None)
        if job_id is None:
            return message
        return f"{message} [{record.queue}/{job_id}#{record.attempt}]"


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: str | None = None
) -> None:
    """
    로깅 설정

    Args:
        level: 로그 레벨 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: JSON 포맷 사용 여부 (False면 텍스트 포맷)
        log_file: 로그 파일 경로 (None이면 stdout만 사용)
    """
    if json_format:
        formatter: logging.Formatter = CustomJsonFormatter(
            '%(timestamp)s %(level)s %(name)s %(message)s'
        )
    else:
        formatter = TextFormatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    context_filter = JobContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=handlers,
        force=True  # 기존 설정 덮어쓰기
    )

    # 외부 라이브러리 로그 레벨 조정
    for name in ('asyncio', 'aiosqlite', 'redis', 'uvicorn.access'):
        logging.getLogger(name).setLevel(logging.WARNING)
