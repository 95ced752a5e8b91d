"""Dispatcher 모듈 - 잡 등록(Queue), 스케줄링(Scheduler), 상태 조회"""

from dispatcher.cron.main import Scheduler
from dispatcher.exception import (
    CronParseError,
    DispatcherError,
    InvalidOptionsError,
    InvalidPayloadError,
)
from dispatcher.model import QueueConfig, RepeatableEntry, SchedulerConfig
from dispatcher.queue.main import Queue
from dispatcher.status import StatusService

__all__ = [
    "Queue",
    "QueueConfig",
    "Scheduler",
    "SchedulerConfig",
    "RepeatableEntry",
    "StatusService",
    "DispatcherError",
    "InvalidOptionsError",
    "InvalidPayloadError",
    "CronParseError",
]
