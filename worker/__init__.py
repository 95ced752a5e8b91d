"""Worker 모듈 - 잡 claim/실행, 처리율 제한, 생명주기 이벤트"""

from worker.base import BaseHandler, FunctionHandler, resolve_handler
from worker.events import EventChannel, EventKind, Subscription, WorkerEvent
from worker.exception import HandlerResolveError, HandlerTimeoutError, WorkerClosedError, WorkerError
from worker.executor import Executor
from worker.limiter import RateLimiter
from worker.main import Worker
from worker.model import RateLimitConfig, WorkerConfig, WorkerPoolConfig, WorkerQueueEntry

__all__ = [
    "Worker",
    "WorkerConfig",
    "WorkerPoolConfig",
    "WorkerQueueEntry",
    "RateLimitConfig",
    "BaseHandler",
    "FunctionHandler",
    "resolve_handler",
    "Executor",
    "RateLimiter",
    "EventChannel",
    "EventKind",
    "Subscription",
    "WorkerEvent",
    "WorkerError",
    "WorkerClosedError",
    "HandlerResolveError",
    "HandlerTimeoutError",
]
