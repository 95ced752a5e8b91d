import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable

from common.loader import import_string
from common.model.job import Job
from worker.exception import HandlerResolveError

__all__ = ['BaseHandler', 'FunctionHandler', 'resolve_handler']


class BaseHandler(ABC):
    """잡 핸들러 기본 클래스"""

    @abstractmethod
    async def execute(self, job: Job) -> Any:
        """
        잡 실행 로직

        Args:
            job: 실행할 잡 (job.payload, await job.update_progress(...))

        Returns:
            실행 결과 (JSON 직렬화 가능한 값, job.result로 저장)

        Raises:
            Exception: 실행 실패 시 예외 발생 (재시도 정책에 따라 재시도 또는 실패 처리)
        """
        pass


class FunctionHandler(BaseHandler):
    """
    함수 핸들러 래퍼

    async 함수는 그대로 await 하고, 일반 함수는 asyncio.to_thread로
    별도 스레드에서 실행하여 이벤트 루프를 막지 않습니다.
    일반 함수가 코루틴 등 awaitable을 반환하면 (lambda job: send(job)) 이어서 await 합니다.
    """

    def __init__(self, func: Callable[[Job], Any]):
        self._func = func
        self._is_async = inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
            getattr(func, "__call__", None)
        )

    @property
    def name(self) -> str:
        return getattr(self._func, "__qualname__", repr(self._func))

    async def execute(self, job: Job) -> Any:
        if self._is_async:
            return await self._func(job)
        result = await asyncio.to_thread(self._func, job)
        if inspect.isawaitable(result):
            result = await result
        return result


def resolve_handler(handler: "str | BaseHandler | type[BaseHandler] | Callable[[Job], Any]") -> BaseHandler:
    """
    핸들러 지정값을 BaseHandler로 변환

    'module:attr' 경로, BaseHandler 인스턴스/서브클래스, 호출 가능한 함수를 받습니다.

    Raises:
        HandlerResolveError: import 실패 또는 호출 불가능한 객체
    """
    target = handler
    if isinstance(handler, str):
        try:
            target = import_string(handler)
        except (ImportError, AttributeError, ValueError) as e:
            raise HandlerResolveError(handler, str(e))

    if isinstance(target, BaseHandler):
        return target
    if isinstance(target, type):
        if issubclass(target, BaseHandler):
            return target()
        raise HandlerResolveError(str(handler), f"{target.__name__} is not a BaseHandler subclass")
    if callable(target):
        return FunctionHandler(target)

    raise HandlerResolveError(str(handler), "not callable")
