"""
Worker 관련 예외 클래스 정의
"""


class WorkerError(Exception):
    """Worker 기본 예외"""
    pass


class WorkerClosedError(WorkerError):
    """close()된 Worker를 다시 시작하려는 경우"""
    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        self.message = f"Worker for queue '{queue_name}' is closed"
        super().__init__(self.message)


class HandlerResolveError(WorkerError):
    """핸들러 경로를 import 할 수 없거나 호출 가능한 객체가 아님"""
    def __init__(self, handler: str, reason: str):
        self.handler = handler
        self.reason = reason
        self.message = f"Cannot resolve handler '{handler}': {reason}"
        super().__init__(self.message)


class HandlerTimeoutError(WorkerError):
    """핸들러 실행 시간 초과 (재시도 대상 실패로 기록)"""
    def __init__(self, job_id: str, timeout_seconds: float):
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        self.message = f"Handler timed out after {timeout_seconds}s: job_id={job_id}"
        super().__init__(self.message)
