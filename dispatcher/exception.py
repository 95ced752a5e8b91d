"""
Dispatcher(Queue, Scheduler) 관련 예외 클래스 정의
"""


class DispatcherError(Exception):
    """Dispatcher 기본 예외"""
    pass


class InvalidOptionsError(DispatcherError):
    """잡 옵션 검증 실패 (시도 횟수, 지연, 백오프, 반복 설정)"""
    def __init__(self, queue_name: str, message: str):
        self.queue_name = queue_name
        self.message = f"Invalid job options for queue '{queue_name}': {message}"
        super().__init__(self.message)


class InvalidPayloadError(DispatcherError):
    """payload가 큐의 payload 모델 검증에 실패"""
    def __init__(self, queue_name: str, message: str):
        self.queue_name = queue_name
        self.message = f"Invalid payload for queue '{queue_name}': {message}"
        super().__init__(self.message)


class CronParseError(InvalidOptionsError):
    """크론 표현식 파싱 실패"""
    def __init__(self, queue_name: str, cron_expression: str, message: str | None = None):
        self.cron_expression = cron_expression
        super().__init__(queue_name, message or f"Invalid cron expression: {cron_expression}")
