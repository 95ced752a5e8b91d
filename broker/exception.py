"""
Broker 관련 예외 클래스 정의
"""


class BrokerError(Exception):
    """Broker 기본 예외"""
    def __init__(self, operation: str, message: str | None = None):
        self.operation = operation
        self.message = message or f"Broker operation failed: {operation}"
        super().__init__(self.message)


class BrokerConnectionError(BrokerError):
    """저장소 연결 실패 (네트워크, 타임아웃, 잠금 대기 초과)"""
    def __init__(self, operation: str, reason: str):
        self.reason = reason
        super().__init__(operation, f"Broker unreachable during {operation}: {reason}")


class BrokerNotConnectedError(BrokerError):
    """connect() 호출 전 사용"""
    def __init__(self, operation: str):
        super().__init__(operation, f"Broker not connected. Call connect() before {operation}")


class UnsupportedBrokerError(BrokerError):
    """지원하지 않는 브로커 타입"""
    def __init__(self, broker_type: str):
        self.broker_type = broker_type
        super().__init__("create", f"Unsupported broker type: {broker_type}")
