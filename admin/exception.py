"""
Admin 관련 예외 클래스 정의
"""


class AdminError(Exception):
    """Admin 기본 예외"""
    pass


class QueueNotConfiguredError(AdminError):
    """설정(queue.yaml)에 없는 큐"""
    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        self.message = f"Queue '{queue_name}' is not configured"
        super().__init__(self.message)


class JobNotFoundError(AdminError):
    """잡을 찾을 수 없음"""
    def __init__(self, job_id: str):
        self.job_id = job_id
        self.message = f"Job with id '{job_id}' not found"
        super().__init__(self.message)


class RepeatableNotFoundError(AdminError):
    """반복 잡 등록을 찾을 수 없음"""
    def __init__(self, queue_name: str, key: str):
        self.queue_name = queue_name
        self.key = key
        self.message = f"Repeatable '{key}' not found in queue '{queue_name}'"
        super().__init__(self.message)
