"""Admin API 모델 패키지"""

from admin.api.model.job import EnqueueRequest, EnqueueResponse, RepeatableResponse

__all__ = [
    'EnqueueRequest',
    'EnqueueResponse',
    'RepeatableResponse',
]
