"""공통 모델 패키지"""

from common.model.job import (
    BackoffKind,
    BackoffSpec,
    CronSpec,
    Job,
    JobCounts,
    JobError,
    JobOptions,
    JobState,
    JobStatus,
    RepeatableRegistration,
    now_ms,
    repeat_job_id,
)

__all__ = [
    'BackoffKind',
    'BackoffSpec',
    'CronSpec',
    'Job',
    'JobCounts',
    'JobError',
    'JobOptions',
    'JobState',
    'JobStatus',
    'RepeatableRegistration',
    'now_ms',
    'repeat_job_id',
]
