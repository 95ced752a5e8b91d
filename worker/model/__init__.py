from worker.model.worker import RateLimitConfig, WorkerConfig, WorkerPoolConfig, WorkerQueueEntry

__all__ = ["RateLimitConfig", "WorkerConfig", "WorkerPoolConfig", "WorkerQueueEntry"]
