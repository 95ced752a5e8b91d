from dispatcher.model.queue import QueueConfig
from dispatcher.model.scheduler import RepeatableEntry, SchedulerConfig

__all__ = ["QueueConfig", "RepeatableEntry", "SchedulerConfig"]
