"""지연/반복 잡 Scheduler"""
from dispatcher.cron.main import Scheduler

__all__ = ["Scheduler"]
