"""잡 등록 Queue"""
from dispatcher.queue.main import Queue

__all__ = ["Queue"]
