"""jobline - Redis/SQLite 기반 비동기 잡 큐"""

__version__ = "0.1.0"
