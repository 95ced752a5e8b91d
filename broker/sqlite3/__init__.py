"""SQLite 브로커 어댑터"""

from broker.sqlite3.broker import SQLiteBroker
from broker.sqlite3.connection import AsyncConnectionPool, ManagedTransaction

__all__ = ["SQLiteBroker", "AsyncConnectionPool", "ManagedTransaction"]
