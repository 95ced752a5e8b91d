"""Redis 브로커 어댑터"""

from broker.redis.broker import RedisBroker
from broker.redis.connection import RedisKeys, create_client

__all__ = ["RedisBroker", "RedisKeys", "create_client"]
