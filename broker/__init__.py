"""
Broker Store Adapter 패키지

잡 상태 저장소(Redis, SQLite)에 대한 원자적 연산을 제공합니다.
"""

from broker.base import BaseBroker
from broker.exception import (
    BrokerConnectionError,
    BrokerError,
    BrokerNotConnectedError,
    UnsupportedBrokerError,
)
from broker.model import BrokerConfig


def create_broker(config: BrokerConfig | dict | None = None) -> BaseBroker:
    """
    설정에 맞는 브로커 생성 (연결은 호출자가 connect()로 수행)

    Raises:
        UnsupportedBrokerError: 지원하지 않는 브로커 타입
    """
    if config is None:
        config = BrokerConfig()
    elif isinstance(config, dict):
        config = BrokerConfig.model_validate(config)

    if config.type == "redis":
        from broker.redis import RedisBroker
        return RedisBroker(config.redis, prefix=config.prefix)
    if config.type == "sqlite":
        from broker.sqlite3 import SQLiteBroker
        return SQLiteBroker(config.sqlite, prefix=config.prefix)

    raise UnsupportedBrokerError(config.type)


__all__ = [
    "BaseBroker",
    "BrokerConfig",
    "BrokerError",
    "BrokerConnectionError",
    "BrokerNotConnectedError",
    "UnsupportedBrokerError",
    "create_broker",
]
