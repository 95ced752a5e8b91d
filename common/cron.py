"""
크론 표현식 유틸리티

croniter를 사용하여 5필드 크론 표현식을 검증하고 다음 실행 시각을 계산합니다.
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter


def _zone(tz: str | None):
    if not tz:
        return timezone.utc
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {tz}")


def validate_cron(pattern: str, tz: str | None = None) -> None:
    """
    크론 표현식 검증

    Raises:
        ValueError: 5필드가 아니거나 파싱할 수 없는 표현식, 알 수 없는 타임존
    """
    if len(pattern.split()) != 5:
        raise ValueError(f"Cron expression must have 5 fields: '{pattern}'")
    if not croniter.is_valid(pattern):
        raise ValueError(f"Invalid cron expression: '{pattern}'")
    _zone(tz)


def next_fire_time(pattern: str, after_ms: int, tz: str | None = None) -> int:
    """after_ms 이후 첫 실행 시각 (epoch ms)"""
    base = datetime.fromtimestamp(after_ms / 1000, tz=_zone(tz))
    next_time = croniter(pattern, base).get_next(datetime)
    return int(next_time.timestamp() * 1000)
