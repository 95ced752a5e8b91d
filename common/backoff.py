"""
재시도 대기 정책

시도 횟수와 BackoffSpec으로 다음 시도까지의 대기 시간을 계산하는 순수 함수.
"""

from common.model.job import BackoffKind, BackoffSpec


def next_delay(attempts_made: int, max_attempts: int, backoff: BackoffSpec) -> int | None:
    """
    다음 시도 전 대기 시간 계산

    Args:
        attempts_made: 지금까지 시작된 시도 횟수
        max_attempts: 최대 시도 횟수
        backoff: 대기 전략

    Returns:
        대기 시간(ms), 시도 횟수를 모두 소진했으면 None
    """
    if attempts_made >= max_attempts:
        return None

    if backoff.kind == BackoffKind.EXPONENTIAL:
        # 다음 시도 n = attempts_made + 1 -> base * 2^(n-2)
        return backoff.base_delay_ms * (2 ** max(attempts_made - 1, 0))

    return backoff.base_delay_ms
