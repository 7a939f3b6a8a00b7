"""
Delivery backoff policies

All strategies are capped and non-decreasing in the attempt number.
"""
from eventrelay.db.models.processor_config import BackoffStrategy


def _exponential_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    base_seconds * 2**retry_count, capped at max_backoff_seconds.

    Avoids computing huge powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # Is 2**retry_count >= ceil(max/base)? Answer without computing the power.
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


def calculate_backoff_seconds(
    strategy: BackoffStrategy | str | None,
    attempt: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Seconds to wait after failed attempt number `attempt` (1-based).

    linear:      attempt * base
    exponential: base * 2**(attempt - 1)
    fixed:       base
    """
    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0
    attempt = max(1, attempt)
    strategy = BackoffStrategy(strategy) if strategy else BackoffStrategy.LINEAR

    if strategy == BackoffStrategy.EXPONENTIAL:
        return _exponential_backoff_seconds(
            attempt - 1,
            base_seconds=base_seconds,
            max_backoff_seconds=max_backoff_seconds,
        )
    if strategy == BackoffStrategy.FIXED:
        return min(base_seconds, max_backoff_seconds)
    return min(attempt * base_seconds, max_backoff_seconds)
