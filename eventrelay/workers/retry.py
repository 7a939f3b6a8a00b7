"""
Redelivery policies for the worker pool

These govern broker-level redelivery of a task after a handler failure.
They are separate from delivery attempt budgets, which the tracking
service enforces on its own.
"""
from dataclasses import dataclass

from eventrelay.core.config import settings


@dataclass(frozen=True)
class LinearRetryPolicy:
    """delay(n) = n * base_delay, capped"""
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 300.0
    max_redeliveries: int = 5

    def delay_for(self, redelivery: int) -> float:
        return min(max(1, redelivery) * self.base_delay_seconds, self.max_delay_seconds)


@dataclass(frozen=True)
class ExponentialRetryPolicy:
    """delay(n) = base_delay * 2**(n-1), capped"""
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 300.0
    max_redeliveries: int = 5

    def delay_for(self, redelivery: int) -> float:
        exponent = min(max(1, redelivery) - 1, 32)
        return min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds)


def default_retry_policy() -> LinearRetryPolicy:
    return LinearRetryPolicy(
        base_delay_seconds=settings.TASK_RETRY_BASE_SECONDS,
        max_delay_seconds=settings.TASK_RETRY_MAX_SECONDS,
        max_redeliveries=settings.TASK_MAX_REDELIVERIES,
    )
