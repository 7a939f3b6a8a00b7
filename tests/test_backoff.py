"""
Tests for delivery backoff policies
"""
import pytest
from hypothesis import given, settings as h_settings
from hypothesis.strategies import integers, sampled_from

from eventrelay.db.models.processor_config import BackoffStrategy
from eventrelay.domain.services.backoff import calculate_backoff_seconds

STRATEGIES = sampled_from([BackoffStrategy.LINEAR, BackoffStrategy.EXPONENTIAL, BackoffStrategy.FIXED, None])


class TestBackoffValues:

    @pytest.mark.unit
    @pytest.mark.parametrize("attempt,expected", [(1, 30), (2, 60), (3, 90), (500, 3600)])
    def test_linear(self, attempt, expected):
        assert calculate_backoff_seconds(
            BackoffStrategy.LINEAR, attempt, base_seconds=30, max_backoff_seconds=3600
        ) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("attempt,expected", [(1, 30), (2, 60), (3, 120), (4, 240), (10_000, 3600)])
    def test_exponential(self, attempt, expected):
        assert calculate_backoff_seconds(
            BackoffStrategy.EXPONENTIAL, attempt, base_seconds=30, max_backoff_seconds=3600
        ) == expected

    @pytest.mark.unit
    def test_fixed(self):
        for attempt in (1, 2, 50):
            assert calculate_backoff_seconds(
                "fixed", attempt, base_seconds=45, max_backoff_seconds=3600
            ) == 45

    @pytest.mark.unit
    def test_missing_strategy_is_linear(self):
        assert calculate_backoff_seconds(None, 2, base_seconds=10, max_backoff_seconds=100) == 20

    @pytest.mark.unit
    def test_zero_base_means_no_wait(self):
        assert calculate_backoff_seconds("linear", 3, base_seconds=0, max_backoff_seconds=100) == 0

    @pytest.mark.unit
    def test_attempt_below_one_treated_as_first(self):
        assert calculate_backoff_seconds("exponential", 0, base_seconds=10, max_backoff_seconds=100) == 10


class TestBackoffProperties:
    """Properties that hold for every strategy"""

    @pytest.mark.unit
    @h_settings(max_examples=200, deadline=None)
    @given(
        strategy=STRATEGIES,
        attempt=integers(min_value=1, max_value=10_000),
        base=integers(min_value=1, max_value=600),
        cap=integers(min_value=1, max_value=86_400),
    )
    def test_non_decreasing_and_capped(self, strategy, attempt, base, cap):
        current = calculate_backoff_seconds(strategy, attempt, base_seconds=base, max_backoff_seconds=cap)
        following = calculate_backoff_seconds(strategy, attempt + 1, base_seconds=base, max_backoff_seconds=cap)

        assert 0 <= current <= cap
        assert following >= current
