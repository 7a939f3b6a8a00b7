"""
Tests for broker redelivery policies
"""
import pytest
from hypothesis import given
from hypothesis.strategies import integers

from eventrelay.workers.retry import ExponentialRetryPolicy, LinearRetryPolicy, default_retry_policy


class TestRetryPolicies:

    @pytest.mark.unit
    def test_linear_delay(self):
        policy = LinearRetryPolicy(base_delay_seconds=5, max_delay_seconds=12)

        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [5, 10, 12, 12]

    @pytest.mark.unit
    def test_exponential_delay(self):
        policy = ExponentialRetryPolicy(base_delay_seconds=2, max_delay_seconds=20)

        assert [policy.delay_for(n) for n in (1, 2, 3, 4, 5)] == [2, 4, 8, 16, 20]

    @pytest.mark.unit
    def test_default_policy_from_settings(self):
        policy = default_retry_policy()

        assert isinstance(policy, LinearRetryPolicy)
        assert policy.max_redeliveries == 5

    @pytest.mark.unit
    @given(n=integers(min_value=0, max_value=10_000))
    def test_exponential_never_exceeds_cap(self, n):
        policy = ExponentialRetryPolicy(base_delay_seconds=3, max_delay_seconds=300)

        assert 0 < policy.delay_for(n) <= 300
        assert policy.delay_for(n + 1) >= policy.delay_for(n)
