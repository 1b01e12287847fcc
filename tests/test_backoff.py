"""Property-based tests for backoff_delay and BackoffPolicy."""

from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from orderrelay.core.backoff import BackoffPolicy, backoff_delay

durations = st.integers(min_value=0, max_value=10**9).map(lambda us: timedelta(microseconds=us))
attempts = st.integers(min_value=0, max_value=10_000)


@given(attempt=attempts, base=durations, cap=durations)
def test_delay_never_exceeds_cap(attempt: int, base: timedelta, cap: timedelta):
    assert backoff_delay(attempt, base, cap) <= cap


@given(attempt=st.integers(min_value=0, max_value=20), base=durations, cap=durations)
def test_delay_matches_closed_form(attempt: int, base: timedelta, cap: timedelta):
    assert backoff_delay(attempt, base, cap) == min(base * 2**attempt, cap)


@given(attempt=st.integers(min_value=0, max_value=200), base=durations, cap=durations)
def test_delay_is_monotonic_in_attempt(attempt: int, base: timedelta, cap: timedelta):
    assert backoff_delay(attempt, base, cap) <= backoff_delay(attempt + 1, base, cap)


class TestBackoffDelay:
    def test_default_schedule(self):
        base, cap = timedelta(seconds=5), timedelta(minutes=5)
        delays = [backoff_delay(a, base, cap).total_seconds() for a in range(8)]
        assert delays == [5, 10, 20, 40, 80, 160, 300, 300]

    def test_huge_attempt_saturates_at_cap(self):
        cap = timedelta(minutes=5)
        assert backoff_delay(10**12, timedelta(seconds=5), cap) == cap

    def test_zero_base_is_zero(self):
        assert backoff_delay(50, timedelta(0), timedelta(minutes=5)) == timedelta(0)

    def test_negative_attempt_rejected(self):
        with pytest.raises(ValueError, match="attempt"):
            backoff_delay(-1, timedelta(seconds=1), timedelta(seconds=10))

    def test_negative_duration_rejected(self):
        with pytest.raises(ValueError):
            backoff_delay(0, timedelta(seconds=-1), timedelta(seconds=10))


class TestBackoffPolicy:
    def test_delay_delegates(self):
        policy = BackoffPolicy(timedelta(seconds=1), timedelta(seconds=10))
        assert policy.delay(0) == timedelta(seconds=1)
        assert policy.delay(3) == timedelta(seconds=8)
        assert policy.delay(4) == timedelta(seconds=10)

    def test_cap_below_base_rejected(self):
        with pytest.raises(ValueError, match="cap"):
            BackoffPolicy(timedelta(seconds=10), timedelta(seconds=1))
