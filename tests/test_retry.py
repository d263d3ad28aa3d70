"""Tests for the bounded retry policy."""

import pytest

from copychief.retry import RetryPolicy


def test_delays_double_until_the_cap():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=16.0)
    assert list(policy.delays()) == [1.0, 2.0, 4.0, 8.0, 16.0]


def test_delay_is_clamped_to_max_delay():
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=5.0)
    assert policy.delay_for(6) == 5.0


def test_gives_up_after_max_attempts():
    policy = RetryPolicy(max_attempts=3)
    assert policy.delay_for(2) is not None
    assert policy.delay_for(3) is None
    assert policy.delay_for(100) is None


def test_zero_attempts_never_retries():
    assert list(RetryPolicy(max_attempts=0).delays()) == []


def test_jitter_only_adds_delay():
    policy = RetryPolicy(max_attempts=3, base_delay=2.0, jitter=0.5)
    for attempt in range(3):
        base = 2.0 * (2 ** attempt)
        assert base <= policy.delay_for(attempt) <= base * 1.5


def test_negative_attempt_rejected():
    with pytest.raises(ValueError):
        RetryPolicy().delay_for(-1)
