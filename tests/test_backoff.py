"""Tests for the retry backoff policy."""
import random
from datetime import timedelta

import pytest

from config.settings import DispatcherConfig
from job_queue.backoff import BackoffPolicy
from models.schemas import utcnow


class TestBackoffPolicy:
    def test_raw_delay_doubles(self):
        policy = BackoffPolicy(base_delay=5, max_delay=300, jitter_ratio=0)
        assert [policy.raw_delay(n) for n in range(1, 6)] == [5, 10, 20, 40, 80]

    def test_raw_delay_capped(self):
        policy = BackoffPolicy(base_delay=5, max_delay=60, jitter_ratio=0)
        assert policy.raw_delay(10) == 60
        assert policy.raw_delay(10_000) == 60

    def test_zero_attempt_has_no_delay(self):
        assert BackoffPolicy().delay(0) == 0.0

    def test_jitter_bounded(self):
        policy = BackoffPolicy(base_delay=10, max_delay=1000, jitter_ratio=0.2, rng=random.Random(7))
        for _ in range(200):
            d = policy.delay(3)
            assert 40 <= d <= 48

    def test_never_exceeds_max(self):
        policy = BackoffPolicy(base_delay=5, max_delay=30, jitter_ratio=1.0, rng=random.Random(1))
        assert all(policy.delay(n) <= 30 for n in range(1, 20))

    @pytest.mark.parametrize("seed", range(20))
    def test_successive_delays_never_decrease(self, seed):
        policy = BackoffPolicy(base_delay=1, max_delay=120, jitter_ratio=1.0, rng=random.Random(seed))
        delays = [policy.delay(n) for n in range(1, 15)]
        assert delays == sorted(delays)

    def test_next_run_at(self):
        now = utcnow()
        policy = BackoffPolicy(base_delay=5, max_delay=300, jitter_ratio=0)
        assert policy.next_run_at(2, now) == now + timedelta(seconds=10)

    @pytest.mark.parametrize("kwargs", [
        {"base_delay": 0},
        {"base_delay": 10, "max_delay": 5},
        {"jitter_ratio": 1.5},
        {"jitter_ratio": -0.1},
    ])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)

    def test_from_config(self):
        config = DispatcherConfig(backoff_base_seconds=2, backoff_max_seconds=50, backoff_jitter_ratio=0.5)
        policy = BackoffPolicy.from_config(config)
        assert (policy.base_delay, policy.max_delay, policy.jitter_ratio) == (2, 50, 0.5)
