import random

import pytest
from pydantic import ValidationError
from relay.services.backoff import DeliveryPolicy


def test_delay_doubles_without_jitter():
    policy = DeliveryPolicy(base_delay_seconds=1, max_delay_seconds=300, jitter_ratio=0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1, 2, 4, 8, 16]


def test_delay_is_capped():
    policy = DeliveryPolicy(base_delay_seconds=1, max_delay_seconds=10, jitter_ratio=0)
    assert policy.delay_for(4) == 8
    assert policy.delay_for(5) == 10
    assert policy.delay_for(12) == 10


def test_jitter_stays_within_ratio():
    policy = DeliveryPolicy(base_delay_seconds=2, max_delay_seconds=300, jitter_ratio=0.5)
    rng = random.Random(42)
    for _ in range(100):
        delay = policy.delay_for(3, rng)
        assert 8 <= delay <= 12


@pytest.mark.parametrize("seed", range(20))
def test_delays_never_decrease(seed):
    policy = DeliveryPolicy(
        max_attempts=10, base_delay_seconds=1, max_delay_seconds=60, jitter_ratio=1.0
    )
    rng = random.Random(seed)
    delays = [policy.delay_for(n, rng) for n in range(1, 10)]
    assert delays == sorted(delays)
    assert max(delays) <= 60


def test_attempt_numbers_start_at_one():
    with pytest.raises(ValueError):
        DeliveryPolicy().delay_for(0)


def test_cap_below_base_is_rejected():
    with pytest.raises(ValidationError):
        DeliveryPolicy(base_delay_seconds=10, max_delay_seconds=5)


def test_jitter_ratio_above_one_is_rejected():
    with pytest.raises(ValidationError):
        DeliveryPolicy(jitter_ratio=1.5)


def test_max_total_delay():
    policy = DeliveryPolicy(
        max_attempts=5, base_delay_seconds=1, max_delay_seconds=300, jitter_ratio=0
    )
    assert policy.max_total_delay() == 15

    capped = DeliveryPolicy(
        max_attempts=5, base_delay_seconds=1, max_delay_seconds=3, jitter_ratio=0.5
    )
    # 1.5 + 3 + 3 + 3
    assert capped.max_total_delay() == 10.5
