import pytest

from skyfriction.utils.ratelimit import TokenBucketLimiter


class Clock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_burst_then_refuse_then_refill():
    clock = Clock()
    rl = TokenBucketLimiter(60, burst=2, clock=clock)
    assert rl.acquire("a")[0]
    assert rl.acquire("a")[0]
    allowed, remaining, retry = rl.acquire("a")
    assert (allowed, remaining, retry) == (False, 0, 1)

    clock.t += 1.0  # one token per second at 60/min
    assert rl.acquire("a")[0]
    assert rl.policy == "60;w=60;burst=2"


def test_keys_are_independent():
    rl = TokenBucketLimiter(1, burst=1, clock=Clock())
    assert rl.acquire("recompute:1.2.3.4")[0]
    assert not rl.acquire("recompute:1.2.3.4")[0]
    assert rl.acquire("compute-day:1.2.3.4")[0]


def test_bucket_map_is_bounded():
    rl = TokenBucketLimiter(1, burst=1, max_keys=2, clock=Clock())
    rl.acquire("a")
    rl.acquire("b")
    rl.acquire("a")      # refresh a
    rl.acquire("c")      # evicts b
    assert len(rl) == 2
    # b comes back with a full bucket
    assert rl.acquire("b")[0]


@pytest.mark.parametrize("kwargs", [{"per_minute": 0}, {"per_minute": 5, "max_keys": 0}])
def test_rejects_bad_settings(kwargs):
    with pytest.raises(ValueError):
        TokenBucketLimiter(**kwargs)
