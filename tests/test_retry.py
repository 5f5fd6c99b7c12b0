import random

import pytest

from shared.errors import RetryExhaustedError
from shared.retry import RetryPolicy


class Flaky:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"attempt {self.calls} failed")
        return "ok"


def test_succeeds_after_transient_failures():
    sleeps = []
    fn = Flaky(failures=2)
    policy = RetryPolicy(base_delay=0.5, max_delay=10, max_attempts=5, jitter=0)
    assert policy.run(fn, sleep=sleeps.append) == "ok"
    assert fn.calls == 3
    assert sleeps == [0.5, 1.0]


def test_gives_up_with_last_error():
    fn = Flaky(failures=100)
    policy = RetryPolicy(base_delay=0, max_attempts=4, jitter=0)
    with pytest.raises(RetryExhaustedError) as exc_info:
        policy.run(fn, sleep=lambda s: None)
    assert fn.calls == 4
    assert str(exc_info.value.last_error) == "attempt 4 failed"


def test_unlisted_errors_are_not_retried():
    def boom():
        raise KeyError("nope")

    with pytest.raises(KeyError):
        RetryPolicy(max_attempts=5).run(boom, retry_on=(ConnectionError,), sleep=lambda s: None)


def test_delays_are_capped():
    policy = RetryPolicy(base_delay=1, max_delay=8, max_attempts=7, jitter=0)
    assert list(policy.delays()) == [1, 2, 4, 8, 8, 8]


def test_jitter_stays_in_band():
    policy = RetryPolicy(base_delay=4, max_delay=4, jitter=0.25, rng=random.Random(7))
    for attempt in range(20):
        assert 3.0 <= policy.delay(attempt) <= 5.0
