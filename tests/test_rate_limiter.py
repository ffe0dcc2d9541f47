from __future__ import annotations

import threading
import time

import pytest

from qdr_harvester.crawler.rate_limiter import RateLimiterClosed, TokenBucket


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_capacity_per_interval_with_fake_clock() -> None:
    clock = _Clock()
    bucket = TokenBucket(3, 1.0, clock=clock)

    assert [bucket.try_acquire() for _ in range(4)] == [True, True, True, False]

    clock.now += 0.5
    assert bucket.try_acquire() is False

    clock.now += 0.5
    assert bucket.available() == 3
    assert bucket.try_acquire() is True


def test_permits_return_one_interval_after_issue() -> None:
    clock = _Clock()
    bucket = TokenBucket(2, 1.0, clock=clock)
    assert bucket.try_acquire()
    clock.now += 0.6
    assert bucket.try_acquire()

    # Only the first permit has aged out; the sliding window still holds one.
    clock.now += 0.5
    assert bucket.available() == 1
    assert bucket.try_acquire()
    assert not bucket.try_acquire()


def test_concurrent_acquires_stay_within_capacity() -> None:
    bucket = TokenBucket(3, 0.5)
    threads = [threading.Thread(target=bucket.acquire) for _ in range(5)]
    for thread in threads:
        thread.start()

    time.sleep(0.2)
    assert bucket.acquired == 3

    for thread in threads:
        thread.join(timeout=2.0)
    assert bucket.acquired == 5
    bucket.close()


def test_close_wakes_blocked_waiters() -> None:
    bucket = TokenBucket(1, 30.0)
    bucket.acquire()
    errors: list[BaseException] = []

    def waiter() -> None:
        try:
            bucket.acquire()
        except RateLimiterClosed as exc:
            errors.append(exc)

    thread = threading.Thread(target=waiter)
    thread.start()
    time.sleep(0.05)
    bucket.close()
    thread.join(timeout=2.0)

    assert not thread.is_alive()
    assert len(errors) == 1
    with pytest.raises(RateLimiterClosed):
        bucket.try_acquire()


def test_rejects_non_positive_capacity() -> None:
    with pytest.raises(ValueError):
        TokenBucket(0)
