"""Tests for the sliding window and token bucket limiters."""

import threading
import time

import pytest

from importer.rate_limiter import (
    OperationCancelledError,
    SlidingWindowRateLimiter,
    TokenBucketRateLimiter,
    build_rate_limiter,
)


def test_sliding_window_allows_burst_up_to_limit(clock):
    limiter = SlidingWindowRateLimiter(5, 1.0, clock=clock, sleep=clock.sleep)

    waits = [limiter.acquire("shop.test") for _ in range(5)]

    assert waits == [0.0] * 5
    assert clock.sleeps == []
    assert limiter.pending("shop.test") == 5


def test_sliding_window_delays_request_over_quota(clock):
    limiter = SlidingWindowRateLimiter(2, 1.0, clock=clock, sleep=clock.sleep)

    limiter.acquire("shop.test")
    clock.advance(0.25)
    limiter.acquire("shop.test")
    waited = limiter.acquire("shop.test")

    # Oldest request leaves the window one second after it was made
    assert waited == pytest.approx(0.75)
    assert clock.sleeps == [pytest.approx(0.75)]


def test_sliding_window_never_exceeds_limit_in_any_window(clock):
    limiter = SlidingWindowRateLimiter(5, 1.0, clock=clock, sleep=clock.sleep)
    timestamps = []

    for _ in range(23):
        limiter.acquire("shop.test")
        timestamps.append(clock())

    for start in timestamps:
        in_window = [t for t in timestamps if start <= t < start + 1.0]
        assert len(in_window) <= 5


def test_sliding_window_scopes_are_independent(clock):
    limiter = SlidingWindowRateLimiter(1, 1.0, clock=clock, sleep=clock.sleep)

    limiter.acquire("shop.test")
    limiter.acquire("data.rainforest.test")

    assert clock.sleeps == []


def test_sliding_window_slot_context_manager(clock):
    limiter = SlidingWindowRateLimiter(1, 1.0, clock=clock, sleep=clock.sleep)

    with limiter.slot("shop.test"):
        pass
    with limiter.slot("shop.test"):
        pass

    assert clock.sleeps == [pytest.approx(1.0)]


def test_sliding_window_threads_share_quota():
    limiter = SlidingWindowRateLimiter(3, 60.0)
    acquired = []

    def worker():
        limiter.acquire("shop.test")
        acquired.append(1)

    threads = [threading.Thread(target=worker) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(acquired) == 3
    assert limiter.pending("shop.test") == 3


def test_token_bucket_refills_over_time(clock):
    limiter = TokenBucketRateLimiter(2, 1.0, clock=clock, sleep=clock.sleep)

    limiter.acquire("api.openai.com")
    limiter.acquire("api.openai.com")
    waited = limiter.acquire("api.openai.com")

    assert waited == pytest.approx(0.5)
    assert limiter.available("api.openai.com") == pytest.approx(0.0)

    clock.advance(1.0)
    assert limiter.available("api.openai.com") == pytest.approx(2.0)


def test_build_rate_limiter_policies(clock):
    assert isinstance(build_rate_limiter("sliding_window", 5, 1.0), SlidingWindowRateLimiter)
    assert isinstance(build_rate_limiter("token_bucket", 5, 1.0), TokenBucketRateLimiter)

    with pytest.raises(ValueError):
        build_rate_limiter("leaky", 5, 1.0)


def test_invalid_limits_rejected():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(0, 1.0)
    with pytest.raises(ValueError):
        TokenBucketRateLimiter(5, 0)


def wait_until(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, "condition not reached in time"
        time.sleep(0.001)


def test_waiters_are_served_in_arrival_order(clock):
    release = threading.Event()
    served = []

    def blocking_sleep(seconds):
        served.append(threading.current_thread().name)
        release.wait(5)
        clock.advance(seconds)

    limiter = SlidingWindowRateLimiter(1, 1.0, clock=clock, sleep=blocking_sleep)
    limiter.acquire("shop.test")

    threads = []
    for position in range(4):
        thread = threading.Thread(target=limiter.acquire, args=("shop.test",), name=f"caller-{position}")
        thread.start()
        threads.append(thread)
        wait_until(lambda: limiter.waiting("shop.test") == position + 1)

    release.set()
    for thread in threads:
        thread.join(5)

    assert served == ["caller-0", "caller-1", "caller-2", "caller-3"]
    assert limiter.waiting("shop.test") == 0


def test_cancelled_caller_gets_no_slot(clock):
    limiter = SlidingWindowRateLimiter(5, 1.0, clock=clock, sleep=clock.sleep)
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(OperationCancelledError):
        limiter.acquire("shop.test", cancel_event)

    assert limiter.pending("shop.test") == 0
    assert limiter.waiting("shop.test") == 0


def test_cancel_interrupts_quota_wait():
    limiter = SlidingWindowRateLimiter(1, 60.0)
    cancel_event = threading.Event()
    limiter.acquire("api.openai.com", cancel_event)

    timer = threading.Timer(0.05, cancel_event.set)
    timer.start()
    started = time.monotonic()

    with pytest.raises(OperationCancelledError):
        limiter.acquire("api.openai.com", cancel_event)

    timer.join()
    assert time.monotonic() - started < 5.0
    assert limiter.pending("api.openai.com") == 1


def test_token_bucket_wait_is_cancellable():
    limiter = TokenBucketRateLimiter(1, 60.0)
    cancel_event = threading.Event()
    limiter.acquire("data.rainforest.test", cancel_event)

    timer = threading.Timer(0.05, cancel_event.set)
    timer.start()

    with pytest.raises(OperationCancelledError):
        limiter.acquire("data.rainforest.test", cancel_event)

    timer.join()
