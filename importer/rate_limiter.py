"""
Outbound request rate limiting.

Limiters are keyed by scope (normally the target host) so one instance can
guard several hosts with independent quotas. Callers of the same scope are
served first-come-first-served; a request over quota is delayed, never
dropped.
"""

import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Optional

from logging_config import get_logger


class OperationCancelledError(Exception):
    """Raised when the run owning the request has been cancelled."""


class _ScopeQueue:
    """Ticket queue admitting the callers of one scope in arrival order."""

    def __init__(self):
        self.condition = threading.Condition()
        self.next_ticket = 0
        self.serving = 0

    @contextmanager
    def turn(self):
        with self.condition:
            ticket = self.next_ticket
            self.next_ticket += 1
            while self.serving != ticket:
                self.condition.wait()
        try:
            yield
        finally:
            with self.condition:
                self.serving += 1
                self.condition.notify_all()

    def waiting(self) -> int:
        with self.condition:
            return self.next_ticket - self.serving


class RateLimiter:
    """Interface shared by all rate limiting policies."""

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Args:
            clock: Monotonic time source
            sleep: Replacement for real waits (tests); real waits watch the
                caller's cancel event
        """
        self._clock = clock
        self._sleep = sleep
        self._queues: Dict[str, _ScopeQueue] = {}
        self._queues_guard = threading.Lock()
        self.logger = get_logger('http.rate_limiter')

    def _scope_queue(self, scope: str) -> _ScopeQueue:
        with self._queues_guard:
            queue = self._queues.get(scope)
            if queue is None:
                queue = self._queues[scope] = _ScopeQueue()
            return queue

    def acquire(self, scope: str = 'default', cancel_event: threading.Event = None) -> float:
        """
        Block until a request slot is available for the scope.

        Args:
            scope: Quota key, normally the host
            cancel_event: Aborts the wait when set

        Returns:
            Seconds spent waiting

        Raises:
            OperationCancelledError: The cancel event was set before a slot was granted
        """
        # Only the caller holding the turn may wait for quota
        with self._scope_queue(scope).turn():
            self._check_cancelled(cancel_event)
            waited = self._take(scope, cancel_event)

        if waited > 0:
            self.logger.debug(f"Rate limit reached for {scope}, waited {waited:.3f}s")
        return waited

    def release(self, scope: str = 'default') -> None:
        """Mark the request for the scope as finished. Time based policies need no release."""

    @contextmanager
    def slot(self, scope: str = 'default', cancel_event: threading.Event = None):
        self.acquire(scope, cancel_event)
        try:
            yield
        finally:
            self.release(scope)

    def waiting(self, scope: str = 'default') -> int:
        """Callers of the scope holding or queued for a turn."""
        return self._scope_queue(scope).waiting()

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Request cancelled while rate limited")

    def _pause(self, seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel_event is not None:
            cancel_event.wait(seconds)
        else:
            time.sleep(seconds)
        self._check_cancelled(cancel_event)

    def _take(self, scope: str, cancel_event: Optional[threading.Event]) -> float:
        raise NotImplementedError


class SlidingWindowRateLimiter(RateLimiter):
    """Allows at most max_requests per window seconds, measured over a sliding window."""

    def __init__(self, max_requests: int, window: float, **kwargs):
        super().__init__(**kwargs)
        if max_requests < 1 or window <= 0:
            raise ValueError("Sliding window needs max_requests >= 1 and window > 0")
        self.max_requests = max_requests
        self.window = window
        self._timestamps: Dict[str, Deque[float]] = {}

    def _evict(self, timestamps: Deque[float], now: float) -> None:
        while timestamps and now - timestamps[0] >= self.window:
            timestamps.popleft()

    def _take(self, scope: str, cancel_event: Optional[threading.Event]) -> float:
        timestamps = self._timestamps.setdefault(scope, deque())
        now = self._clock()
        self._evict(timestamps, now)

        waited = 0.0
        if len(timestamps) >= self.max_requests:
            wait_time = self.window - (now - timestamps[0])
            if wait_time > 0:
                self._pause(wait_time, cancel_event)
                waited = wait_time
            now = self._clock()
            self._evict(timestamps, now)
            # A clock that did not advance still must not let the window overflow
            while len(timestamps) >= self.max_requests:
                timestamps.popleft()

        timestamps.append(now)
        return waited

    def pending(self, scope: str = 'default') -> int:
        """Number of requests currently counted in the scope's window."""
        timestamps = self._timestamps.get(scope, deque())
        self._evict(timestamps, self._clock())
        return len(timestamps)


class TokenBucketRateLimiter(RateLimiter):
    """Bucket of `capacity` tokens refilled at capacity/window tokens per second."""

    def __init__(self, capacity: int, window: float, **kwargs):
        super().__init__(**kwargs)
        if capacity < 1 or window <= 0:
            raise ValueError("Token bucket needs capacity >= 1 and window > 0")
        self.capacity = float(capacity)
        self.refill_rate = capacity / window
        self._buckets: Dict[str, list] = {}

    def _refill(self, scope: str, now: float) -> list:
        bucket = self._buckets.get(scope)
        if bucket is None:
            bucket = self._buckets[scope] = [self.capacity, now]
            return bucket

        tokens, last_refill = bucket
        bucket[0] = min(self.capacity, tokens + (now - last_refill) * self.refill_rate)
        bucket[1] = now
        return bucket

    def _take(self, scope: str, cancel_event: Optional[threading.Event]) -> float:
        bucket = self._refill(scope, self._clock())

        waited = 0.0
        if bucket[0] < 1:
            wait_time = (1 - bucket[0]) / self.refill_rate
            self._pause(wait_time, cancel_event)
            waited = wait_time
            bucket = self._refill(scope, self._clock())
            bucket[0] = max(bucket[0], 1.0)

        bucket[0] -= 1
        return waited

    def available(self, scope: str = 'default') -> float:
        return self._refill(scope, self._clock())[0]


def build_rate_limiter(policy: str, limit: int, window: float, **kwargs) -> RateLimiter:
    """
    Create a limiter from configuration values.

    Args:
        policy: 'sliding_window' or 'token_bucket'
        limit: Requests allowed per window
        window: Window length in seconds
    """
    if policy == 'sliding_window':
        return SlidingWindowRateLimiter(limit, window, **kwargs)
    if policy == 'token_bucket':
        return TokenBucketRateLimiter(limit, window, **kwargs)
    raise ValueError(f"Unknown rate limiting policy: {policy}")
