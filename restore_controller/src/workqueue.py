"""Deduplicating, rate-limited work queue of string keys.

Semantics follow the controller work queue contract:

* ``add`` ignores a key that is already waiting to be processed.  A key added
  while a worker holds it is remembered and handed out again once the worker
  calls ``done``, so one key is never processed by two workers at once.
* ``get`` blocks until a key is ready or the queue shuts down, returning
  ``(key, shutdown)``.
* ``add_rate_limited`` re-adds a key after the larger of a per-key
  exponential backoff and an overall token-bucket delay; ``forget`` clears
  that key's failure history.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

from restore_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ItemExponentialBackoff:
    """Per-key exponential backoff: ``base * 2**failures``, capped at ``max_delay``."""

    def __init__(self, base_delay_seconds: float = 0.005, max_delay_seconds: float = 1000.0) -> None:
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be > 0")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        """Record one more failure for *key* and return the delay before its retry."""
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        # Avoid float overflow for keys that have failed for a very long time.
        if failures >= 64:
            return self.max_delay_seconds
        return min(self.base_delay_seconds * (2**failures), self.max_delay_seconds)

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


class RateLimiter(Protocol):
    def when(self, key: str) -> float: ...

    def num_requeues(self, key: str) -> int: ...

    def forget(self, key: str) -> None: ...


class BucketRateLimiter:
    """Overall token bucket shared by every key: ``qps`` refill, ``burst`` capacity.

    Each ``when`` reserves one token.  While tokens remain the delay is zero;
    once the bucket is drained callers are spaced ``1 / qps`` seconds apart.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def num_requeues(self, key: str) -> int:
        return 0

    def forget(self, key: str) -> None:
        pass


class MaxOfRateLimiter:
    """Delays by the slowest of several limiters."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, key: str) -> float:
        return max(limiter.when(key) for limiter in self.limiters)

    def num_requeues(self, key: str) -> int:
        return max(limiter.num_requeues(key) for limiter in self.limiters)

    def forget(self, key: str) -> None:
        for limiter in self.limiters:
            limiter.forget(key)


def default_controller_rate_limiter(
    base_delay_seconds: float = 0.005,
    max_delay_seconds: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    """Per-key exponential backoff capped overall by a token bucket."""
    return MaxOfRateLimiter(
        ItemExponentialBackoff(base_delay_seconds, max_delay_seconds),
        BucketRateLimiter(qps=qps, burst=burst),
    )


class RateLimitingQueue:
    """Work queue with dedup, delayed adds and per-key retry backoff.

    Key internal state (all guarded by ``_cond``):
        ``_queue``
            Keys ready to be handed to a worker, in FIFO order.
        ``_dirty``
            Keys that need processing: everything in ``_queue`` plus keys
            re-added while a worker holds them.
        ``_processing``
            Keys currently held by a worker (between ``get`` and ``done``).
        ``_waiting`` / ``_waiting_heap``
            Next-eligible monotonic time per delayed key, and a heap over
            those times.  Heap entries whose time no longer matches
            ``_waiting`` are stale and skipped.
    """

    def __init__(
        self,
        name: str = "restore",
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock
        self._cond = threading.Condition(threading.Lock())
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: dict[str, float] = {}
        self._waiting_heap: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_locked(self, key: str) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        METRICS.queue_adds_total.inc()
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._waiting.pop(key, None)
            self._add_locked(key)

    def add_after(self, key: str, delay_seconds: float) -> None:
        """Add *key* once *delay_seconds* have passed. A sooner pending time wins."""
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_seconds
            existing = self._waiting.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._waiting[key] = ready_at
            heapq.heappush(self._waiting_heap, (ready_at, next(self._sequence), key))
            # Wake a blocked getter so it can shorten its wait.
            self._cond.notify()

    def add_rate_limited(self, key: str) -> None:
        delay = self.rate_limiter.when(key)
        METRICS.queue_retries_total.inc()
        LOGGER.debug("Re-queueing %s in %.3fs", key, delay)
        self.add_after(key, delay)

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    def _promote_ready_locked(self, now: float) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        while self._waiting_heap:
            ready_at, _, key = self._waiting_heap[0]
            if self._waiting.get(key) != ready_at:
                heapq.heappop(self._waiting_heap)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting_heap)
            del self._waiting[key]
            self._add_locked(key)
        return None

    def get(self, timeout_seconds: float | None = None) -> tuple[str | None, bool]:
        """Block until a key is ready. Returns ``(None, True)`` once shut down.

        With *timeout_seconds* set, returns ``(None, False)`` if nothing became
        ready in time.
        """
        deadline = None if timeout_seconds is None else self._clock() + timeout_seconds
        with self._cond:
            while True:
                next_ready = self._promote_ready_locked(self._clock())
                if self._queue:
                    break
                if self._shutting_down:
                    return None, True
                wait_for = next_ready
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None, False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            METRICS.queue_depth.set(len(self._queue))
            return key, False

    def done(self, key: str) -> None:
        """Release *key*; if it was re-added meanwhile, queue it again."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting keys, drop delayed ones and wake every blocked getter."""
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._waiting_heap.clear()
            self._cond.notify_all()
        LOGGER.debug("Work queue %s shut down", self.name)

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
