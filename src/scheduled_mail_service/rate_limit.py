# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""In-memory rate limiting primitives.

This module provides the two building blocks shared by the dispatcher and
the email transport:

- :class:`TokenBucket`: grants a bounded number of operations, refilled
  continuously at a fixed rate.
- :class:`CircuitBreaker`: tracks the outcome of recent operations and stops
  traffic to a resource once its failure ratio crosses a threshold.

State lives in process memory and is rebuilt on restart. Both classes accept
an injectable ``clock`` returning monotonic seconds so tests can drive time.

Example:
    Throttling a loop to ten operations per second::

        bucket = TokenBucket(capacity=10, refill_rate=10.0)
        while work:
            await bucket.acquire()
            await do_one(work.pop())
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class TokenBucket:
    """Continuous-refill token bucket.

    Attributes:
        capacity: Maximum number of tokens the bucket holds.
        refill_rate: Tokens added per second.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    @property
    def tokens(self) -> float:
        """Tokens currently available, after refilling."""
        self._refill()
        return self._tokens

    def try_consume(self, amount: float = 1.0) -> bool:
        """Take ``amount`` tokens if available; never waits."""
        self._refill()
        if self._tokens >= amount:
            self._tokens -= amount
            return True
        return False

    def time_until_available(self, amount: float = 1.0) -> float:
        """Seconds until ``amount`` tokens will be available (0 if now)."""
        self._refill()
        missing = amount - self._tokens
        if missing <= 0:
            return 0.0
        return missing / self.refill_rate

    async def acquire(self, amount: float = 1.0) -> None:
        """Wait until ``amount`` tokens can be consumed, then consume them."""
        while not self.try_consume(amount):
            await asyncio.sleep(self.time_until_available(amount))

    def set_refill_rate(self, refill_rate: float) -> None:
        """Change the refill rate, crediting tokens earned at the old rate first."""
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self._refill()
        self.refill_rate = float(refill_rate)

    def status(self) -> dict[str, float]:
        return {
            "tokens": round(self.tokens, 3),
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
        }


class CircuitBreaker:
    """Failure-ratio circuit breaker over a rolling window of outcomes.

    The breaker opens when at least ``min_samples`` outcomes are recorded and
    the failure ratio reaches ``threshold``. After ``cooldown`` seconds it
    becomes half-open and lets a single trial through: success closes it and
    clears the window, failure reopens it for another cooldown.
    """

    def __init__(
        self,
        *,
        threshold: float = 0.3,
        window: int = 20,
        min_samples: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not 0 < threshold <= 1:
            raise ValueError("threshold must be in (0, 1]")
        self.threshold = threshold
        self.min_samples = max(1, int(min_samples))
        self.cooldown = float(cooldown)
        self._clock = clock
        self._outcomes: deque[bool] = deque(maxlen=max(self.min_samples, int(window)))
        self._state = CLOSED
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self.trips = 0

    @property
    def state(self) -> str:
        if self._state == OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.cooldown:
                self._state = HALF_OPEN
                self._trial_in_flight = False
        return self._state

    @property
    def error_rate(self) -> float:
        if not self._outcomes:
            return 0.0
        failures = sum(1 for ok in self._outcomes if not ok)
        return failures / len(self._outcomes)

    @property
    def samples(self) -> int:
        return len(self._outcomes)

    def allow_request(self) -> bool:
        """Return True if a new operation may proceed."""
        state = self.state
        if state == CLOSED:
            return True
        if state == HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        if self.state == HALF_OPEN:
            self._close()
            return
        self._outcomes.append(True)

    def record_failure(self) -> None:
        state = self.state
        if state == HALF_OPEN:
            self._open()
            return
        self._outcomes.append(False)
        if state == CLOSED and len(self._outcomes) >= self.min_samples and self.error_rate >= self.threshold:
            self._open()

    def release_trial(self) -> None:
        """Give up a half-open trial that ended without an outcome."""
        if self._state == HALF_OPEN:
            self._trial_in_flight = False

    def reset(self) -> None:
        self._close()

    def _open(self) -> None:
        self._state = OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self.trips += 1

    def _close(self) -> None:
        self._state = CLOSED
        self._opened_at = None
        self._trial_in_flight = False
        self._outcomes.clear()

    def status(self) -> dict[str, object]:
        state = self.state
        retry_in = None
        if state == OPEN and self._opened_at is not None:
            retry_in = max(0.0, self.cooldown - (self._clock() - self._opened_at))
        return {
            "state": state,
            "error_rate": round(self.error_rate, 4),
            "samples": self.samples,
            "trips": self.trips,
            "retry_in": retry_in,
        }
