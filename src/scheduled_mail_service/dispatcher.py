# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Rate-limited task dispatcher with per-resource circuit breakers.

The dispatcher throttles outbound operations per *resource key* (for the
scheduler, one key per tenant). Every resource owns:

- a :class:`~scheduled_mail_service.rate_limit.TokenBucket` sized from a
  named :class:`RateLimitRule`;
- a :class:`~scheduled_mail_service.rate_limit.CircuitBreaker` fed by the
  outcome of every task;
- a priority-ordered wait line (high before medium before low, FIFO within
  a priority) bounded by ``max_backpressure``.

Tasks for different resources proceed independently. When a resource's
error rate climbs, its refill rate is halved until it recovers; when it
crosses the breaker threshold, further tasks fail fast with
:class:`~scheduled_mail_service.errors.CircuitOpenError` until the cooldown
elapses.

Example:
    Sending through the dispatcher::

        dispatcher = RateLimitedDispatcher()
        result = await dispatcher.schedule(
            lambda: transport.send(options),
            priority="high",
            resource="email_tenant_practice-1",
            rate_limit_rule="email_scheduling",
            timeout=60,
        )
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .errors import BackpressureError, CircuitOpenError, DispatchError
from .logger import get_logger
from .rate_limit import OPEN, CircuitBreaker, TokenBucket

T = TypeVar("T")

PRIORITY_ORDER = {"high": 1, "medium": 2, "low": 3}
DEFAULT_RULE_NAME = "email_scheduling"


@dataclass(frozen=True)
class RateLimitRule:
    """``max_requests`` operations per ``window_seconds``, refilled continuously."""

    name: str
    max_requests: int
    window_seconds: float

    @property
    def refill_rate(self) -> float:
        return self.max_requests / self.window_seconds


DEFAULT_RULES = {
    DEFAULT_RULE_NAME: RateLimitRule(DEFAULT_RULE_NAME, max_requests=50, window_seconds=60.0),
}


@dataclass
class _ResourceState:
    rule: RateLimitRule
    bucket: TokenBucket
    breaker: CircuitBreaker
    condition: asyncio.Condition = field(default_factory=asyncio.Condition)
    waiters: list[tuple[int, int]] = field(default_factory=list)
    queued: int = 0
    running: int = 0
    throttled: bool = False
    processed: int = 0
    failed: int = 0


class RateLimitedDispatcher:
    """Per-resource token-bucket scheduler with backpressure and circuit breaking."""

    def __init__(
        self,
        rules: dict[str, RateLimitRule] | None = None,
        *,
        default_rule: str = DEFAULT_RULE_NAME,
        max_backpressure: int = 500,
        circuit_breaker_threshold: float = 0.3,
        breaker_window: int = 20,
        breaker_min_samples: int = 5,
        breaker_cooldown: float = 60.0,
        adaptive_throttling: bool = True,
        clock: Callable[[], float] = time.monotonic,
        logger=None,
    ):
        self.rules = dict(DEFAULT_RULES)
        if rules:
            self.rules.update(rules)
        if default_rule not in self.rules:
            raise ValueError(f"Unknown default rate limit rule: {default_rule}")
        self.default_rule = default_rule
        self.max_backpressure = max(1, int(max_backpressure))
        self.circuit_breaker_threshold = circuit_breaker_threshold
        self._breaker_window = breaker_window
        self._breaker_min_samples = breaker_min_samples
        self._breaker_cooldown = breaker_cooldown
        self.adaptive_throttling = adaptive_throttling
        self._clock = clock
        self.logger = logger or get_logger("Dispatcher")

        self._resources: dict[str, _ResourceState] = {}
        self._seq = itertools.count()
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

        self._total_processed = 0
        self._total_failed = 0
        self._total_rejected = 0
        self._total_circuit_rejections = 0
        self._total_throttled = 0
        self._adaptive_adjustments = 0
        self._latency_total = 0.0

    def add_rule(self, rule: RateLimitRule) -> None:
        self.rules[rule.name] = rule

    def _state_for(self, resource: str, rule_name: str | None) -> _ResourceState:
        state = self._resources.get(resource)
        if state is not None:
            return state
        name = rule_name or self.default_rule
        rule = self.rules.get(name)
        if rule is None:
            raise ValueError(f"Unknown rate limit rule: {name}")
        state = _ResourceState(
            rule=rule,
            bucket=TokenBucket(rule.max_requests, rule.refill_rate, clock=self._clock),
            breaker=CircuitBreaker(
                threshold=self.circuit_breaker_threshold,
                window=self._breaker_window,
                min_samples=self._breaker_min_samples,
                cooldown=self._breaker_cooldown,
                clock=self._clock,
            ),
        )
        self._resources[resource] = state
        return state

    async def schedule(
        self,
        task: Callable[[], Awaitable[T]],
        *,
        priority: str = "medium",
        resource: str = "default",
        rate_limit_rule: str | None = None,
        timeout: float | None = None,
        is_failure: Callable[[T], bool] | None = None,
    ) -> T:
        """Run ``task`` once the resource grants a token.

        Args:
            task: Zero-argument coroutine factory performing the operation.
            priority: ``high``, ``medium`` or ``low``.
            resource: Resource key the task is throttled under.
            rate_limit_rule: Rule used when the resource is first seen.
            timeout: Deadline in seconds for the task itself.
            is_failure: Optional predicate marking a returned value as a
                failure for circuit-breaker accounting.

        Returns:
            Whatever ``task`` returns.

        Raises:
            CircuitOpenError: The resource's breaker is open.
            BackpressureError: Too many tasks already wait on the resource.
            DispatchError: The dispatcher has been shut down.
            asyncio.TimeoutError: ``task`` exceeded ``timeout``.
        """
        if self._closed:
            raise DispatchError("Dispatcher is shut down", resource)
        state = self._state_for(resource, rate_limit_rule)

        if state.breaker.state == OPEN:
            self._total_circuit_rejections += 1
            raise CircuitOpenError(f"Circuit open for {resource}", resource)
        if state.queued >= self.max_backpressure:
            self._total_rejected += 1
            self.logger.warning(
                "Backpressure on %s: %d tasks queued, rejecting", resource, state.queued
            )
            raise BackpressureError(f"Too many queued tasks for {resource}", resource)

        rank = PRIORITY_ORDER.get(str(priority).lower(), PRIORITY_ORDER["medium"])
        state.queued += 1
        self._in_flight += 1
        self._idle.clear()
        try:
            await self._wait_for_token(state, rank)
            state.queued -= 1
            if not state.breaker.allow_request():
                self._total_circuit_rejections += 1
                raise CircuitOpenError(f"Circuit open for {resource}", resource)
            return await self._run(state, resource, task, timeout, is_failure)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def _wait_for_token(self, state: _ResourceState, rank: int) -> None:
        entry = (rank, next(self._seq))
        async with state.condition:
            heapq.heappush(state.waiters, entry)
            throttled = False
            try:
                while True:
                    if state.waiters[0] == entry:
                        if state.bucket.try_consume():
                            heapq.heappop(state.waiters)
                            state.condition.notify_all()
                            return
                        if not throttled:
                            throttled = True
                            self._total_throttled += 1
                        delay = state.bucket.time_until_available()
                        try:
                            await asyncio.wait_for(state.condition.wait(), timeout=delay)
                        except asyncio.TimeoutError:
                            pass
                    else:
                        await state.condition.wait()
            except BaseException:
                if entry in state.waiters:
                    state.waiters.remove(entry)
                    heapq.heapify(state.waiters)
                state.queued -= 1
                state.condition.notify_all()
                raise

    async def _run(
        self,
        state: _ResourceState,
        resource: str,
        task: Callable[[], Awaitable[T]],
        timeout: float | None,
        is_failure: Callable[[T], bool] | None,
    ) -> T:
        started = time.monotonic()
        state.running += 1
        try:
            if timeout is not None:
                result = await asyncio.wait_for(task(), timeout=timeout)
            else:
                result = await task()
        except asyncio.CancelledError:
            state.breaker.release_trial()
            raise
        except Exception:
            self._record(state, resource, ok=False)
            raise
        else:
            self._record(state, resource, ok=not (is_failure and is_failure(result)))
            return result
        finally:
            state.running -= 1
            self._latency_total += time.monotonic() - started

    def _record(self, state: _ResourceState, resource: str, *, ok: bool) -> None:
        state.processed += 1
        self._total_processed += 1
        was_open = state.breaker.state == OPEN
        if ok:
            state.breaker.record_success()
        else:
            state.failed += 1
            self._total_failed += 1
            state.breaker.record_failure()
        if not was_open and state.breaker.state == OPEN:
            self.logger.warning(
                "Circuit opened for %s (error rate %.0f%%)", resource, state.breaker.error_rate * 100
            )
        self._adapt(state, resource)

    def _adapt(self, state: _ResourceState, resource: str) -> None:
        if not self.adaptive_throttling:
            return
        breaker = state.breaker
        if breaker.samples < breaker.min_samples and not state.throttled:
            return
        rate = breaker.error_rate
        if not state.throttled and rate >= self.circuit_breaker_threshold / 2:
            state.bucket.set_refill_rate(state.rule.refill_rate / 2)
            state.throttled = True
            self._adaptive_adjustments += 1
            self.logger.info("Reducing send rate for %s (error rate %.0f%%)", resource, rate * 100)
        elif state.throttled and rate < self.circuit_breaker_threshold / 4:
            state.bucket.set_refill_rate(state.rule.refill_rate)
            state.throttled = False
            self._adaptive_adjustments += 1
            self.logger.info("Restoring send rate for %s", resource)

    def reset_resource(self, resource: str) -> bool:
        """Close the breaker and restore the nominal rate for ``resource``."""
        state = self._resources.get(resource)
        if state is None:
            return False
        state.breaker.reset()
        state.bucket.set_refill_rate(state.rule.refill_rate)
        state.throttled = False
        return True

    def health_status(self) -> dict[str, dict[str, Any]]:
        """Per-resource token level, queue depth and breaker state."""
        health: dict[str, dict[str, Any]] = {}
        for resource, state in self._resources.items():
            breaker = state.breaker.status()
            health[resource] = {
                "rule": state.rule.name,
                "tokens": round(state.bucket.tokens, 3),
                "capacity": state.bucket.capacity,
                "refill_rate": state.bucket.refill_rate,
                "queued": state.queued,
                "running": state.running,
                "throttled": state.throttled,
                "circuit_state": breaker["state"],
                "error_rate": breaker["error_rate"],
                "circuit_retry_in": breaker["retry_in"],
                "processed": state.processed,
                "failed": state.failed,
            }
        return health

    def get_metrics(self) -> dict[str, Any]:
        processed = self._total_processed
        return {
            "processed": processed,
            "failed": self._total_failed,
            "throttled": self._total_throttled,
            "rejected": self._total_rejected,
            "circuit_rejections": self._total_circuit_rejections,
            "circuit_trips": sum(s.breaker.trips for s in self._resources.values()),
            "adaptive_adjustments": self._adaptive_adjustments,
            "average_latency": (self._latency_total / processed) if processed else 0.0,
            "resources": len(self._resources),
            "in_flight": self._in_flight,
        }

    def is_circuit_open(self, resource: str) -> bool:
        state = self._resources.get(resource)
        return state is not None and state.breaker.state == OPEN

    async def shutdown(self, timeout: float | None = None) -> None:
        """Reject new tasks and wait for in-flight ones to finish."""
        self._closed = True
        if timeout is None:
            await self._idle.wait()
        else:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                self.logger.warning("Dispatcher shutdown timed out with %d tasks in flight", self._in_flight)
