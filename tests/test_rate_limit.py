import pytest

from scheduled_mail_service.rate_limit import CLOSED, HALF_OPEN, OPEN, CircuitBreaker, TokenBucket


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_bucket_consumes_and_refills():
    clock = FakeClock()
    bucket = TokenBucket(3, 1.0, clock=clock)
    assert all(bucket.try_consume() for _ in range(3))
    assert bucket.try_consume() is False
    assert bucket.time_until_available() == pytest.approx(1.0)
    clock.advance(0.5)
    assert bucket.try_consume() is False
    clock.advance(0.5)
    assert bucket.try_consume() is True


def test_bucket_never_exceeds_capacity():
    clock = FakeClock()
    bucket = TokenBucket(2, 10.0, clock=clock)
    clock.advance(100)
    assert bucket.tokens == pytest.approx(2.0)


def test_bucket_set_refill_rate_credits_elapsed_time_first():
    clock = FakeClock()
    bucket = TokenBucket(10, 2.0, clock=clock)
    for _ in range(10):
        bucket.try_consume()
    clock.advance(1.0)
    bucket.set_refill_rate(1.0)
    assert bucket.tokens == pytest.approx(2.0)
    clock.advance(1.0)
    assert bucket.tokens == pytest.approx(3.0)


def test_bucket_rejects_invalid_parameters():
    with pytest.raises(ValueError):
        TokenBucket(0, 1.0)
    with pytest.raises(ValueError):
        TokenBucket(1, 0)
    with pytest.raises(ValueError):
        TokenBucket(1, 1.0).set_refill_rate(-1)


@pytest.mark.asyncio
async def test_bucket_acquire_waits_for_refill():
    bucket = TokenBucket(1, 100.0)
    await bucket.acquire()
    await bucket.acquire()
    assert bucket.tokens < 1.0


def test_breaker_needs_min_samples():
    breaker = CircuitBreaker(threshold=0.5, min_samples=4, clock=FakeClock())
    for _ in range(3):
        breaker.record_failure()
    assert breaker.state == CLOSED
    breaker.record_failure()
    assert breaker.state == OPEN
    assert breaker.allow_request() is False
    assert breaker.trips == 1


def test_breaker_half_open_single_trial_then_close():
    clock = FakeClock()
    breaker = CircuitBreaker(threshold=0.5, min_samples=2, cooldown=30, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state == OPEN
    clock.advance(30)
    assert breaker.state == HALF_OPEN
    assert breaker.allow_request() is True
    assert breaker.allow_request() is False
    breaker.record_success()
    assert breaker.state == CLOSED
    assert breaker.samples == 0


def test_breaker_half_open_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(threshold=0.5, min_samples=2, cooldown=30, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    clock.advance(31)
    assert breaker.allow_request() is True
    breaker.record_failure()
    assert breaker.state == OPEN
    assert breaker.trips == 2
    assert breaker.status()["retry_in"] == pytest.approx(30.0)


def test_breaker_error_rate_uses_rolling_window():
    breaker = CircuitBreaker(threshold=0.9, window=4, min_samples=4, clock=FakeClock())
    breaker.record_failure()
    for _ in range(4):
        breaker.record_success()
    assert breaker.error_rate == 0.0
    assert breaker.samples == 4


def test_breaker_released_trial_admits_another():
    clock = FakeClock()
    breaker = CircuitBreaker(threshold=0.5, min_samples=2, cooldown=30, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    clock.advance(30)
    assert breaker.allow_request() is True
    assert breaker.allow_request() is False
    breaker.release_trial()
    assert breaker.state == HALF_OPEN
    assert breaker.allow_request() is True
    breaker.record_success()
    assert breaker.state == CLOSED


def test_breaker_release_trial_is_noop_when_closed():
    breaker = CircuitBreaker(threshold=0.5, min_samples=2, clock=FakeClock())
    breaker.release_trial()
    assert breaker.state == CLOSED
    assert breaker.allow_request() is True
