"""
Tests for circuit breakers, token buckets and booking locks

Tests cover:
- closed -> open after consecutive failures, forced open on credential reject
- open -> half_open after cool-off with a single probe
- probe outcome closes or re-opens
- token bucket burst, refill and bounded acquire
- booking lock timeout
"""

import asyncio

import pytest

from ota_core.services.adapters.base import RateLimitProfile
from ota_core.services.booking_locks import BookingLocks, BookingLockTimeout
from ota_core.services.circuit_breaker import CircuitBreakerRegistry
from ota_core.services.rate_limiter import RateLimiterRegistry, TokenBucket


class TestCircuitBreaker:
    """Per (hotel, channel) state machine"""

    def test_opens_at_threshold(self, clock):
        opened = []
        circuits = CircuitBreakerRegistry(clock, failure_threshold=3, on_open=lambda *a: opened.append(a))

        for _ in range(2):
            circuits.record_failure("H1", "expedia", "http_503")
        assert circuits.state("H1", "expedia") == "closed"
        assert circuits.before_call("H1", "expedia") is None

        circuits.record_failure("H1", "expedia", "http_503")
        assert circuits.state("H1", "expedia") == "open"
        assert opened == [("H1", "expedia", "http_503")]
        assert circuits.before_call("H1", "expedia") == pytest.approx(60.0)

    def test_success_resets_consecutive_count(self, clock):
        circuits = CircuitBreakerRegistry(clock, failure_threshold=2)
        circuits.record_failure("H1", "expedia", "http_503")
        circuits.record_success("H1", "expedia")
        circuits.record_failure("H1", "expedia", "http_503")
        assert circuits.state("H1", "expedia") == "closed"

    def test_force_open(self, clock):
        circuits = CircuitBreakerRegistry(clock)
        circuits.record_failure("H1", "airbnb", "http_401", force_open=True)
        assert circuits.state("H1", "airbnb") == "open"

    def test_circuits_are_independent(self, clock):
        circuits = CircuitBreakerRegistry(clock, failure_threshold=1)
        circuits.record_failure("H1", "expedia", "http_503")
        assert circuits.before_call("H2", "expedia") is None
        assert circuits.before_call("H1", "booking_com") is None

    def test_half_open_single_probe(self, clock):
        circuits = CircuitBreakerRegistry(clock, failure_threshold=1, cool_off_seconds=60, probe_wait_seconds=0.5)
        circuits.record_failure("H1", "expedia", "http_503")

        clock.advance(30)
        assert circuits.before_call("H1", "expedia") == pytest.approx(30.0)

        clock.advance(31)
        assert circuits.before_call("H1", "expedia") is None
        assert circuits.state("H1", "expedia") == "half_open"
        # second caller waits while the probe is out
        assert circuits.before_call("H1", "expedia") == 0.5

        circuits.record_success("H1", "expedia")
        assert circuits.state("H1", "expedia") == "closed"

    def test_failed_probe_reopens(self, clock):
        circuits = CircuitBreakerRegistry(clock, failure_threshold=1, cool_off_seconds=10)
        circuits.record_failure("H1", "expedia", "http_503")
        clock.advance(11)
        assert circuits.before_call("H1", "expedia") is None

        circuits.record_failure("H1", "expedia", "http_503")
        assert circuits.state("H1", "expedia") == "open"
        assert circuits.before_call("H1", "expedia") == pytest.approx(10.0)

    def test_released_probe_lets_next_caller_through(self, clock):
        circuits = CircuitBreakerRegistry(clock, failure_threshold=1, cool_off_seconds=10)
        circuits.record_failure("H1", "expedia", "http_503")
        clock.advance(11)
        circuits.before_call("H1", "expedia")
        circuits.release_probe("H1", "expedia")
        assert circuits.before_call("H1", "expedia") is None

    def test_snapshot(self, clock):
        circuits = CircuitBreakerRegistry(clock, failure_threshold=1)
        circuits.record_failure("H1", "expedia", "http_500")
        snap = circuits.snapshot()[0]
        assert snap["hotelId"] == "H1"
        assert snap["state"] == "open"
        assert snap["lastFailure"] == "http_500"
        assert snap["timesOpened"] == 1


class TestTokenBucket:
    """Outbound rate limiting"""

    def test_burst_then_empty(self, clock):
        bucket = TokenBucket(requests_per_second=2, burst=3, clock=clock)
        assert [bucket.try_acquire() for _ in range(4)] == [True, True, True, False]
        assert bucket.wait_time() == pytest.approx(0.5)

    def test_refill_over_time(self, clock):
        bucket = TokenBucket(requests_per_second=2, burst=2, clock=clock)
        bucket.try_acquire()
        bucket.try_acquire()
        clock.advance(0.5)
        assert bucket.try_acquire()
        assert not bucket.try_acquire()

    def test_refill_capped_at_burst(self, clock):
        bucket = TokenBucket(requests_per_second=10, burst=2, clock=clock)
        clock.advance(100)
        assert [bucket.try_acquire() for _ in range(3)] == [True, True, False]

    async def test_acquire_times_out(self, clock):
        bucket = TokenBucket(requests_per_second=1, burst=1, clock=clock)
        assert await bucket.acquire(timeout=0)
        assert not await bucket.acquire(timeout=0.5)

    def test_registry_reconfigures(self, clock):
        limits = RateLimiterRegistry(clock)
        bucket = limits.bucket("H1", "expedia", RateLimitProfile(5, 10))
        same = limits.bucket("H1", "expedia", RateLimitProfile(1, 2))
        assert bucket is same
        assert same.rate == 1 and same.capacity == 2
        assert same.tokens == 2
        assert limits.snapshot()["H1/expedia"]["burst"] == 2


class TestBookingLocks:
    """Advisory per-booking locks"""

    async def test_timeout(self):
        locks = BookingLocks()
        async with locks.hold("booking:B-1", 1):
            assert locks.is_locked("booking:B-1")
            with pytest.raises(BookingLockTimeout) as exc:
                async with locks.hold("booking:B-1", 0.01):
                    pass
        assert exc.value.code == "booking_lock_timeout"
        assert not locks.is_locked("booking:B-1")

    async def test_waiter_proceeds_after_release(self):
        locks = BookingLocks()
        order = []

        async def worker(name, hold_for):
            async with locks.hold("booking:B-2", 1):
                order.append(name)
                await asyncio.sleep(hold_for)

        await asyncio.gather(worker("first", 0.02), worker("second", 0))
        assert order == ["first", "second"]
