"""Tests for core.circuit_breaker."""

import pytest

from core.circuit_breaker import CircuitBreaker, CircuitState
from core.errors import CircuitOpenError


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("test", failure_threshold=3, reset_window=60.0, clock=clock)


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------

class TestStateTransitions:
    def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request() is True

    def test_opens_at_threshold(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

    def test_success_resets_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        assert breaker.failure_count == 0
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_blocks_until_reset_window(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()

        clock.now += 59
        assert breaker.allow_request() is False
        assert breaker.remaining_open_time() == pytest.approx(1.0)

    def test_first_request_after_window_closes_circuit(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()

        clock.now += 61
        assert breaker.allow_request() is True
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_reset(self, breaker):
        for _ in range(3):
            breaker.record_failure()
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status().opened_at is None

    def test_status_dict(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        status = breaker.get_status().to_dict()
        assert status["state"] == "open"
        assert status["opened_at"] == clock.now
        assert status["service_name"] == "test"


# ---------------------------------------------------------------------------
# protect decorator
# ---------------------------------------------------------------------------

class TestProtect:
    @pytest.mark.asyncio
    async def test_records_failures_and_raises_when_open(self, breaker):
        calls = 0

        @breaker.protect()
        async def flaky():
            nonlocal calls
            calls += 1
            raise ConnectionError("down")

        for _ in range(3):
            with pytest.raises(ConnectionError):
                await flaky()

        with pytest.raises(CircuitOpenError):
            await flaky()
        assert calls == 3

    @pytest.mark.asyncio
    async def test_fallback_when_open(self, breaker):
        for _ in range(3):
            breaker.record_failure()

        @breaker.protect(fallback=lambda: "cached")
        async def call():
            return "live"

        assert await call() == "cached"

    @pytest.mark.asyncio
    async def test_success_passes_through(self, breaker):
        @breaker.protect()
        async def call():
            return "live"

        assert await call() == "live"
        assert breaker.failure_count == 0
