"""Tests for the provider circuit breaker."""

import pytest

from llm_gateway.errors import ErrorKind, GatewayError


class FakeClock:
    """Manually advanced time source."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestCircuitBreakerStates:
    """Test state transitions."""

    def test_starts_closed(self):
        from llm_gateway.circuit_breaker import CircuitBreaker, CircuitState

        cb = CircuitBreaker()
        assert cb.state == CircuitState.CLOSED
        assert cb.allow_request() is True

    def test_defaults(self):
        from llm_gateway.circuit_breaker import CircuitBreaker

        cb = CircuitBreaker()
        assert cb.failure_threshold == 5
        assert cb.success_threshold == 3
        assert cb.timeout_seconds == 60.0

    def test_opens_at_threshold(self, clock):
        from llm_gateway.circuit_breaker import CircuitBreaker, CircuitState

        cb = CircuitBreaker(failure_threshold=3, clock=clock)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED

        cb.record_failure()
        assert cb.state == CircuitState.OPEN
        assert cb.allow_request() is False

    def test_success_resets_failures_when_closed(self):
        from llm_gateway.circuit_breaker import CircuitBreaker

        cb = CircuitBreaker(failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        cb.record_success()
        assert cb.failure_count == 0

    def test_half_open_after_timeout(self, clock):
        from llm_gateway.circuit_breaker import CircuitBreaker, CircuitState

        cb = CircuitBreaker(failure_threshold=1, timeout_seconds=60, clock=clock)
        cb.record_failure()

        clock.now += 59
        assert cb.allow_request() is False

        clock.now += 1
        assert cb.allow_request() is True
        assert cb.state == CircuitState.HALF_OPEN

    def test_half_open_closes_after_success_threshold(self, clock):
        from llm_gateway.circuit_breaker import CircuitBreaker, CircuitState

        cb = CircuitBreaker(failure_threshold=1, success_threshold=3, timeout_seconds=1, clock=clock)
        cb.record_failure()
        clock.now += 1
        cb.allow_request()

        cb.record_success()
        cb.record_success()
        assert cb.state == CircuitState.HALF_OPEN

        cb.record_success()
        assert cb.state == CircuitState.CLOSED

    def test_failure_in_half_open_reopens(self, clock):
        from llm_gateway.circuit_breaker import CircuitBreaker, CircuitState

        cb = CircuitBreaker(failure_threshold=1, timeout_seconds=1, clock=clock)
        cb.record_failure()
        clock.now += 1
        cb.allow_request()

        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_reset_and_force_open(self):
        from llm_gateway.circuit_breaker import CircuitBreaker, CircuitState

        cb = CircuitBreaker()
        cb.force_open()
        assert cb.state == CircuitState.OPEN
        assert cb.allow_request() is False

        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb.allow_request() is True

    def test_stats(self):
        from llm_gateway.circuit_breaker import CircuitBreaker

        cb = CircuitBreaker(provider="openai")
        cb.record_failure()
        stats = cb.get_stats()

        assert stats["state"] == "closed"
        assert stats["failure_count"] == 1
        assert stats["provider"] == "openai"


class TestCircuitBreakerExecute:
    """Test CircuitBreaker.execute."""

    @pytest.mark.asyncio
    async def test_execute_success(self):
        from llm_gateway.circuit_breaker import CircuitBreaker

        async def ok():
            return "done"

        assert await CircuitBreaker().execute(ok) == "done"

    @pytest.mark.asyncio
    async def test_execute_counts_retryable_failures(self):
        from llm_gateway.circuit_breaker import CircuitBreaker

        cb = CircuitBreaker(failure_threshold=5)

        async def fail():
            raise GatewayError.server_error("openai")

        with pytest.raises(GatewayError):
            await cb.execute(fail)

        assert cb.failure_count == 1

    @pytest.mark.asyncio
    async def test_execute_ignores_caller_errors(self):
        from llm_gateway.circuit_breaker import CircuitBreaker

        cb = CircuitBreaker(failure_threshold=1)

        async def fail():
            raise GatewayError.invalid_request("bad input")

        with pytest.raises(GatewayError):
            await cb.execute(fail)

        assert cb.failure_count == 0

    @pytest.mark.asyncio
    async def test_execute_when_open(self):
        from llm_gateway.circuit_breaker import CircuitBreaker

        cb = CircuitBreaker(provider="openai")
        cb.force_open()

        async def never():
            raise AssertionError("should not run")

        with pytest.raises(GatewayError) as exc_info:
            await cb.execute(never)

        assert exc_info.value.kind is ErrorKind.CIRCUIT_OPEN
        assert exc_info.value.provider == "openai"
