"""
Tests for Circuit Breaker Pattern
"""
import pytest
import asyncio

from app.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    get_getstream_circuit_breaker,
)
from app.core.exceptions import CircuitBreakerOpenError


async def fail_func():
    raise Exception("Test failure")


async def success_func():
    return "success"


class TestCircuitBreaker:
    """Tests for circuit breaker functionality"""

    @pytest.fixture
    def config(self) -> CircuitBreakerConfig:
        """Create test configuration with fast timeouts"""
        return CircuitBreakerConfig(
            failure_threshold=3,
            success_threshold=2,
            timeout_seconds=0.1,  # Fast timeout for tests
            half_open_max_calls=2
        )

    @pytest.fixture
    def breaker(self, config: CircuitBreakerConfig) -> CircuitBreaker:
        """Create circuit breaker for testing"""
        return CircuitBreaker("test-service", config)

    async def _open(self, breaker: CircuitBreaker) -> None:
        for _ in range(3):
            with pytest.raises(Exception):
                await breaker.execute(fail_func)

    @pytest.mark.unit
    async def test_initial_state_is_closed(self, breaker: CircuitBreaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_retry_after() == 0.0

    @pytest.mark.unit
    async def test_successful_execution_keeps_closed(self, breaker: CircuitBreaker):
        result = await breaker.execute(success_func)

        assert result == "success"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.unit
    async def test_success_resets_failure_count(self, breaker: CircuitBreaker):
        for _ in range(2):
            with pytest.raises(Exception):
                await breaker.execute(fail_func)
        await breaker.execute(success_func)
        for _ in range(2):
            with pytest.raises(Exception):
                await breaker.execute(fail_func)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.unit
    async def test_failures_open_circuit(self, breaker: CircuitBreaker):
        await self._open(breaker)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.unit
    async def test_open_circuit_blocks_requests(self, breaker: CircuitBreaker):
        await self._open(breaker)

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.execute(success_func)

        assert "test-service" in str(exc_info.value)
        assert exc_info.value.details["retry_after_seconds"] > 0

    @pytest.mark.unit
    async def test_circuit_transitions_to_half_open(self, breaker: CircuitBreaker):
        await self._open(breaker)

        await asyncio.sleep(0.15)

        assert breaker.allow_request() is True
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.unit
    async def test_half_open_limits_trial_calls(self, breaker: CircuitBreaker):
        await self._open(breaker)
        await asyncio.sleep(0.15)

        assert breaker.allow_request() is True
        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

    @pytest.mark.unit
    async def test_half_open_success_closes_circuit(self, breaker: CircuitBreaker):
        await self._open(breaker)
        await asyncio.sleep(0.15)

        for _ in range(2):
            assert await breaker.execute(success_func) == "success"

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.unit
    async def test_half_open_failure_reopens_circuit(self, breaker: CircuitBreaker):
        await self._open(breaker)
        await asyncio.sleep(0.15)

        with pytest.raises(Exception):
            await breaker.execute(fail_func)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.unit
    async def test_get_retry_after(self, breaker: CircuitBreaker):
        await self._open(breaker)

        retry_after = breaker.get_retry_after()
        assert retry_after > 0
        assert retry_after <= 0.1  # Should be less than timeout

    @pytest.mark.unit
    async def test_snapshot(self, breaker: CircuitBreaker):
        with pytest.raises(Exception):
            await breaker.execute(fail_func)

        assert breaker.snapshot() == {
            "service": "test-service",
            "state": "closed",
            "failure_count": 1,
            "retry_after_seconds": 0.0,
        }

    @pytest.mark.unit
    async def test_singleton_pattern(self):
        config = CircuitBreakerConfig()
        cb1 = CircuitBreaker.get_instance("singleton-test", config)
        cb2 = CircuitBreaker.get_instance("singleton-test")

        assert cb1 is cb2

    @pytest.mark.unit
    async def test_getstream_breaker_is_shared(self):
        assert get_getstream_circuit_breaker() is get_getstream_circuit_breaker()
        assert get_getstream_circuit_breaker().service_name == "getstream"
