"""
Tests for circuit breaker functionality.

Tests cover:
1. State transitions (CLOSED -> OPEN -> HALF_OPEN -> CLOSED)
2. execute() (rejection without invoking, timeouts, error propagation)
3. Exponential backoff of the reset delay, bounded by max_delay
4. reset(), stats and state-change notifications
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from indexer.core.circuit_breaker import CircuitBreaker, CircuitState
from indexer.core.errors import CircuitOpenError


async def _fail():
    raise ConnectionError("rpc down")


async def _ok():
    return "ok"


async def _trip(cb: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await cb.execute(_fail)


def _age_last_failure(cb: CircuitBreaker, seconds: float) -> None:
    cb._last_failure_time = datetime.now(timezone.utc) - timedelta(seconds=seconds)


class TestCircuitState:
    """Tests for CircuitState enum."""

    def test_circuit_states_exist(self):
        """Verify all expected circuit states are defined."""
        assert CircuitState.CLOSED.value == "closed"
        assert CircuitState.OPEN.value == "open"
        assert CircuitState.HALF_OPEN.value == "half_open"

    def test_state_count(self):
        assert len(CircuitState) == 3


class TestCircuitBreakerInitialization:
    def test_default_initialization(self):
        """Test that CircuitBreaker initializes with correct defaults."""
        cb = CircuitBreaker(name="test")

        assert cb.name == "test"
        assert cb.failure_threshold == 5
        assert cb.success_threshold == 2
        assert cb.timeout == 30.0
        assert cb.max_delay == 300.0
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert cb.success_count == 0
        assert cb.last_failure_time is None
        assert cb.current_delay == 30.0

    def test_custom_initialization(self):
        cb = CircuitBreaker(name="custom", failure_threshold=3, success_threshold=1, timeout=5.0, max_delay=20.0)

        assert cb.failure_threshold == 3
        assert cb.success_threshold == 1
        assert cb.current_delay == 5.0
        assert cb.max_delay == 20.0


class TestStateTransitions:
    """Tests for circuit breaker state transitions."""

    @pytest.mark.asyncio
    async def test_closed_to_open_after_failure_threshold(self):
        """Test CLOSED -> OPEN after failure_threshold failures."""
        cb = CircuitBreaker(name="test", failure_threshold=3)

        await _trip(cb, 2)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 2

        await _trip(cb, 1)
        assert cb.state == CircuitState.OPEN
        assert cb.last_failure_time is not None

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        """Failures must be consecutive to open the circuit."""
        cb = CircuitBreaker(name="test", failure_threshold=3)

        await _trip(cb, 2)
        assert await cb.execute(_ok) == "ok"
        assert cb.failure_count == 0

        await _trip(cb, 2)
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_rejects_without_invoking(self):
        """While OPEN the operation must not be called at all."""
        cb = CircuitBreaker(name="rpc", failure_threshold=1)
        await _trip(cb, 1)

        operation = AsyncMock(return_value="never")
        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.execute(operation)

        operation.assert_not_called()
        assert exc_info.value.name == "rpc"
        assert exc_info.value.retry_after > 0

    @pytest.mark.asyncio
    async def test_open_to_half_open_after_delay(self):
        """Test OPEN -> HALF_OPEN once the current delay has elapsed."""
        cb = CircuitBreaker(name="test", failure_threshold=1, timeout=1.0)
        await _trip(cb, 1)
        _age_last_failure(cb, cb.current_delay + 1)

        assert await cb.execute(_ok) == "ok"
        assert cb.state == CircuitState.HALF_OPEN
        assert cb.success_count == 1

    @pytest.mark.asyncio
    async def test_half_open_to_closed_after_success_threshold(self):
        cb = CircuitBreaker(name="test", failure_threshold=1, success_threshold=2, timeout=1.0)
        await _trip(cb, 1)
        _age_last_failure(cb, 10)

        await cb.execute(_ok)
        assert cb.state == CircuitState.HALF_OPEN

        await cb.execute(_ok)
        assert cb.state == CircuitState.CLOSED
        assert cb.current_delay == 1.0
        assert cb.success_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens_with_same_delay(self):
        """A failed probe reopens the circuit without growing the delay."""
        cb = CircuitBreaker(name="test", failure_threshold=1, timeout=1.0, max_delay=100.0)
        await _trip(cb, 1)
        delay = cb.current_delay
        _age_last_failure(cb, 10)

        await _trip(cb, 1)

        assert cb.state == CircuitState.OPEN
        assert cb.current_delay == delay


class TestExecute:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        cb = CircuitBreaker(name="test")
        assert await cb.execute(_ok) == "ok"

    @pytest.mark.asyncio
    async def test_propagates_operation_error_unchanged(self):
        cb = CircuitBreaker(name="test")

        async def boom():
            raise ValueError("bad response")

        with pytest.raises(ValueError, match="bad response"):
            await cb.execute(boom)
        assert cb.failure_count == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        cb = CircuitBreaker(name="test", failure_threshold=1, timeout=0.01)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await cb.execute(slow)
        assert cb.state == CircuitState.OPEN


class TestBackoff:
    @pytest.mark.asyncio
    async def test_delay_doubles_on_each_trip(self):
        cb = CircuitBreaker(name="test", failure_threshold=2, timeout=30.0, max_delay=300.0)

        await _trip(cb, 2)
        assert cb.current_delay == 60.0

        # Renewed threshold-breaching failures from CLOSED double again
        cb._state = CircuitState.CLOSED
        cb._failure_count = 0
        await _trip(cb, 2)
        assert cb.current_delay == 120.0

    @pytest.mark.asyncio
    async def test_delay_never_exceeds_max(self):
        cb = CircuitBreaker(name="test", failure_threshold=1, timeout=30.0, max_delay=100.0)

        delays = []
        for _ in range(5):
            cb._state = CircuitState.CLOSED
            cb._failure_count = 0
            await _trip(cb, 1)
            delays.append(cb.current_delay)

        assert delays == [60.0, 100.0, 100.0, 100.0, 100.0]
        assert delays == sorted(delays)


class TestDocumentedScenario:
    @pytest.mark.asyncio
    async def test_full_cycle_with_default_settings(self):
        """
        Five failures open the circuit with a 60s delay; a call 10s later is
        rejected with ~50s to wait; a call 61s later probes, and two probe
        successes close it and restore the 30s base delay.
        """
        cb = CircuitBreaker(name="rpc", failure_threshold=5, success_threshold=2, timeout=30.0, max_delay=300.0)

        await _trip(cb, 5)
        assert cb.state == CircuitState.OPEN
        assert cb.current_delay == 60.0

        _age_last_failure(cb, 10)
        operation = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.execute(operation)
        operation.assert_not_called()
        assert 49_000 <= exc_info.value.retry_after_ms <= 50_000
        assert "Circuit rpc is OPEN. Retry in" in str(exc_info.value)

        _age_last_failure(cb, 61)
        await cb.execute(operation)
        assert cb.state == CircuitState.HALF_OPEN

        await cb.execute(operation)
        assert cb.state == CircuitState.CLOSED
        assert cb.current_delay == 30.0
        assert operation.await_count == 2


class TestResetAndStats:
    @pytest.mark.asyncio
    async def test_reset_restores_defaults(self):
        cb = CircuitBreaker(name="test", failure_threshold=1)
        await _trip(cb, 1)

        cb.reset()

        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert cb.last_failure_time is None
        assert cb.current_delay == cb.timeout

    @pytest.mark.asyncio
    async def test_get_stats(self):
        cb = CircuitBreaker(name="rpc", failure_threshold=1)
        await _trip(cb, 1)

        stats = cb.get_stats()

        assert stats["name"] == "rpc"
        assert stats["state"] == "open"
        assert stats["failure_count"] == 1
        assert stats["time_until_retry"] > 0
        assert stats["last_failure_time"] is not None

    def test_time_until_retry_zero_when_closed(self):
        assert CircuitBreaker(name="test").time_until_retry() == 0.0


class TestStateChangeCallback:
    @pytest.mark.asyncio
    async def test_callback_receives_transitions(self):
        callback = MagicMock()
        cb = CircuitBreaker(name="rpc", failure_threshold=1, success_threshold=1, on_state_change=callback)

        await _trip(cb, 1)
        _age_last_failure(cb, cb.current_delay + 1)
        await cb.execute(_ok)

        transitions = [c.args for c in callback.call_args_list]
        assert transitions == [
            ("rpc", CircuitState.CLOSED, CircuitState.OPEN),
            ("rpc", CircuitState.OPEN, CircuitState.HALF_OPEN),
            ("rpc", CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    @pytest.mark.asyncio
    async def test_callback_error_does_not_break_breaker(self):
        cb = CircuitBreaker(name="rpc", failure_threshold=1, on_state_change=MagicMock(side_effect=RuntimeError))

        await _trip(cb, 1)

        assert cb.state == CircuitState.OPEN
