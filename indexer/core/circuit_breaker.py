"""
Circuit breaker for async dependencies (the Soroban RPC endpoint).

States:
    CLOSED     calls pass through
    OPEN       calls are rejected with CircuitOpenError, the operation is not invoked
    HALF_OPEN  calls are let through as probes; success_threshold consecutive
               successes close the circuit, a single failure reopens it

The reset delay starts at `timeout` and doubles (bounded by `max_delay`) every time
failures accumulated in CLOSED reach `failure_threshold`. A failed probe reopens the
circuit with the delay unchanged. Closing after recovery restores the base delay.

Each breaker is owned by the component that guards a dependency; there is no
process-wide registry. State changes are reported through `on_state_change`.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
import logging

from indexer.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (name, old_state, new_state) - return value is ignored
StateChangeCallback = Callable[[str, "CircuitState", "CircuitState"], Any]


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass
class CircuitBreaker:
    name: str
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 30.0  # seconds; per-call timeout and base reset delay
    max_delay: float = 300.0  # seconds
    on_state_change: Optional[StateChangeCallback] = None

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _current_delay: float = field(default=0.0, init=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def __post_init__(self):
        self._current_delay = self.timeout

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def current_delay(self) -> float:
        return self._current_delay

    @property
    def last_failure_time(self) -> Optional[datetime]:
        return self._last_failure_time

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` under circuit breaker protection.

        Raises:
            CircuitOpenError: the circuit is OPEN and the reset delay has not elapsed.
            asyncio.TimeoutError: the call exceeded `timeout` (counted as a failure).
            Any exception raised by the operation, unchanged (counted as a failure).
        """
        self._before_call()

        try:
            result = await asyncio.wait_for(operation(), timeout=self.timeout)
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def _before_call(self) -> None:
        transition = None
        with self._lock:
            if self._state == CircuitState.OPEN:
                remaining = self._time_until_retry()
                if remaining > 0:
                    raise CircuitOpenError(self.name, remaining)
                transition = (self._state, CircuitState.HALF_OPEN)
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
        if transition:
            self._notify(*transition)

    def record_success(self) -> None:
        transition = None
        with self._lock:
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    transition = (self._state, CircuitState.CLOSED)
                    self._state = CircuitState.CLOSED
                    self._success_count = 0
                    self._current_delay = self.timeout
        if transition:
            self._notify(*transition)

    def record_failure(self) -> None:
        transition = None
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                # Failed probe: reopen, delay stays where it was
                transition = (self._state, CircuitState.OPEN)
                self._state = CircuitState.OPEN
                self._success_count = 0
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                transition = (self._state, CircuitState.OPEN)
                self._state = CircuitState.OPEN
                self._current_delay = min(self._current_delay * 2, self.max_delay)
        if transition:
            self._notify(*transition)

    def reset(self) -> None:
        """Force CLOSED with counters and delay back to defaults (operator intervention)."""
        with self._lock:
            old_state = self._state
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._current_delay = self.timeout
        if old_state != CircuitState.CLOSED:
            self._notify(old_state, CircuitState.CLOSED)

    def time_until_retry(self) -> float:
        """Seconds until an OPEN circuit admits a probe (0 when not waiting)."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return 0.0
            return self._time_until_retry()

    def _time_until_retry(self) -> float:
        # Must be called while holding self._lock
        if self._last_failure_time is None:
            return 0.0
        elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
        return max(0.0, self._current_delay - elapsed)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "current_delay": self._current_delay,
                "time_until_retry": self._time_until_retry() if self._state == CircuitState.OPEN else 0.0,
                "last_failure_time": self._last_failure_time.isoformat() if self._last_failure_time else None,
            }

    def _notify(self, old_state: CircuitState, new_state: CircuitState) -> None:
        if self.on_state_change is None:
            return
        try:
            self.on_state_change(self.name, old_state, new_state)
        except Exception as e:
            logger.error(f"Circuit breaker notification failed for {self.name}: {e}")
