import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Any

from portal.metrics import CIRCUIT_BREAKER_STATE

logger = logging.getLogger(__name__)

_STATE_VALUES = {"CLOSED": 0, "OPEN": 1, "HALF_OPEN": 2}


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpenError(Exception):
    """Raised when circuit breaker is OPEN and request is rejected."""
    pass


class CircuitBreaker:
    """Async circuit breaker guarding one remote collaborator (media host, mail provider)."""

    def __init__(
        self,
        name: str,
        max_failures: int = 5,
        reset_timeout: float = 30.0,
        call_timeout: float = 10.0
    ):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self.call_timeout = call_timeout
        self.failure_count = 0
        self.last_failure_time: float | None = None
        self.state = CircuitState.CLOSED
        self._lock = asyncio.Lock()
        self._publish_state()

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Execute function with circuit breaker protection and a call timeout."""
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    raise CircuitBreakerOpenError(f"Circuit breaker '{self.name}' is OPEN")

        try:
            result = await asyncio.wait_for(
                func(*args, **kwargs),
                timeout=self.call_timeout
            )
            await self._record_success()
            return result
        except asyncio.TimeoutError:
            logger.warning(f"[{self.name}] call timed out after {self.call_timeout}s")
            await self._record_failure()
            raise
        except Exception as e:
            logger.error(f"[{self.name}] call failed: {e}")
            await self._record_failure()
            raise

    async def _record_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()

            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.max_failures:
                self._transition(CircuitState.OPEN)

    async def _record_success(self) -> None:
        async with self._lock:
            self.failure_count = 0
            self.last_failure_time = None
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return (time.time() - self.last_failure_time) >= self.reset_timeout

    def _transition(self, state: CircuitState) -> None:
        logger.warning(f"[{self.name}] circuit breaker {self.state.value} -> {state.value} (failures: {self.failure_count})")
        self.state = state
        self._publish_state()

    def _publish_state(self) -> None:
        CIRCUIT_BREAKER_STATE.labels(breaker=self.name).set(_STATE_VALUES[self.state.value])

    def get_state(self) -> CircuitState:
        """Get current circuit breaker state."""
        return self.state
