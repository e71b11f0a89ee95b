"""
Circuit Breaker for the Embedding Service
Stops calling a failing endpoint after repeated batch failures

- Opens after failure_threshold failures within the failure window
- Rejects calls while OPEN
- Lets one probe call through in HALF_OPEN after recovery_timeout
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from repo_indexer.infrastructure.structured_logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "CLOSED"        # Normal operation
    OPEN = "OPEN"            # Rejecting calls
    HALF_OPEN = "HALF_OPEN"  # Probing for recovery


class CircuitOpenError(RuntimeError):
    """Raised instead of calling the wrapped function while OPEN"""

    def __init__(self, name: str, retry_in: float):
        super().__init__(
            f"Circuit breaker '{name}' is OPEN - service unavailable "
            f"(recovery in {retry_in:.0f}s)"
        )
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:
    """Async circuit breaker around a single downstream service"""

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        failure_window: float = 60.0,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.opened_at: Optional[float] = None

        self.total_calls = 0
        self.failed_calls = 0
        self.rejected_calls = 0

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute an async function through the breaker"""
        self.total_calls += 1
        now = self._clock()

        if self.state == CircuitState.OPEN:
            elapsed = now - (self.opened_at or now)
            if elapsed >= self.recovery_timeout:
                self.state = CircuitState.HALF_OPEN
                logger.info("circuit_half_open", breaker=self.name)
            else:
                self.rejected_calls += 1
                raise CircuitOpenError(self.name, self.recovery_timeout - elapsed)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self._record_failure(e)
            raise

        self._record_success()
        return result

    def _record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            logger.info("circuit_closed", breaker=self.name)
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self.opened_at = None

    def _record_failure(self, error: Exception) -> None:
        now = self._clock()
        self.failed_calls += 1

        # Failures outside the window start a fresh count
        if self.last_failure_time is not None and now - self.last_failure_time > self.failure_window:
            self.failure_count = 0
        self.failure_count += 1
        self.last_failure_time = now

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.opened_at = now
            logger.error(
                "circuit_opened",
                breaker=self.name,
                failure_count=self.failure_count,
                error=str(error),
            )

    def get_state(self) -> dict:
        """Current state and counters"""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "total_calls": self.total_calls,
            "failed_calls": self.failed_calls,
            "rejected_calls": self.rejected_calls,
        }

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self.opened_at = None
