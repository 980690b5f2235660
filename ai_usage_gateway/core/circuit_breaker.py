"""
Circuit breaker for the upstream API.

Stops every concurrent caller from hammering a failing upstream and
short-circuits retry storms while the provider recovers.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from .errors import CircuitOpenError

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Calls pass through
    OPEN = "open"            # Calls rejected until the cool-down elapses
    HALF_OPEN = "half_open"  # One trial call decides the next state


class CircuitBreaker:
    """
    Three-state circuit breaker.

    - CLOSED: failures increment ``consecutive_failures``; reaching
      ``failure_threshold`` opens the circuit
    - OPEN: calls raise CircuitOpenError without invoking the function;
      after ``reset_timeout`` seconds the circuit becomes HALF_OPEN
    - HALF_OPEN: exactly one trial call is let through; success closes the
      circuit, failure re-opens it and restarts the cool-down

    Transitions depend only on call outcomes and elapsed time. State is
    mutated between awaits only, so no lock is needed on a single loop.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 120.0,
        name: str = "upstream",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening the circuit
            reset_timeout: Seconds to stay OPEN before allowing a trial call
            name: Name for logging and identification
            clock: Monotonic time source in seconds
        """
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if reset_timeout <= 0:
            raise ValueError("reset_timeout must be > 0")

        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        """Current state, applying the OPEN -> HALF_OPEN timeout."""
        if (
            self._state == CircuitState.OPEN
            and self.opened_at is not None
            and self._clock() - self.opened_at >= self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("circuit_half_open", breaker=self.name)
        return self._state

    async def execute(self, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Run ``fn`` under circuit breaker protection.

        Args:
            fn: Coroutine function to execute
            *args: Positional arguments for ``fn``
            **kwargs: Keyword arguments for ``fn``

        Returns:
            The result of ``fn``

        Raises:
            CircuitOpenError: If the circuit is open or a trial is in flight
            Exception: Whatever ``fn`` raises, unchanged
        """
        state = self.state
        if state == CircuitState.OPEN:
            raise self._open_error()
        if state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise self._open_error("Circuit breaker is half-open - trial call in progress")
            self._trial_in_flight = True

        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            # A cancelled caller says nothing about upstream health.
            if state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
            raise
        except Exception:
            self._on_failure(trial=state == CircuitState.HALF_OPEN)
            raise

        self._on_success(trial=state == CircuitState.HALF_OPEN)
        return result

    def reject_if_open(self) -> None:
        """Raise CircuitOpenError without running anything if the circuit is OPEN.

        Lets callers refuse work before spending a rate-limit permit on it.
        """
        if self.state == CircuitState.OPEN:
            raise self._open_error()

    def _on_success(self, trial: bool) -> None:
        if trial:
            logger.info("circuit_closed", breaker=self.name)
            self._trial_in_flight = False
            self._state = CircuitState.CLOSED
            self.opened_at = None
        self.consecutive_failures = 0

    def _on_failure(self, trial: bool) -> None:
        self.consecutive_failures += 1
        if trial:
            self._trial_in_flight = False
            self._open()
            return
        logger.warning(
            "circuit_failure_recorded",
            breaker=self.name,
            consecutive_failures=self.consecutive_failures,
            threshold=self.failure_threshold,
        )
        if self._state == CircuitState.CLOSED and self.consecutive_failures >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self.opened_at = self._clock()
        logger.error(
            "circuit_opened",
            breaker=self.name,
            consecutive_failures=self.consecutive_failures,
            reset_timeout=self.reset_timeout,
        )

    def _remaining_cooldown(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self.opened_at))

    def _open_error(self, message: Optional[str] = None) -> CircuitOpenError:
        recovery = datetime.now(timezone.utc) + timedelta(seconds=self._remaining_cooldown())
        return CircuitOpenError(
            message or f"Circuit breaker {self.name} is open - upstream temporarily unavailable",
            estimated_recovery=recovery,
            failure_count=self.consecutive_failures,
        )

    def get_state(self) -> Dict[str, Any]:
        """Status snapshot for operational endpoints."""
        state = self.state
        return {
            "name": self.name,
            "state": state.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "retry_in_seconds": round(self._remaining_cooldown(), 3) if state == CircuitState.OPEN else None,
        }

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at = None
        self._trial_in_flight = False
        logger.info("circuit_reset", breaker=self.name)

    def __str__(self) -> str:
        return (
            f"CircuitBreaker({self.name}, state={self._state.value}, "
            f"failures={self.consecutive_failures}/{self.failure_threshold})"
        )
