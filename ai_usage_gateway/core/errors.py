"""
Error taxonomy for gateway operations.

Transport and upstream failures are retried by the upstream client,
circuit-open errors fail fast, parse errors are recovered locally and
quota errors are informational.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""


class TransportError(GatewayError):
    """Network failure or timeout while talking to the upstream API."""

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout

    @property
    def retryable(self) -> bool:
        return True


class UpstreamError(GatewayError):
    """Non-2xx response from the upstream API."""

    def __init__(self, message: str, status_code: int, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        """429 and 5xx are transient; any other status is final."""
        return self.status_code == 429 or 500 <= self.status_code < 600


class CircuitOpenError(GatewayError):
    """Raised without contacting the upstream while the circuit is open."""

    def __init__(
        self,
        message: str = "Circuit breaker is open - upstream temporarily unavailable",
        estimated_recovery: Optional[datetime] = None,
        failure_count: int = 0,
    ):
        super().__init__(message)
        self.estimated_recovery = estimated_recovery
        self.failure_count = failure_count

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dictionary for API responses."""
        return {
            "error": "circuit_open",
            "message": str(self),
            "estimated_recovery": (
                self.estimated_recovery.isoformat() if self.estimated_recovery else None
            ),
            "failure_count": self.failure_count,
        }


class ParseError(GatewayError):
    """Model output could not be decoded into the expected structure."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class QuotaExceeded(GatewayError):
    """User has no interactions left for the current day."""

    def __init__(self, user_id: str, available: int, daily_limit: int):
        super().__init__(
            f"Daily interaction quota exhausted for user {user_id} "
            f"({available}/{daily_limit} available)"
        )
        self.user_id = user_id
        self.available = available
        self.daily_limit = daily_limit
