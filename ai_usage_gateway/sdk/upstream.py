"""
Resilient client for the upstream chat-completions API.

Every attempt takes a rate-limit permit and runs under the shared circuit
breaker. Transient failures (timeouts, connection errors, 429 and 5xx) are
retried with exponential backoff; everything else fails immediately.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import openai
import structlog
from openai import AsyncOpenAI

from ..config.loader import DEFAULT_BASE_URL, DEFAULT_MODEL
from ..core.circuit_breaker import CircuitBreaker
from ..core.errors import CircuitOpenError, TransportError, UpstreamError
from ..core.rate_limiter import RateLimiter
from ..core.token_counter import TokenUsage

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UpstreamResponse:
    """Text and accounting data from one completed chat call."""
    content: str
    usage: TokenUsage
    model: str
    request_id: Optional[str]
    attempts: int


class UpstreamClient:
    """Chat-completions client with rate limiting, circuit breaking and retry.

    The OpenAI SDK's own retries are disabled so the retry budget and
    backoff are owned here and every attempt is visible to the breaker.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = 15.0,
        max_retries: int = 2,
        backoff_base: float = 1.0,
        backoff_cap: float = 5.0,
        jitter: bool = False,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        client: Optional[Any] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the upstream client.

        Args:
            api_key: Bearer token for the provider (required unless ``client`` is given)
            base_url: Base URL of the OpenAI-compatible API
            model: Default model for calls that do not name one
            timeout: Per-attempt timeout in seconds
            max_retries: Retries after the first attempt for transient failures
            backoff_base: First backoff delay in seconds
            backoff_cap: Upper bound for a single backoff delay
            jitter: Randomize each delay between 0 and its computed value
            rate_limiter: Shared limiter (a private default when omitted)
            circuit_breaker: Shared breaker (a private default when omitted)
            client: Pre-built AsyncOpenAI-compatible client
            sleep: Coroutine used for backoff waits
            rng: Random source for jitter

        Raises:
            ValueError: If model is empty, numbers are out of range, or no
                API key is available
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if backoff_base <= 0 or backoff_cap < backoff_base:
            raise ValueError("backoff_base must be > 0 and backoff_cap >= backoff_base")

        if client is None:
            if not api_key:
                raise ValueError("api_key is required to call the upstream API")
            client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0, timeout=timeout)

        self.client = client
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.jitter = jitter
        self.rate_limiter = rate_limiter or RateLimiter()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt counts from 0)."""
        delay = min(self.backoff_base * (2 ** attempt), self.backoff_cap)
        if self.jitter:
            delay = self._rng.uniform(0, delay)
        return delay

    async def chat(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> UpstreamResponse:
        """Run one chat completion with retry.

        Args:
            messages: Chat messages (required)
            max_tokens: Output token budget
            temperature: Sampling temperature
            model: Model override for this call
            **kwargs: Extra parameters for the completions endpoint

        Returns:
            UpstreamResponse with the first choice's text and token usage

        Raises:
            ValueError: If messages is empty
            CircuitOpenError: If the breaker rejects the call
            TransportError: Timeout or connection failure on the last attempt
            UpstreamError: Non-retryable status, or retryable status on the last attempt
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        params: Dict[str, Any] = {"model": model or self.model, "messages": messages, **kwargs}
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        if temperature is not None:
            params["temperature"] = temperature
        params["stream"] = False

        total_attempts = 1 + self.max_retries
        for attempt in range(total_attempts):
            try:
                self.circuit_breaker.reject_if_open()
                await self.rate_limiter.acquire()
                completion = await self.circuit_breaker.execute(self._attempt, params)
            except CircuitOpenError:
                logger.warning("upstream_circuit_open", attempt=attempt + 1)
                raise
            except (TransportError, UpstreamError) as exc:
                if not exc.retryable or attempt + 1 >= total_attempts:
                    logger.error(
                        "upstream_call_failed",
                        attempt=attempt + 1,
                        retryable=exc.retryable,
                        error=str(exc),
                    )
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "upstream_retry",
                    attempt=attempt + 1,
                    max_attempts=total_attempts,
                    delay_seconds=round(delay, 3),
                    error=str(exc),
                )
                await self._sleep(delay)
                continue

            return self._to_response(completion, params["model"], attempt + 1)

        # Unreachable: the loop either returns or raises.
        raise RuntimeError("retry loop exited without a result")

    async def _attempt(self, params: Dict[str, Any]) -> Any:
        """One HTTP call, with SDK errors mapped onto the gateway taxonomy."""
        try:
            completion = await asyncio.wait_for(
                self.client.chat.completions.create(**params), self.timeout
            )
        except (asyncio.TimeoutError, openai.APITimeoutError) as exc:
            raise TransportError(f"Upstream request timed out after {self.timeout}s", timeout=True) from exc
        except openai.APIConnectionError as exc:
            raise TransportError(f"Upstream connection failed: {exc}") from exc
        except openai.APIStatusError as exc:
            raise UpstreamError(
                f"Upstream returned HTTP {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
                body=_body_text(exc.body),
            ) from exc

        if not getattr(completion, "choices", None):
            raise UpstreamError("Upstream response has no choices", status_code=502)
        return completion

    def _to_response(self, completion: Any, requested_model: str, attempts: int) -> UpstreamResponse:
        message = completion.choices[0].message
        usage = TokenUsage.from_api(getattr(completion, "usage", None))
        response = UpstreamResponse(
            content=(getattr(message, "content", None) or "").strip(),
            usage=usage,
            model=getattr(completion, "model", None) or requested_model,
            request_id=getattr(completion, "id", None),
            attempts=attempts,
        )
        logger.info(
            "upstream_call_completed",
            model=response.model,
            attempts=attempts,
            total_tokens=usage.total_tokens,
        )
        return response

    def get_state(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "rate_limiter": self.rate_limiter.get_state(),
            "circuit_breaker": self.circuit_breaker.get_state(),
        }

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()


def _body_text(body: Any) -> Optional[str]:
    if body is None:
        return None
    return body if isinstance(body, str) else str(body)
