"""
AI gateway façade.

Single entry point for the application's AI operations. Each call goes
through the response cache, then (on a miss) the rate-limited,
circuit-protected upstream client; the raw model text is parsed locally,
and successful upstream calls are recorded in the usage ledger and the
caller's daily quota.
"""

import unicodedata
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from ..config.loader import CacheBackend, GatewayConfig
from ..core.alerts import CostAlertMonitor
from ..core.cache import MemoryCacheStore, OptimizedResult, PromptPlan, ResponseCache
from ..core.circuit_breaker import CircuitBreaker
from ..core.errors import ParseError, QuotaExceeded
from ..core.identity import UserId, normalize_user_id
from ..core.parsing import parse_model_json
from ..core.pricing import PRICING_TABLE
from ..core.quota import QuotaManager
from ..core.rate_limiter import RateLimiter
from ..core.usage import UsageTracker
from ..storage.cache_store import SQLiteCacheStore
from ..storage.models import AIOperation, OperationType
from ..storage.repository import GatewayRepository
from . import prompts
from .upstream import UpstreamClient, UpstreamResponse

logger = structlog.get_logger(__name__)

VALID_CATEGORIES = (
    "politica", "economia", "deportes", "tecnologia", "salud", "educacion",
    "entretenimiento", "seguridad", "medio ambiente", "internacional",
    "sociedad", "general",
)
DEFAULT_CATEGORY = "general"
DEFAULT_CONFIDENCE = 0.7
FALLBACK_CONFIDENCE = 0.3
SEARCH_FALLBACK_CONFIDENCE = 0.5
MIN_SUMMARY_CONTENT_CHARS = 100
TITLE_MAX_CHARS = 100
SUMMARY_MAX_CHARS = 200

# Truncation applied to string fields before hashing and sending.
CATEGORIZE_MAX_LENGTH = 1000
SEARCH_MAX_LENGTH = 500
REWRITE_MAX_LENGTH = 12000
TITLE_MAX_LENGTH = 4000
TEXT_MAX_LENGTH = 100000

BuildMessages = Callable[[PromptPlan, Mapping[str, Any]], List[Dict[str, str]]]
Interpret = Callable[[UpstreamResponse, Mapping[str, Any]], Dict[str, Any]]


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_category(value: Any) -> str:
    """Lowercase, accent-free category from the fixed list, else ``general``."""
    if isinstance(value, list):
        value = value[0] if value else None
    if not isinstance(value, str):
        return DEFAULT_CATEGORY
    category = strip_accents(value).lower().strip()
    return category if category in VALID_CATEGORIES else DEFAULT_CATEGORY


def _single_value(value: Any) -> Optional[str]:
    """Collapse list values to their first element; ``"null"`` becomes None."""
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() == "null":
        return None
    return text


def _confidence(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        try:
            value = float(value)
        except (TypeError, ValueError):
            return default
    return min(1.0, max(0.0, float(value)))


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _paragraphs(text: str) -> str:
    """Re-join paragraphs with one blank line between them."""
    lines = [line.strip() for line in text.replace("\r\n", "\n").split("\n")]
    return "\n\n".join(line for line in lines if line)


class AIGateway:
    """Façade over cache, upstream client, usage ledger and quotas.

    Usage tracking and quota deduction only happen when a ``user_id`` is
    given; anonymous calls are served but not tracked. Bookkeeping
    failures are logged and never fail the caller's operation.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        cache: Optional[ResponseCache] = None,
        usage_tracker: Optional[UsageTracker] = None,
        quota_manager: Optional[QuotaManager] = None,
        enforce_quota: bool = False,
    ):
        """
        Args:
            upstream: Client for the chat-completions API
            cache: Response cache (in-memory default when omitted)
            usage_tracker: Usage ledger writer, or None to skip tracking
            quota_manager: Daily quota ledger, or None to skip deductions
            enforce_quota: Reject calls up front when the user has no
                interactions left (the quota is otherwise advisory)
        """
        self.upstream = upstream
        self.cache = cache or ResponseCache()
        self.usage_tracker = usage_tracker
        self.quota_manager = quota_manager
        self.enforce_quota = enforce_quota

    @property
    def model(self) -> str:
        return self.upstream.model

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        repository: Optional[GatewayRepository] = None,
        client: Optional[Any] = None,
    ) -> "AIGateway":
        """Build the full service graph from configuration.

        Args:
            config: Validated gateway configuration
            repository: Storage to use (created from ``storage.db_path`` if omitted)
            client: Pre-built AsyncOpenAI-compatible client

        Raises:
            ValueError: If no API key is configured and no client is given
        """
        repository = repository or GatewayRepository(config.storage.db_path)
        repository.initialize()

        upstream_config = config.upstream
        upstream = UpstreamClient(
            api_key=upstream_config.api_key(),
            base_url=upstream_config.base_url,
            model=upstream_config.model,
            timeout=upstream_config.timeout_seconds,
            max_retries=upstream_config.max_retries,
            backoff_base=upstream_config.backoff_base_seconds,
            backoff_cap=upstream_config.backoff_cap_seconds,
            jitter=upstream_config.jitter,
            rate_limiter=RateLimiter(
                capacity=config.rate_limit.capacity,
                refill_period=config.rate_limit.refill_period_seconds,
            ),
            circuit_breaker=CircuitBreaker(
                failure_threshold=config.circuit_breaker.failure_threshold,
                reset_timeout=config.circuit_breaker.reset_timeout_seconds,
            ),
            client=client,
        )

        if config.cache.backend == CacheBackend.SQLITE:
            store = SQLiteCacheStore(repository.db_path)
        else:
            store = MemoryCacheStore()
        cache = ResponseCache(
            store=store,
            ttl_by_operation=config.cache.ttl_seconds,
            default_ttl=config.cache.default_ttl_seconds,
            min_confidence=config.cache.min_confidence,
            enabled=config.cache.enabled,
        )

        alert_monitor = None
        if config.usage.alerts_enabled:
            alert_monitor = CostAlertMonitor(
                repository,
                daily_warning=config.usage.alert_daily_warning,
                daily_critical=config.usage.alert_daily_critical,
                spike_threshold=config.usage.alert_spike,
                dedup_window_seconds=config.usage.alert_dedup_seconds,
                timezone=config.quota.timezone,
            )

        pricing = PRICING_TABLE.with_overrides(config.pricing) if config.pricing else PRICING_TABLE
        usage_tracker = UsageTracker(
            repository,
            pricing=pricing,
            batch_size=config.usage.batch_size,
            max_pending=config.usage.max_pending,
            enabled=config.usage.enabled,
            timezone=config.quota.timezone,
            alert_monitor=alert_monitor,
        )
        usage_tracker.install_shutdown_hook()

        quota_manager = QuotaManager(
            repository,
            default_daily_limit=config.quota.daily_limit,
            timezone=config.quota.timezone,
            enabled=config.quota.enabled,
        )

        return cls(
            upstream,
            cache=cache,
            usage_tracker=usage_tracker,
            quota_manager=quota_manager,
            enforce_quota=config.quota.enforce,
        )

    def _operation(self, operation_type: OperationType, payload: Mapping[str, Any], user_id: UserId) -> AIOperation:
        return AIOperation(
            operation_type=operation_type,
            payload=payload,
            model=self.model,
            created_at=datetime.now(timezone.utc),
            user_id=normalize_user_id(user_id),
        )

    def _check_quota(self, user_id: Optional[str]) -> None:
        if not (self.enforce_quota and user_id and self.quota_manager):
            return
        try:
            self.quota_manager.require_available(user_id)
        except QuotaExceeded:
            logger.warning("quota_rejected", user_id=user_id)
            raise
        except Exception as exc:
            logger.error("quota_check_failed", user_id=user_id, error=str(exc))

    async def _run(
        self,
        operation: AIOperation,
        build_messages: BuildMessages,
        interpret: Interpret,
        max_length: int,
        temperature: float,
        fallback: Optional[Callable[[Any], Any]] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> OptimizedResult:
        """Cache lookup, upstream call on a miss, then bookkeeping."""
        self._check_quota(operation.user_id)
        plan = self.cache.optimize_prompt("", operation.operation_type)
        responses: List[UpstreamResponse] = []

        async def produce(normalized: Mapping[str, Any]) -> Dict[str, Any]:
            response = await self.upstream.chat(
                build_messages(plan, normalized),
                max_tokens=max_tokens or plan.max_tokens,
                temperature=temperature,
                model=model,
            )
            responses.append(response)
            return interpret(response, normalized)

        result = await self.cache.execute_with_optimization(
            operation.operation_type,
            operation.payload,
            produce,
            max_length=max_length,
            fallback=fallback,
        )

        if responses:
            self._record_call(operation, responses[-1], result)
        elif result.cached:
            self._record_cache_hit(operation)
        return result

    def _record_call(self, operation: AIOperation, response: UpstreamResponse, result: OptimizedResult) -> None:
        if operation.user_id is None:
            return
        op = operation.operation_type
        if self.usage_tracker is not None:
            self.usage_tracker.track_usage(
                operation.user_id,
                op,
                response.model,
                response.usage.prompt_tokens,
                response.usage.completion_tokens,
                total_tokens=response.usage.total_tokens,
                metadata={
                    "request_id": response.request_id,
                    "attempts": response.attempts,
                    "fallback": result.fallback,
                    "execution_time_ms": result.execution_time_ms,
                },
            )
        if self.quota_manager is not None:
            try:
                self.quota_manager.deduct_interaction(
                    operation.user_id,
                    op,
                    metadata={"model": response.model, "tokens": response.usage.total_tokens},
                )
            except Exception as exc:
                logger.error("quota_deduction_failed", user_id=operation.user_id, operation_type=op.value, error=str(exc))

    def _record_cache_hit(self, operation: AIOperation) -> None:
        if operation.user_id is None or self.usage_tracker is None:
            return
        self.usage_tracker.track_usage(
            operation.user_id,
            operation.operation_type,
            operation.model,
            0,
            0,
            cost=0.0,
            cache_hit=True,
        )

    @staticmethod
    def _with_provenance(value: Mapping[str, Any], result: OptimizedResult) -> Dict[str, Any]:
        output = dict(value)
        output["cached"] = result.cached
        output["fallback"] = result.fallback
        return output

    async def execute(self, operation_type: Any, payload: Mapping[str, Any], user_id: UserId = None) -> Dict[str, Any]:
        """Dispatch a payload to the operation named by ``operation_type``."""
        op = OperationType(operation_type)
        if op == OperationType.REWRITE:
            return await self.rewrite(payload.get("title", ""), payload.get("content", ""), user_id=user_id)
        if op == OperationType.CATEGORIZE:
            return await self.categorize(
                payload.get("title", ""), payload.get("content", ""), payload.get("url", ""), user_id=user_id
            )
        if op == OperationType.SEARCH:
            return await self.search(payload.get("query", ""), user_id=user_id)
        if op == OperationType.TITLE_GENERATION:
            return await self.generate_title_and_summary(payload.get("content", ""), user_id=user_id)
        options = {key: payload[key] for key in ("temperature", "max_tokens", "model") if key in payload}
        return await self.generate_text(payload.get("prompt", ""), user_id=user_id, **options)

    async def rewrite(self, title: str, content: str, user_id: UserId = None) -> Dict[str, Any]:
        """Rewrite a news article as a fresh piece with a new title.

        If the model output cannot be parsed, or the upstream fails after
        retries, the original title and content are returned with
        ``fallback=True``.

        Returns:
            ``{title, content, cached, fallback}``
        """
        if not title and not content:
            raise ValueError("title or content is required")
        operation = self._operation(OperationType.REWRITE, {"title": title or "", "content": content or ""}, user_id)

        def interpret(response: UpstreamResponse, payload: Mapping[str, Any]) -> Dict[str, Any]:
            text = response.content
            outcome = parse_model_json(text, fields=("titulo", "contenido", "title", "content"))
            new_title = outcome.value.get("titulo") or outcome.value.get("title")
            new_content = outcome.value.get("contenido") or outcome.value.get("content")
            if not isinstance(new_title, str) or not isinstance(new_content, str):
                raise ParseError("Rewrite output is missing titulo/contenido", raw_text=text)
            return {"title": new_title.strip(), "content": _paragraphs(new_content)}

        def fallback(raw: Mapping[str, Any]) -> Dict[str, Any]:
            return {"title": raw["title"], "content": raw["content"]}

        result = await self._run(
            operation, prompts.rewrite_messages, interpret,
            max_length=REWRITE_MAX_LENGTH, temperature=0.7, fallback=fallback,
        )
        return self._with_provenance(result.value, result)

    async def categorize(self, title: str, content: str, url: str = "", user_id: UserId = None) -> Dict[str, Any]:
        """Classify an article into one category and optional region.

        Returns:
            ``{category, region, confidence, cached, fallback}``
        """
        operation = self._operation(
            OperationType.CATEGORIZE, prompts.categorize_payload(title, content, url), user_id
        )
        default = {"category": DEFAULT_CATEGORY, "region": None, "confidence": FALLBACK_CONFIDENCE}

        def interpret(response: UpstreamResponse, payload: Mapping[str, Any]) -> Dict[str, Any]:
            text = response.content
            outcome = parse_model_json(
                text,
                required=("category",),
                fields=("category", "region", "confidence"),
                default=default,
            )
            if not outcome.recovered:
                return dict(default)
            value = outcome.value
            return {
                "category": normalize_category(value.get("category")),
                "region": _single_value(value.get("region")),
                "confidence": _confidence(value.get("confidence"), DEFAULT_CONFIDENCE),
            }

        def fallback(raw: Mapping[str, Any]) -> Dict[str, Any]:
            return dict(default)

        result = await self._run(
            operation, prompts.categorize_messages, interpret,
            max_length=CATEGORIZE_MAX_LENGTH, temperature=0.3, fallback=fallback,
        )
        return self._with_provenance(result.value, result)

    async def search(self, query: str, user_id: UserId = None) -> Dict[str, Any]:
        """Interpret a free-text news search into terms and filters.

        Falls back to the query's own words when the upstream fails or
        its output is unusable.

        Returns:
            ``{search_terms, semantic_concepts, category, region,
            explanation, confidence, cached, fallback}``
        """
        if not query or not query.strip():
            raise ValueError("query is required and cannot be empty")
        operation = self._operation(OperationType.SEARCH, {"query": query}, user_id)

        def interpret(response: UpstreamResponse, payload: Mapping[str, Any]) -> Dict[str, Any]:
            text = response.content
            outcome = parse_model_json(
                text, fields=("category", "region", "explanation", "confidence")
            )
            value = outcome.value
            terms = _string_list(value.get("searchTerms", value.get("search_terms")))
            if not terms:
                raise ParseError("Search output has no search terms", raw_text=text)
            category = _single_value(value.get("category"))
            return {
                "search_terms": terms,
                "semantic_concepts": _string_list(value.get("semanticConcepts", value.get("semantic_concepts"))),
                "category": normalize_category(category) if category else None,
                "region": _single_value(value.get("region")),
                "explanation": str(value.get("explanation") or ""),
                "confidence": _confidence(value.get("confidence"), DEFAULT_CONFIDENCE),
            }

        def fallback(raw: Mapping[str, Any]) -> Dict[str, Any]:
            return {
                "search_terms": [word for word in raw["query"].split() if len(word) > 2][:5],
                "semantic_concepts": [],
                "category": None,
                "region": None,
                "explanation": f'Búsqueda básica por: "{raw["query"]}"',
                "confidence": SEARCH_FALLBACK_CONFIDENCE,
            }

        result = await self._run(
            operation, prompts.search_messages, interpret,
            max_length=SEARCH_MAX_LENGTH, temperature=0.3, fallback=fallback,
        )
        return self._with_provenance(result.value, result)

    async def generate_text(
        self,
        prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        model: Optional[str] = None,
        user_id: UserId = None,
    ) -> Dict[str, Any]:
        """Free-form completion. Upstream errors propagate to the caller.

        Returns:
            ``{text, usage, model, cached, fallback}``
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        operation = self._operation(
            OperationType.GENERATE_TEXT,
            {"prompt": prompt, "temperature": temperature, "max_tokens": max_tokens, "model": model or self.model},
            user_id,
        )

        def build(plan: PromptPlan, payload: Mapping[str, Any]) -> List[Dict[str, str]]:
            return prompts.text_messages(payload["prompt"])

        def interpret(response: UpstreamResponse, payload: Mapping[str, Any]) -> Dict[str, Any]:
            return {"text": response.content, "usage": response.usage.to_dict(), "model": response.model}

        result = await self._run(
            operation, build, interpret,
            max_length=TEXT_MAX_LENGTH, temperature=temperature, max_tokens=max_tokens, model=model,
        )
        return self._with_provenance(result.value, result)

    async def generate_title_and_summary(self, content: str, user_id: UserId = None) -> Dict[str, Any]:
        """Generate a headline (<= 100 chars) and summary (<= 200 chars).

        Content shorter than 100 characters is rejected without calling
        the upstream.

        Returns:
            ``{title, summary, error, cached, fallback}``
        """
        if not content or len(content.strip()) < MIN_SUMMARY_CONTENT_CHARS:
            return {
                "title": None,
                "summary": None,
                "error": f"Content must be at least {MIN_SUMMARY_CONTENT_CHARS} characters",
                "cached": False,
                "fallback": False,
            }
        operation = self._operation(OperationType.TITLE_GENERATION, {"content": content}, user_id)

        def interpret(response: UpstreamResponse, payload: Mapping[str, Any]) -> Dict[str, Any]:
            outcome = parse_model_json(response.content, required=("title",), fields=("title", "summary"))
            if not outcome.recovered:
                raise ParseError("Title output is missing a title", raw_text=response.content)
            summary = outcome.value.get("summary")
            return {
                "title": str(outcome.value["title"]).strip()[:TITLE_MAX_CHARS],
                "summary": str(summary).strip()[:SUMMARY_MAX_CHARS] if summary else None,
                "error": None,
            }

        def fallback(raw: Mapping[str, Any]) -> Dict[str, Any]:
            text = raw["content"].strip()
            lines = [line.strip() for line in text.split("\n")]
            title = next((line for line in lines if len(line) > 20), text)
            return {
                "title": title[:TITLE_MAX_CHARS],
                "summary": " ".join(text.split())[:SUMMARY_MAX_CHARS],
                "error": None,
                "confidence": FALLBACK_CONFIDENCE,
            }

        result = await self._run(
            operation, prompts.title_summary_messages, interpret,
            max_length=TITLE_MAX_LENGTH, temperature=0.7, fallback=fallback,
        )
        return self._with_provenance(result.value, result)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_cache_stats()

    def clear_cache(self) -> int:
        return self.cache.clear_cache()

    def get_today_stats(self) -> Dict[str, Any]:
        """Today's usage totals, or an empty dict when tracking is off."""
        if self.usage_tracker is None:
            return {}
        return self.usage_tracker.get_today_stats()

    def get_cost_alerts(self, include_resolved: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
        """Recorded cost alerts, newest first (empty when alerts are off)."""
        monitor = self.usage_tracker.alert_monitor if self.usage_tracker is not None else None
        if monitor is None:
            return []
        return [alert.to_dict() for alert in monitor.get_alerts(include_resolved, limit)]

    def get_circuit_state(self) -> Dict[str, Any]:
        return self.upstream.get_state()

    async def aclose(self) -> None:
        """Flush buffered usage and close the HTTP client."""
        if self.usage_tracker is not None:
            self.usage_tracker.shutdown()
        await self.upstream.aclose()
