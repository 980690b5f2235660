"""
Response cache and cost optimizer.

Collapses semantically identical requests onto one content-addressed cache
entry, shrinks prompts per operation type, and degrades to fallback values
when the upstream call fails.
"""

import asyncio
import copy
import hashlib
import inspect
import json
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

import structlog

from ..storage.models import CacheEntry, OperationType

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_TTL_BY_OPERATION = {
    OperationType.CATEGORIZE.value: 7200,
    OperationType.SEARCH.value: 1800,
    OperationType.REWRITE.value: 3600,
    OperationType.TITLE_GENERATION.value: 7200,
    OperationType.GENERATE_TEXT.value: 1800,
}
DEFAULT_MIN_CONFIDENCE = 0.7
TRUNCATION_SUFFIX = "..."

_WHITESPACE = re.compile(r"\s+")


class CacheStore(Protocol):
    """Storage backend for cache entries."""

    def get(self, key: str, now: datetime) -> Optional[CacheEntry]: ...

    def set(self, entry: CacheEntry) -> None: ...

    def purge_expired(self, now: datetime) -> int: ...

    def clear(self) -> int: ...

    def count_by_operation(self, now: datetime) -> Dict[str, int]: ...


class MemoryCacheStore:
    """In-process cache store with a bounded number of entries."""

    def __init__(self, max_entries: int = 5000):
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.max_entries = max_entries
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str, now: datetime) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            del self._entries[key]
            return None
        return entry

    def set(self, entry: CacheEntry) -> None:
        self._entries.pop(entry.key, None)
        if len(self._entries) >= self.max_entries:
            self.purge_expired(entry.created_at)
        while len(self._entries) >= self.max_entries:
            # Dicts keep insertion order: drop the oldest entry.
            del self._entries[next(iter(self._entries))]
        self._entries[entry.key] = entry

    def purge_expired(self, now: datetime) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def count_by_operation(self, now: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for entry in self._entries.values():
            if not entry.is_expired(now):
                counts[entry.operation_type] = counts.get(entry.operation_type, 0) + 1
        return counts


def normalize_text(text: str, max_length: int) -> str:
    """Collapse whitespace, trim, and truncate to ``max_length`` characters."""
    normalized = _WHITESPACE.sub(" ", text).strip()
    if len(normalized) > max_length:
        normalized = normalized[:max_length] + TRUNCATION_SUFFIX
    return normalized


def normalize_payload(payload: Any, max_length: int = 1000) -> Any:
    """Deterministically normalize a request payload.

    Strings are whitespace-collapsed and truncated; mappings and sequences
    are normalized element by element; other values pass through. The
    result is what gets hashed and what the upstream call receives, so
    reads and writes always agree on the key.
    """
    if isinstance(payload, str):
        return normalize_text(payload, max_length)
    if isinstance(payload, Mapping):
        return {str(key): normalize_payload(value, max_length) for key, value in payload.items()}
    if isinstance(payload, (list, tuple)):
        return [normalize_payload(item, max_length) for item in payload]
    return payload


def _operation_value(operation_type: Any) -> str:
    return operation_type.value if isinstance(operation_type, OperationType) else str(operation_type)


def make_cache_key(operation_type: Any, normalized_payload: Any) -> str:
    """Content-addressed key: operation type plus a SHA-256 of canonical JSON."""
    op = _operation_value(operation_type)
    canonical = json.dumps(
        normalized_payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str
    )
    digest = hashlib.sha256(f"{op}:{canonical}".encode("utf-8")).hexdigest()
    return f"ai_cache:{op}:{digest}"


@dataclass(frozen=True)
class PromptPlan:
    """System prompt and output-token budget for one operation type."""
    prompt: str
    max_tokens: int


CATEGORIES_HINT = (
    "política,economía,deportes,tecnología,salud,educación,entretenimiento,"
    "seguridad,medio ambiente,internacional,sociedad,general"
)

PROMPT_OPTIMIZATIONS: Dict[str, PromptPlan] = {
    OperationType.CATEGORIZE.value: PromptPlan(
        prompt=(
            f"Categoriza noticia. Categorías: {CATEGORIES_HINT}. "
            "Regiones: Metropolitana,Biobío,Valparaíso,Internacional,null. "
            'Responde JSON: {"category":"","region":null,"confidence":0.0}'
        ),
        max_tokens=100,
    ),
    OperationType.SEARCH.value: PromptPlan(
        prompt=(
            "Eres un experto en análisis semántico de búsquedas de noticias. "
            "Interpreta la consulta y extrae conceptos significativos. "
            "Para búsquedas cortas sé conservador con los filtros; asigna categoría "
            "o región solo si es evidente. "
            f"Categorías: {CATEGORIES_HINT}. "
            'Responde JSON: {"searchTerms":[],"semanticConcepts":[],"category":null,'
            '"region":null,"explanation":"","confidence":0.0}'
        ),
        max_tokens=300,
    ),
    OperationType.REWRITE.value: PromptPlan(
        prompt=(
            "Eres un periodista experto. Responde de forma concisa y eficiente. "
            'Devuelve SOLO JSON válido: {"titulo":"","contenido":""}'
        ),
        max_tokens=3000,
    ),
    OperationType.TITLE_GENERATION.value: PromptPlan(
        prompt=(
            "Generas títulos y resúmenes de noticias. "
            'Devuelve SOLO JSON válido: {"title":"","summary":""}'
        ),
        max_tokens=200,
    ),
}

DEFAULT_PROMPT_MAX_TOKENS = 500


@dataclass(frozen=True)
class OptimizedResult:
    """Outcome of a cache-mediated AI call."""
    value: Any
    cached: bool
    fallback: bool
    execution_time_ms: float
    cache_key: str
    error: Optional[str] = None


Produce = Callable[[Any], Awaitable[Any]]
Fallback = Callable[[Any], Any]


class ResponseCache:
    """Content-addressed cache in front of the upstream call.

    Concurrent misses for the same key are not de-duplicated: both callers
    invoke ``produce`` and the last write wins.
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        ttl_by_operation: Optional[Mapping[str, int]] = None,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        enabled: bool = True,
        now: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            store: Backend for entries (in-memory when omitted)
            ttl_by_operation: TTL in seconds per operation type
            default_ttl: TTL for operation types without an explicit value
            min_confidence: Results with a lower ``confidence`` are not stored
            enabled: When False every call goes straight to ``produce``
            now: Wall-clock source returning aware datetimes
            sleep: Coroutine used for the pause between batches
        """
        self.store: CacheStore = store if store is not None else MemoryCacheStore()
        self.ttl_by_operation = dict(DEFAULT_TTL_BY_OPERATION)
        if ttl_by_operation:
            self.ttl_by_operation.update(ttl_by_operation)
        self.default_ttl = default_ttl
        self.min_confidence = min_confidence
        self.enabled = enabled
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self.hits = 0
        self.misses = 0

    def ttl_for(self, operation_type: Any) -> int:
        return self.ttl_by_operation.get(_operation_value(operation_type), self.default_ttl)

    def _read(self, key: str) -> Optional[CacheEntry]:
        try:
            return self.store.get(key, self._now())
        except Exception as exc:
            logger.warning("cache_read_failed", cache_key=key, error=str(exc))
            return None

    def _should_store(self, value: Any) -> bool:
        if isinstance(value, Mapping):
            confidence = value.get("confidence")
            if isinstance(confidence, (int, float)) and confidence < self.min_confidence:
                logger.debug("cache_skip_low_confidence", confidence=confidence)
                return False
        return True

    def _write(self, operation_type: str, key: str, value: Any) -> None:
        if not self._should_store(value):
            return
        now = self._now()
        ttl = self.ttl_for(operation_type)
        entry = CacheEntry(
            key=key,
            operation_type=operation_type,
            value=copy.deepcopy(value),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        try:
            self.store.set(entry)
            logger.debug("cache_set", cache_key=key, ttl=ttl)
        except Exception as exc:
            logger.warning("cache_write_failed", cache_key=key, error=str(exc))

    async def execute_with_optimization(
        self,
        operation_type: Any,
        raw_payload: Any,
        produce: Produce,
        max_length: int = 1000,
        fallback: Optional[Fallback] = None,
    ) -> OptimizedResult:
        """
        Serve from cache or run ``produce`` on the normalized payload.

        Args:
            operation_type: Operation type used in the key and TTL lookup
            raw_payload: Request payload before normalization
            produce: Coroutine function called with the normalized payload on a miss
            max_length: Truncation length for string fields
            fallback: Called with the raw payload when ``produce`` raises

        Returns:
            OptimizedResult with the value and its provenance

        Raises:
            Exception: Whatever ``produce`` raised, when no fallback is given
        """
        started = time.perf_counter()
        op = _operation_value(operation_type)
        normalized = normalize_payload(raw_payload, max_length)
        key = make_cache_key(op, normalized)

        def elapsed_ms() -> float:
            return round((time.perf_counter() - started) * 1000, 3)

        if self.enabled:
            entry = self._read(key)
            if entry is not None:
                self.hits += 1
                logger.debug("cache_hit", operation_type=op, cache_key=key)
                return OptimizedResult(
                    value=copy.deepcopy(entry.value),
                    cached=True,
                    fallback=False,
                    execution_time_ms=elapsed_ms(),
                    cache_key=key,
                )
            self.misses += 1
            logger.debug("cache_miss", operation_type=op, cache_key=key)

        try:
            value = await produce(normalized)
        except Exception as exc:
            if fallback is None:
                raise
            logger.warning("fallback_used", operation_type=op, error=str(exc))
            fallback_value = fallback(raw_payload)
            if inspect.isawaitable(fallback_value):
                fallback_value = await fallback_value
            return OptimizedResult(
                value=fallback_value,
                cached=False,
                fallback=True,
                execution_time_ms=elapsed_ms(),
                cache_key=key,
                error=str(exc),
            )

        if self.enabled:
            self._write(op, key, value)
        return OptimizedResult(
            value=value,
            cached=False,
            fallback=False,
            execution_time_ms=elapsed_ms(),
            cache_key=key,
        )

    async def execute_batch(
        self,
        items: Sequence[Any],
        operation_type: Any,
        produce: Produce,
        batch_size: int = 3,
        delay: float = 0.5,
        max_length: int = 1000,
        fallback: Optional[Fallback] = None,
    ) -> List[OptimizedResult]:
        """Run many payloads in concurrent batches, pausing between batches.

        A failing item without a fallback yields a result carrying ``error``
        instead of aborting the batch. Results keep the input order.
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        async def run_one(item: Any) -> OptimizedResult:
            try:
                return await self.execute_with_optimization(
                    operation_type, item, produce, max_length=max_length, fallback=fallback
                )
            except Exception as exc:
                logger.error("batch_item_failed", operation_type=_operation_value(operation_type), error=str(exc))
                return OptimizedResult(
                    value=None,
                    cached=False,
                    fallback=False,
                    execution_time_ms=0.0,
                    cache_key=make_cache_key(operation_type, normalize_payload(item, max_length)),
                    error=str(exc),
                )

        results: List[OptimizedResult] = []
        for start in range(0, len(items), batch_size):
            batch = items[start:start + batch_size]
            results.extend(await asyncio.gather(*(run_one(item) for item in batch)))
            if start + batch_size < len(items):
                await self._sleep(delay)

        logger.info(
            "batch_completed",
            operation_type=_operation_value(operation_type),
            items=len(results),
            cache_hits=sum(1 for result in results if result.cached),
        )
        return results

    def optimize_prompt(self, base_prompt: str, operation_type: Any) -> PromptPlan:
        """Compact system prompt and output budget for ``operation_type``.

        Unknown operation types keep ``base_prompt`` with a 500-token budget.
        """
        plan = PROMPT_OPTIMIZATIONS.get(_operation_value(operation_type))
        if plan is None:
            return PromptPlan(prompt=base_prompt, max_tokens=DEFAULT_PROMPT_MAX_TOKENS)
        return plan

    def get_cache_stats(self) -> Dict[str, Any]:
        """Hit/miss counters and live entry counts."""
        lookups = self.hits + self.misses
        try:
            by_operation = self.store.count_by_operation(self._now())
        except Exception as exc:
            logger.warning("cache_stats_failed", error=str(exc))
            by_operation = {}
        return {
            "enabled": self.enabled,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups * 100, 2) if lookups else 0.0,
            "entries": sum(by_operation.values()),
            "by_operation": by_operation,
        }

    def cleanup_cache(self) -> int:
        """Evict expired entries. Returns the number evicted."""
        removed = self.store.purge_expired(self._now())
        logger.info("cache_cleanup", removed=removed)
        return removed

    def clear_cache(self) -> int:
        """Drop every entry and reset the counters. Returns the number dropped."""
        removed = self.store.clear()
        self.hits = 0
        self.misses = 0
        logger.info("cache_cleared", removed=removed)
        return removed
