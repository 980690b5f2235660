"""
Usage tracking and aggregation.

Buffers one UsageLogEntry per AI call, flushes them to the append-only
ledger in batches, and aggregates the ledger for the metrics dashboards.
"""

import atexit
import threading
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from .alerts import CostAlertMonitor
from .clock import get_zone, start_of_day, utc_now
from .identity import UserId, normalize_user_id
from .pricing import PRICING_TABLE, PricingTable, calculate_cost
from ..storage.models import OperationType, UsageLogEntry
from ..storage.repository import GatewayRepository

logger = structlog.get_logger(__name__)

FLUSH_ATTEMPTS = 2


def _empty_bucket() -> Dict[str, Any]:
    return {"operations": 0, "tokens": 0, "cost": 0.0}


def _add(bucket: Dict[str, Any], entry: UsageLogEntry) -> None:
    bucket["operations"] += 1
    bucket["tokens"] += entry.total_tokens
    bucket["cost"] += entry.cost


def _round_costs(buckets: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    for bucket in buckets.values():
        bucket["cost"] = round(bucket["cost"], 8)
    return buckets


def summarize(entries: Iterable[UsageLogEntry]) -> Dict[str, Any]:
    """Totals and cache hit rate (percent) for a set of usage entries."""
    operations = tokens = hits = 0
    cost = 0.0
    for entry in entries:
        operations += 1
        tokens += entry.total_tokens
        cost += entry.cost
        if entry.cache_hit:
            hits += 1
    misses = operations - hits
    return {
        "total_operations": operations,
        "total_tokens": tokens,
        "total_cost": round(cost, 8),
        "cache_hits": hits,
        "cache_misses": misses,
        "cache_hit_rate": round(hits / operations * 100, 2) if operations else 0.0,
    }


def group_by(entries: Iterable[UsageLogEntry], key: Callable[[UsageLogEntry], str]) -> Dict[str, Dict[str, Any]]:
    """Operation/token/cost buckets keyed by ``key(entry)``."""
    buckets: Dict[str, Dict[str, Any]] = {}
    for entry in entries:
        _add(buckets.setdefault(key(entry), _empty_bucket()), entry)
    return _round_costs(buckets)


class UsageTracker:
    """Buffered writer and aggregator for the usage ledger.

    ``track_usage`` never raises: a failure to record usage must not turn
    a successful AI call into a failed one. Entries are never dropped
    silently; failed flushes keep them buffered up to ``max_pending``.
    """

    def __init__(
        self,
        repository: GatewayRepository,
        pricing: PricingTable = PRICING_TABLE,
        batch_size: int = 10,
        max_pending: int = 1000,
        enabled: bool = True,
        timezone: str = "UTC",
        now: Optional[Callable[[], datetime]] = None,
        alert_monitor: Optional[CostAlertMonitor] = None,
    ):
        """
        Args:
            repository: Ledger persistence
            pricing: Pricing table for cost calculation
            batch_size: Buffered entries that trigger a flush
            max_pending: Upper bound on buffered entries after failed flushes
            enabled: When False tracking is a no-op
            timezone: IANA timezone used for day buckets
            now: Wall-clock source returning aware datetimes
            alert_monitor: Receives the cost of every tracked call
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if max_pending < batch_size:
            raise ValueError("max_pending must be >= batch_size")

        self.repository = repository
        self.pricing = pricing
        self.batch_size = batch_size
        self.max_pending = max_pending
        self.enabled = enabled
        self.zone = get_zone(timezone)
        self._now = now or utc_now
        self.alert_monitor = alert_monitor

        self._pending: List[UsageLogEntry] = []
        # atexit flushes may run outside the event loop thread.
        self._lock = threading.Lock()
        self._hook_installed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def calculate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        return calculate_cost(model, prompt_tokens, completion_tokens, self.pricing)

    def track_usage(
        self,
        user_id: UserId,
        operation_type: Any,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: Optional[int] = None,
        cost: Optional[float] = None,
        cache_hit: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Record one AI call.

        Args:
            user_id: Caller identity in any supported form (None = anonymous)
            operation_type: OperationType or its string value
            model: Model that served the call
            prompt_tokens: Prompt tokens billed
            completion_tokens: Completion tokens billed
            total_tokens: Provider-reported total (prompt + completion if None)
            cost: Precomputed cost (looked up from pricing if None)
            cache_hit: Whether the result came from the response cache
            metadata: Extra context stored with the entry

        Returns:
            ``{tokens, cost, cached}`` or None when disabled or on failure
        """
        if not self.enabled:
            return None

        try:
            op = operation_type.value if isinstance(operation_type, OperationType) else str(operation_type)
            total = total_tokens if total_tokens is not None else prompt_tokens + completion_tokens
            if cost is None:
                cost = self.calculate_cost(model, prompt_tokens, completion_tokens)

            entry = UsageLogEntry(
                created_at=self._now(),
                operation_type=op,
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total,
                cost=cost,
                cache_hit=cache_hit,
                user_id=normalize_user_id(user_id),
                metadata=dict(metadata or {}),
            )

            if self.alert_monitor is not None:
                self._check_alerts(cost)

            with self._lock:
                self._pending.append(entry)
                should_flush = len(self._pending) >= self.batch_size

            logger.debug("usage_tracked", operation_type=op, tokens=total, cost=cost, cache_hit=cache_hit)

            if should_flush:
                self.flush_logs()

            return {"tokens": total, "cost": cost, "cached": cache_hit}
        except Exception as exc:
            logger.error("track_usage_failed", operation_type=str(operation_type), error=str(exc))
            return None

    def _check_alerts(self, cost: float) -> None:
        try:
            self.alert_monitor.record_cost(cost)
        except Exception as exc:
            logger.error("cost_alert_check_failed", cost=cost, error=str(exc))

    def flush_logs(self) -> int:
        """Write buffered entries to the ledger.

        Returns:
            Number of entries written (0 if nothing was pending or the
            write failed and the entries were re-buffered)
        """
        with self._lock:
            batch = self._pending
            self._pending = []
        if not batch:
            return 0

        last_error: Optional[Exception] = None
        for attempt in range(1, FLUSH_ATTEMPTS + 1):
            try:
                self.repository.insert_usage_events(batch)
                logger.info("usage_logs_flushed", entries=len(batch))
                return len(batch)
            except Exception as exc:
                last_error = exc
                logger.warning("usage_flush_attempt_failed", attempt=attempt, entries=len(batch), error=str(exc))

        with self._lock:
            self._pending = batch + self._pending
            overflow = len(self._pending) - self.max_pending
            if overflow > 0:
                del self._pending[:overflow]
                logger.error("usage_buffer_overflow", dropped=overflow, max_pending=self.max_pending)
        logger.error("usage_flush_failed", entries=len(batch), error=str(last_error))
        return 0

    def install_shutdown_hook(self) -> None:
        """Flush buffered entries when the interpreter exits."""
        if not self._hook_installed:
            atexit.register(self.flush_logs)
            self._hook_installed = True

    def shutdown(self) -> int:
        """Flush and remove the exit hook."""
        if self._hook_installed:
            atexit.unregister(self.flush_logs)
            self._hook_installed = False
        return self.flush_logs()

    def _entries_since(self, since: datetime, until: Optional[datetime] = None) -> List[UsageLogEntry]:
        self.flush_logs()
        return self.repository.fetch_usage_since(since, until)

    def _local_date(self, entry: UsageLogEntry) -> str:
        return entry.created_at.astimezone(self.zone).date().isoformat()

    def get_today_stats(self) -> Dict[str, Any]:
        """Totals for the current day, plus a per-operation breakdown."""
        day_start = start_of_day(self._now(), self.zone)
        entries = self._entries_since(day_start)

        stats = summarize(entries)
        stats["date"] = day_start.date().isoformat()
        by_operation = {op.value: _empty_bucket() for op in OperationType}
        by_operation.update(group_by(entries, lambda e: e.operation_type))
        stats["by_operation"] = by_operation
        return stats

    def get_all_metrics(self, days: int = 7) -> Dict[str, Any]:
        """Dashboard metrics for the last ``days`` calendar days (today included).

        Returns:
            Dictionary with totals, one row per day (zero-filled),
            and breakdowns by operation type, model and top users by cost
        """
        if days <= 0:
            raise ValueError("days must be > 0")

        now = self._now()
        today_start = start_of_day(now, self.zone)
        first_day = (today_start - timedelta(days=days - 1)).date()
        since = datetime.combine(first_day, time.min, tzinfo=self.zone)
        entries = self._entries_since(since)

        per_day: Dict[str, List[UsageLogEntry]] = {
            (first_day + timedelta(days=offset)).isoformat(): [] for offset in range(days)
        }
        for entry in entries:
            per_day.setdefault(self._local_date(entry), []).append(entry)

        daily = [dict(summarize(day_entries), date=date) for date, day_entries in sorted(per_day.items())]

        by_user = group_by((e for e in entries if e.user_id), lambda e: e.user_id)
        top_users = sorted(by_user.items(), key=lambda item: item[1]["cost"], reverse=True)[:10]

        return {
            "timestamp": now.isoformat(),
            "period_days": days,
            "totals": summarize(entries),
            "daily": daily,
            "by_operation": group_by(entries, lambda e: e.operation_type),
            "by_model": group_by(entries, lambda e: e.model),
            "top_users": [dict(bucket, user_id=user_id) for user_id, bucket in top_users],
        }
