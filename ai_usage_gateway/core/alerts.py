"""
Cost alerts.

Keeps a running total of today's spend and records an alert when the total
crosses a daily threshold or when one call is unusually expensive. The same
(type, threshold) alert is not repeated while an unresolved copy younger
than the de-duplication window exists.
"""

from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple

import structlog

from .clock import get_zone, start_of_day, utc_now
from ..storage.models import AlertSeverity, AlertType, CostAlert
from ..storage.repository import GatewayRepository

logger = structlog.get_logger(__name__)

DEFAULT_DAILY_WARNING = 10.0
DEFAULT_DAILY_CRITICAL = 50.0
DEFAULT_SPIKE_THRESHOLD = 1.0
DEFAULT_DEDUP_WINDOW_SECONDS = 3600


class CostAlertMonitor:
    """Raises daily-spend and expensive-call alerts into the alert table."""

    def __init__(
        self,
        repository: GatewayRepository,
        daily_warning: float = DEFAULT_DAILY_WARNING,
        daily_critical: float = DEFAULT_DAILY_CRITICAL,
        spike_threshold: float = DEFAULT_SPIKE_THRESHOLD,
        dedup_window_seconds: int = DEFAULT_DEDUP_WINDOW_SECONDS,
        timezone: str = "UTC",
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            repository: Ledger and alert persistence
            daily_warning: Daily spend (USD) that raises a warning
            daily_critical: Daily spend (USD) that raises a critical alert
            spike_threshold: Cost (USD) of a single call that raises an info alert
            dedup_window_seconds: How long an unresolved alert suppresses repeats
            timezone: IANA timezone whose midnight starts a new spend day
            now: Wall-clock source returning aware datetimes
        """
        if daily_warning <= 0 or spike_threshold <= 0:
            raise ValueError("alert thresholds must be > 0")
        if daily_critical < daily_warning:
            raise ValueError("daily_critical must be >= daily_warning")
        if dedup_window_seconds < 0:
            raise ValueError("dedup_window_seconds must be >= 0")

        self.repository = repository
        self.daily_warning = daily_warning
        self.daily_critical = daily_critical
        self.spike_threshold = spike_threshold
        self.dedup_window = timedelta(seconds=dedup_window_seconds)
        self.zone = get_zone(timezone)
        self._now = now or utc_now

        self._day: Optional[date] = None
        self._day_total = 0.0

    def _daily_thresholds(self) -> List[Tuple[float, AlertSeverity]]:
        return [
            (self.daily_warning, AlertSeverity.WARNING),
            (self.daily_critical, AlertSeverity.CRITICAL),
        ]

    def record_cost(self, cost: float) -> List[CostAlert]:
        """Add one call's cost to today's total and raise any alerts it triggers.

        Must be called before the call's ledger entry is written: the first
        call of a day seeds the running total from the ledger.

        Returns:
            Alerts stored by this call (duplicates are not returned)
        """
        if cost <= 0:
            return []

        now = self._now()
        day_start = start_of_day(now, self.zone)
        if self._day != day_start.date():
            self._day = day_start.date()
            self._day_total = self.repository.cost_since(day_start)
        self._day_total += cost
        total = self._day_total

        candidates = []
        for threshold, severity in self._daily_thresholds():
            if total > threshold and total - cost <= threshold:
                candidates.append(CostAlert(
                    created_at=now,
                    alert_type=AlertType.DAILY_LIMIT,
                    threshold=threshold,
                    current_value=round(total, 8),
                    message=f"Daily AI spend exceeded ${threshold:.2f}. Current spend: ${total:.2f}",
                    severity=severity,
                ))
        if cost > self.spike_threshold:
            candidates.append(CostAlert(
                created_at=now,
                alert_type=AlertType.SPIKE,
                threshold=self.spike_threshold,
                current_value=round(cost, 8),
                message=f"Expensive AI operation detected: ${cost:.4f}",
                severity=AlertSeverity.INFO,
            ))

        created = []
        for candidate in candidates:
            stored = self.repository.create_alert(candidate, now - self.dedup_window)
            if stored is None:
                logger.debug("cost_alert_suppressed", alert_type=candidate.alert_type.value,
                             threshold=candidate.threshold)
                continue
            log = logger.error if stored.severity == AlertSeverity.CRITICAL else logger.warning
            log(
                "cost_alert",
                alert_type=stored.alert_type.value,
                severity=stored.severity.value,
                threshold=stored.threshold,
                current_value=stored.current_value,
            )
            created.append(stored)
        return created

    def get_alerts(self, include_resolved: bool = False, limit: int = 50) -> List[CostAlert]:
        return self.repository.fetch_alerts(include_resolved, limit)

    def resolve_alert(self, alert_id: int) -> bool:
        resolved = self.repository.resolve_alert(alert_id, self._now())
        if resolved:
            logger.info("cost_alert_resolved", alert_id=alert_id)
        return resolved
