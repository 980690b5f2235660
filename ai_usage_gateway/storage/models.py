"""
Data models for storage layer.

Defines the records persisted by the gateway: usage logs, quota records,
interaction logs, cost alerts and cache entries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class OperationType(str, Enum):
    """Logical AI operations issued by the application."""
    REWRITE = "rewrite"
    CATEGORIZE = "categorize"
    SEARCH = "search"
    GENERATE_TEXT = "generate_text"
    TITLE_GENERATION = "title_generation"


@dataclass(frozen=True)
class AIOperation:
    """One logical request flowing through the gateway."""
    operation_type: OperationType
    payload: Mapping[str, Any]
    model: str
    created_at: datetime
    user_id: Optional[str] = None


@dataclass(frozen=True)
class UsageLogEntry:
    """Immutable record of one AI call for cost tracking.

    Append-only events that build the ledger behind the metrics dashboards.
    Once written, these records must never be modified.
    """
    created_at: datetime
    operation_type: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    cache_hit: bool = False
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QuotaRecord:
    """Per-user daily interaction ledger."""
    user_id: str
    daily_limit: int
    consumed_today: int
    last_reset_at: datetime
    granted_today: int = 0

    @property
    def available_today(self) -> int:
        """Interactions left today, never negative."""
        return max(0, self.daily_limit + self.granted_today - self.consumed_today)


@dataclass(frozen=True)
class InteractionLogEntry:
    """Audit entry written for every quota deduction or admin grant.

    Grants are logged with a negative ``interactions_deducted``.
    """
    created_at: datetime
    user_id: str
    operation_type: str
    interactions_deducted: int
    balance_after: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CacheEntry:
    """Cached upstream result keyed by a content hash."""
    key: str
    operation_type: str
    value: Any
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class AlertType(str, Enum):
    DAILY_LIMIT = "daily_limit"
    SPIKE = "spike"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class CostAlert:
    """Spend threshold crossing recorded for operators."""
    created_at: datetime
    alert_type: AlertType
    threshold: float
    current_value: float
    message: str
    severity: AlertSeverity
    resolved: bool = False
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "alert_type": self.alert_type.value,
            "threshold": self.threshold,
            "current_value": self.current_value,
            "message": self.message,
            "severity": self.severity.value,
            "resolved": self.resolved,
        }
