"""
Per-user daily interaction quotas.

Each completed AI operation costs the user one interaction. Counters reset
lazily at the first deduction or read after midnight in the operating
timezone, so no background scheduler is needed for correctness.

The quota is advisory: deduction happens after the upstream call has
completed, so a burst of concurrent calls can push ``consumed_today``
past ``daily_limit`` before the overdraft is visible.

Admins can grant extra interactions for the current day and change the
default limit through the settings table; a stored ``default_daily_limit``
setting replaces the configured default for users without a record.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog

from .clock import get_zone, start_of_day, utc_now
from .errors import QuotaExceeded
from .identity import UserId, normalize_user_id
from ..storage.models import OperationType, QuotaRecord
from ..storage.repository import GatewayRepository

logger = structlog.get_logger(__name__)

DEFAULT_DAILY_LIMIT = 250

SETTING_DEFAULT_DAILY_LIMIT = "default_daily_limit"


def _positive_int_setting(key: str, value: Any) -> str:
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ValueError(f"{key} must be a positive integer") from None
    if number <= 0:
        raise ValueError(f"{key} must be a positive integer")
    return str(number)


SETTING_VALIDATORS: Dict[str, Callable[[str, Any], str]] = {
    SETTING_DEFAULT_DAILY_LIMIT: _positive_int_setting,
}


class QuotaManager:
    """Daily interaction ledger keyed by canonical user id."""

    def __init__(
        self,
        repository: GatewayRepository,
        default_daily_limit: int = DEFAULT_DAILY_LIMIT,
        timezone: str = "UTC",
        now: Optional[Callable[[], datetime]] = None,
        enabled: bool = True,
    ):
        """
        Args:
            repository: Quota persistence
            default_daily_limit: Limit for users without an override
            timezone: IANA timezone whose midnight starts a new quota day
            now: Wall-clock source returning aware datetimes
            enabled: When False deductions are skipped
        """
        if default_daily_limit <= 0:
            raise ValueError("default_daily_limit must be > 0")
        self.repository = repository
        self.default_daily_limit = default_daily_limit
        self.zone = get_zone(timezone)
        self._now = now or utc_now
        self.enabled = enabled

    def _require_user(self, user_id: UserId) -> str:
        canonical = normalize_user_id(user_id)
        if canonical is None:
            raise ValueError("user_id is required")
        return canonical

    def _day_start(self, now: datetime) -> datetime:
        return start_of_day(now, self.zone)

    def _default_limit(self) -> int:
        stored = self.repository.get_settings().get(SETTING_DEFAULT_DAILY_LIMIT)
        return int(stored) if stored else self.default_daily_limit

    def _current_view(self, record: QuotaRecord, now: datetime) -> QuotaRecord:
        """The record as it reads after a lazy reset, without writing it."""
        if record.last_reset_at < self._day_start(now):
            return QuotaRecord(
                user_id=record.user_id,
                daily_limit=record.daily_limit,
                consumed_today=0,
                last_reset_at=now,
            )
        return record

    def deduct_interaction(
        self,
        user_id: UserId,
        operation_type: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Deduct one interaction for a completed operation.

        Creates the record on first use, resets a stale counter before
        deducting, and always deducts, even past the limit.

        Args:
            user_id: Caller identity in any supported form
            operation_type: OperationType or its string value
            metadata: Audit context stored in the interaction log

        Returns:
            Interactions still available today
        """
        canonical = self._require_user(user_id)
        op = operation_type.value if isinstance(operation_type, OperationType) else str(operation_type)

        if not self.enabled:
            logger.debug("quota_disabled", user_id=canonical)
            return self.default_daily_limit

        now = self._now()
        record = self.repository.deduct_interaction(
            canonical,
            op,
            metadata,
            now=now,
            day_start=self._day_start(now),
            default_daily_limit=self._default_limit(),
        )

        if record.consumed_today > record.daily_limit + record.granted_today:
            logger.warning(
                "quota_overdrawn",
                user_id=canonical,
                consumed_today=record.consumed_today,
                daily_limit=record.daily_limit,
            )
        else:
            logger.info(
                "interaction_deducted",
                user_id=canonical,
                operation_type=op,
                balance_after=record.available_today,
            )
        return record.available_today

    def get_balance(self, user_id: UserId) -> Dict[str, Any]:
        """Current balance; defaults apply when the user has no record yet."""
        canonical = self._require_user(user_id)
        now = self._now()
        stored = self.repository.get_quota(canonical)
        if stored is None:
            record = QuotaRecord(
                user_id=canonical,
                daily_limit=self._default_limit(),
                consumed_today=0,
                last_reset_at=now,
            )
        else:
            record = self._current_view(stored, now)

        return {
            "user_id": canonical,
            "available": record.available_today,
            "consumed_today": record.consumed_today,
            "daily_limit": record.daily_limit,
            "granted_today": record.granted_today,
            "last_reset": record.last_reset_at.isoformat(),
        }

    def validate_balance(self, user_id: UserId, required: int = 1) -> bool:
        """True if the user has at least ``required`` interactions left.

        Lookup failures allow the operation.
        """
        try:
            return self.get_balance(user_id)["available"] >= required
        except Exception as exc:
            logger.error("quota_validation_failed", user_id=str(user_id), error=str(exc))
            return True

    def require_available(self, user_id: UserId, required: int = 1) -> None:
        """Raise QuotaExceeded when the user is out of interactions."""
        balance = self.get_balance(user_id)
        if balance["available"] < required:
            raise QuotaExceeded(balance["user_id"], balance["available"], balance["daily_limit"])

    def set_daily_limit(self, user_id: UserId, daily_limit: int) -> Dict[str, Any]:
        """Override one user's daily limit."""
        if daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        canonical = self._require_user(user_id)
        self.repository.upsert_daily_limit(canonical, daily_limit, self._now())
        logger.info("daily_limit_set", user_id=canonical, daily_limit=daily_limit)
        return self.get_balance(canonical)

    def assign_interactions(self, user_id: UserId, amount: int, admin_id: Any) -> Dict[str, Any]:
        """Grant ``amount`` extra interactions for today on an admin's behalf.

        The grant is written to the interaction log with the admin's id and
        is cleared by the next daily reset.

        Args:
            user_id: Recipient in any supported form
            amount: Interactions to add (must be > 0)
            admin_id: Identity of the granting admin

        Returns:
            ``{success, new_balance, message}``

        Raises:
            ValueError: If any argument is missing or amount is not positive
        """
        if admin_id is None or not str(admin_id).strip():
            raise ValueError("admin_id is required")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("amount must be a positive integer")
        canonical = self._require_user(user_id)
        admin = str(admin_id).strip()

        now = self._now()
        record = self.repository.grant_interactions(
            canonical,
            amount,
            admin,
            now=now,
            day_start=self._day_start(now),
            default_daily_limit=self._default_limit(),
        )
        logger.info(
            "interactions_assigned",
            user_id=canonical,
            amount=amount,
            admin_id=admin,
            new_balance=record.available_today,
        )
        return {
            "success": True,
            "new_balance": record.available_today,
            "message": f"Assigned {amount} interactions to user {canonical}",
        }

    def get_settings(self) -> Dict[str, str]:
        """Global quota settings; stored values override the built-in defaults."""
        settings = {SETTING_DEFAULT_DAILY_LIMIT: str(self.default_daily_limit)}
        settings.update(self.repository.get_settings())
        return settings

    def update_setting(self, key: str, value: Any, admin_id: Any) -> Dict[str, Any]:
        """Change one global setting.

        Raises:
            ValueError: If an argument is missing, the key is unknown or the
                value is invalid for the key
        """
        missing_value = value is None or not str(value).strip()
        if not key or missing_value or admin_id is None or not str(admin_id).strip():
            raise ValueError("setting key, value and admin_id are required")
        validator = SETTING_VALIDATORS.get(key)
        if validator is None:
            raise ValueError(f"Unknown setting '{key}'. Known settings: {sorted(SETTING_VALIDATORS)}")

        setting = self.repository.upsert_setting(key, validator(key, value), str(admin_id).strip(), self._now())
        logger.info("setting_updated", key=key, value=setting["setting_value"], admin_id=setting["updated_by"])
        return {"success": True, "setting": setting}

    def reset_daily_interactions(self) -> int:
        """Reset every user's counter now. Returns the number of users reset."""
        users_reset = self.repository.reset_all_quotas(self._now())
        logger.info("daily_interactions_reset", users_reset=users_reset)
        return users_reset

    def get_history(self, user_id: UserId, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        canonical = self._require_user(user_id)
        entries, total = self.repository.fetch_interactions(canonical, limit, offset)
        return {
            "logs": [
                {
                    "created_at": entry.created_at.isoformat(),
                    "operation_type": entry.operation_type,
                    "interactions_deducted": entry.interactions_deducted,
                    "balance_after": entry.balance_after,
                    "metadata": entry.metadata,
                }
                for entry in entries
            ],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    def get_stats(self, user_id: UserId) -> Dict[str, Any]:
        """Balance plus consumption over the last 24 hours and all time."""
        balance = self.get_balance(user_id)
        by_operation, total = self.repository.interaction_totals(
            balance["user_id"], self._now() - timedelta(hours=24)
        )
        return {
            "current_balance": balance["available"],
            "consumed_today": balance["consumed_today"],
            "daily_limit": balance["daily_limit"],
            "last_reset": balance["last_reset"],
            "total_consumed_all_time": total,
            "by_operation": by_operation,
        }

    def list_users(self, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        records, total = self.repository.list_quotas(limit, offset)
        now = self._now()
        users = []
        for stored in records:
            record = self._current_view(stored, now)
            users.append({
                "user_id": record.user_id,
                "daily_limit": record.daily_limit,
                "available": record.available_today,
                "consumed_today": record.consumed_today,
                "granted_today": record.granted_today,
                "last_reset": record.last_reset_at.isoformat(),
            })
        return {"users": users, "total": total, "limit": limit, "offset": offset}
