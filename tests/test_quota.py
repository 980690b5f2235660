"""
Unit tests for daily interaction quotas.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from ai_usage_gateway.core.errors import QuotaExceeded
from ai_usage_gateway.core.quota import DEFAULT_DAILY_LIMIT, QuotaManager
from ai_usage_gateway.storage.models import OperationType
from conftest import WallClock


class TestDeductInteraction:
    """Test deduction and lazy reset."""

    def test_first_deduction(self, repository, wall_clock):
        manager = QuotaManager(repository, now=wall_clock)

        available = manager.deduct_interaction("42", OperationType.CATEGORIZE, {"source": "test"})

        assert available == DEFAULT_DAILY_LIMIT - 1
        assert manager.get_balance("42")["consumed_today"] == 1

    def test_reset_then_deduct_on_new_day(self, repository, wall_clock):
        """A record from yesterday resets before today's first deduction."""
        manager = QuotaManager(repository, now=wall_clock)
        for _ in range(5):
            manager.deduct_interaction("42", "search")

        wall_clock.advance(days=1)
        available = manager.deduct_interaction("42", "search")

        balance = manager.get_balance("42")
        assert balance["consumed_today"] == 1
        assert balance["available"] == DEFAULT_DAILY_LIMIT - 1
        assert available == DEFAULT_DAILY_LIMIT - 1

    def test_deducts_past_limit(self, repository, wall_clock):
        """Deduction always happens; the balance floors at zero."""
        manager = QuotaManager(repository, default_daily_limit=2, now=wall_clock)

        results = [manager.deduct_interaction("42", "rewrite") for _ in range(3)]

        assert results == [1, 0, 0]
        assert manager.get_balance("42")["consumed_today"] == 3

    def test_day_boundary_follows_timezone(self, repository):
        """Midnight in Santiago, not UTC, starts a new quota day."""
        clock = WallClock(datetime(2024, 7, 10, 3, 0, tzinfo=timezone.utc))  # 23:00 in Santiago
        manager = QuotaManager(repository, timezone="America/Santiago", now=clock)
        manager.deduct_interaction("42", "search")

        clock.advance(hours=2)  # 01:00 the next day in Santiago
        manager.deduct_interaction("42", "search")

        assert manager.get_balance("42")["consumed_today"] == 1

    def test_user_id_forms_share_a_record(self, repository, wall_clock):
        manager = QuotaManager(repository, now=wall_clock)
        manager.deduct_interaction(42, "search")
        manager.deduct_interaction("042", "search")

        assert manager.get_balance("42")["consumed_today"] == 2

    def test_anonymous_rejected(self, repository, wall_clock):
        with pytest.raises(ValueError, match="user_id"):
            QuotaManager(repository, now=wall_clock).deduct_interaction(None, "search")

    def test_disabled_manager_skips_storage(self, wall_clock):
        repository = MagicMock()
        manager = QuotaManager(repository, enabled=False, now=wall_clock)

        assert manager.deduct_interaction("42", "search") == DEFAULT_DAILY_LIMIT
        repository.deduct_interaction.assert_not_called()


class TestBalance:
    """Test the read path."""

    def test_unknown_user_gets_defaults(self, repository, wall_clock):
        balance = QuotaManager(repository, default_daily_limit=100, now=wall_clock).get_balance("new")
        assert balance["available"] == 100
        assert balance["consumed_today"] == 0
        assert balance["daily_limit"] == 100

    def test_stale_record_reads_as_reset(self, repository, wall_clock):
        manager = QuotaManager(repository, now=wall_clock)
        manager.deduct_interaction("42", "search")
        wall_clock.advance(days=1)

        assert manager.get_balance("42")["available"] == DEFAULT_DAILY_LIMIT
        # Reading does not write the reset.
        assert repository.get_quota("42").consumed_today == 1

    def test_validate_and_require(self, repository, wall_clock):
        manager = QuotaManager(repository, default_daily_limit=1, now=wall_clock)
        assert manager.validate_balance("42") is True
        manager.require_available("42")

        manager.deduct_interaction("42", "search")

        assert manager.validate_balance("42") is False
        with pytest.raises(QuotaExceeded) as exc_info:
            manager.require_available("42")
        assert exc_info.value.available == 0
        assert exc_info.value.daily_limit == 1

    def test_validate_allows_on_lookup_failure(self, wall_clock):
        repository = MagicMock()
        repository.get_quota.side_effect = RuntimeError("db down")
        assert QuotaManager(repository, now=wall_clock).validate_balance("42") is True


class TestAdministration:
    """Test limits, resets, history and listing."""

    def test_set_daily_limit(self, repository, wall_clock):
        manager = QuotaManager(repository, now=wall_clock)
        manager.deduct_interaction("42", "search")

        balance = manager.set_daily_limit("42", 10)

        assert balance["daily_limit"] == 10
        assert balance["available"] == 9

    def test_set_invalid_limit(self, repository, wall_clock):
        with pytest.raises(ValueError):
            QuotaManager(repository, now=wall_clock).set_daily_limit("42", 0)

    def test_reset_daily_interactions(self, repository, wall_clock):
        manager = QuotaManager(repository, now=wall_clock)
        manager.deduct_interaction("1", "search")
        manager.deduct_interaction("2", "search")

        assert manager.reset_daily_interactions() == 2
        assert manager.get_balance("1")["consumed_today"] == 0

    def test_history_and_stats(self, repository, wall_clock):
        manager = QuotaManager(repository, now=wall_clock)
        manager.deduct_interaction("42", "search", {"query": "inflación"})
        manager.deduct_interaction("42", "categorize")

        history = manager.get_history("42", limit=1)
        assert history["total"] == 2
        assert len(history["logs"]) == 1

        stats = manager.get_stats("42")
        assert stats["total_consumed_all_time"] == 2
        assert stats["by_operation"] == {"search": 1, "categorize": 1}
        assert stats["current_balance"] == DEFAULT_DAILY_LIMIT - 2

    def test_list_users(self, repository, wall_clock):
        manager = QuotaManager(repository, now=wall_clock)
        manager.deduct_interaction("1", "search")
        manager.deduct_interaction("2", "search")

        listing = manager.list_users()

        assert listing["total"] == 2
        assert {user["user_id"] for user in listing["users"]} == {"1", "2"}


class TestGrantsAndSettings:
    """Test admin grants and global settings."""

    def test_assign_interactions(self, repository, wall_clock):
        manager = QuotaManager(repository, default_daily_limit=3, now=wall_clock)
        for _ in range(3):
            manager.deduct_interaction("42", "search")

        result = manager.assign_interactions("42", 5, "admin-1")

        assert result["success"] is True
        assert result["new_balance"] == 5
        assert "5 interactions" in result["message"]
        balance = manager.get_balance("42")
        assert balance["available"] == 5
        assert balance["granted_today"] == 5

        history = manager.get_history("42", limit=1)
        assert history["logs"][0]["operation_type"] == "admin_grant"
        assert history["logs"][0]["metadata"]["admin_id"] == "admin-1"

    def test_grant_does_not_count_as_overdraft(self, repository, wall_clock):
        manager = QuotaManager(repository, default_daily_limit=1, now=wall_clock)
        manager.assign_interactions("42", 1, "admin-1")

        assert manager.deduct_interaction("42", "search") == 1
        assert manager.deduct_interaction("42", "search") == 0
        assert manager.get_stats("42")["total_consumed_all_time"] == 2

    def test_grant_resets_next_day(self, repository, wall_clock):
        manager = QuotaManager(repository, default_daily_limit=10, now=wall_clock)
        manager.assign_interactions("42", 5, "admin-1")
        wall_clock.advance(days=1)

        balance = manager.get_balance("42")
        assert balance["available"] == 10
        assert balance["granted_today"] == 0

    @pytest.mark.parametrize("amount, admin_id", [
        (0, "admin-1"), (-2, "admin-1"), (True, "admin-1"), (5, ""), (5, None),
    ])
    def test_assign_invalid_arguments(self, repository, wall_clock, amount, admin_id):
        with pytest.raises(ValueError):
            QuotaManager(repository, now=wall_clock).assign_interactions("42", amount, admin_id)
        assert repository.get_quota("42") is None

    def test_assign_requires_user(self, repository, wall_clock):
        with pytest.raises(ValueError, match="user_id"):
            QuotaManager(repository, now=wall_clock).assign_interactions(None, 5, "admin-1")

    def test_settings_defaults_and_update(self, repository, wall_clock):
        manager = QuotaManager(repository, default_daily_limit=100, now=wall_clock)
        assert manager.get_settings() == {"default_daily_limit": "100"}

        result = manager.update_setting("default_daily_limit", 40, "admin-1")

        assert result["success"] is True
        assert result["setting"]["setting_value"] == "40"
        assert result["setting"]["updated_by"] == "admin-1"
        assert manager.get_settings() == {"default_daily_limit": "40"}

    def test_stored_default_limit_applies_to_new_users(self, repository, wall_clock):
        manager = QuotaManager(repository, default_daily_limit=100, now=wall_clock)
        manager.deduct_interaction("old", "search")
        manager.update_setting("default_daily_limit", "40", "admin-1")

        assert manager.get_balance("new")["daily_limit"] == 40
        assert manager.deduct_interaction("new2", "search") == 39
        assert manager.get_balance("old")["daily_limit"] == 100

    def test_update_setting_validation(self, repository, wall_clock):
        manager = QuotaManager(repository, now=wall_clock)

        with pytest.raises(ValueError, match="required"):
            manager.update_setting("default_daily_limit", "10", None)
        with pytest.raises(ValueError, match="required"):
            manager.update_setting("default_daily_limit", " ", "admin-1")
        with pytest.raises(ValueError, match="Unknown setting"):
            manager.update_setting("theme", "dark", "admin-1")
        with pytest.raises(ValueError, match="positive integer"):
            manager.update_setting("default_daily_limit", "-3", "admin-1")
        with pytest.raises(ValueError, match="positive integer"):
            manager.update_setting("default_daily_limit", "many", "admin-1")
        assert repository.get_settings() == {}
