"""
Tests for the CLI interface.
"""
import asyncio
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from typer.testing import CliRunner

from ai_usage_gateway.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from ai_usage_gateway.core.alerts import CostAlertMonitor
from ai_usage_gateway.core.cache import ResponseCache
from ai_usage_gateway.core.quota import QuotaManager
from ai_usage_gateway.core.usage import UsageTracker
from ai_usage_gateway.storage.cache_store import SQLiteCacheStore
from ai_usage_gateway.storage.repository import GatewayRepository

runner = CliRunner()


@pytest.fixture
def mock_gateway():
    """Replace gateway construction with a mock."""
    with patch('ai_usage_gateway.cli.main.AIGateway') as mock_cls:
        gateway = MagicMock()
        gateway.aclose = AsyncMock()
        mock_cls.from_config.return_value = gateway
        yield gateway


def _seed_cache(db_path: str) -> None:
    async def produce(payload):
        return {"category": "deportes", "confidence": 0.9}

    GatewayRepository(db_path).initialize()
    cache = ResponseCache(store=SQLiteCacheStore(db_path))
    asyncio.run(cache.execute_with_optimization("categorize", {"title": "Gol"}, produce))


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output

    def test_missing_config_fails(self, db_path):
        result = runner.invoke(app, ["--config", "/nonexistent/gateway.yaml", "--db", db_path, "init"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error initializing database" in result.output

    def test_stats_empty(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "stats", "--days", "3"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "last 3 days" in result.output
        assert "No usage recorded" in result.output

    def test_stats_with_usage(self, db_path):
        repository = GatewayRepository(db_path)
        repository.initialize()
        tracker = UsageTracker(repository)
        tracker.track_usage("42", "search", "llama3-8b-8192", 1000, 500)
        tracker.flush_logs()

        result = runner.invoke(app, ["--db", db_path, "stats"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Operations: 1" in result.output
        assert "Tokens: 1,500" in result.output

    def test_stats_invalid_days(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "stats", "--days", "0"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error" in result.output

    def test_balance(self, db_path):
        repository = GatewayRepository(db_path)
        repository.initialize()
        QuotaManager(repository).deduct_interaction("42", "search")

        result = runner.invoke(app, ["--db", db_path, "balance", "42"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Available today: 249/250" in result.output
        assert "Consumed today: 1" in result.output

    def test_set_limit(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "set-limit", "42", "10"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "set to 10" in result.output

        balance = runner.invoke(app, ["--db", db_path, "balance", "42"])
        assert "Available today: 10/10" in balance.output

    def test_set_invalid_limit(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "set-limit", "42", "0"])

        assert result.exit_code == EXIT_CODE_FAIL

    def test_reset_quotas(self, db_path):
        repository = GatewayRepository(db_path)
        repository.initialize()
        manager = QuotaManager(repository)
        manager.deduct_interaction("1", "search")
        manager.deduct_interaction("2", "rewrite")

        result = runner.invoke(app, ["--db", db_path, "reset-quotas"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "for 2 users" in result.output
        assert manager.get_balance("1")["consumed_today"] == 0

    def test_cache_commands(self, db_path):
        _seed_cache(db_path)

        stats = runner.invoke(app, ["--db", db_path, "cache-stats"])
        assert stats.exit_code == EXIT_CODE_PASS
        assert "Total entries: 1" in stats.output

        assert "Cache enabled: yes" in stats.output

        cleanup = runner.invoke(app, ["--db", db_path, "cleanup-cache"])
        assert cleanup.exit_code == EXIT_CODE_PASS
        assert "Evicted 0 expired" in cleanup.output

        cleared = runner.invoke(app, ["--db", db_path, "clear-cache"])
        assert cleared.exit_code == EXIT_CODE_PASS
        assert "Removed 1 cache entries" in cleared.output

    def test_cache_stats_honors_config(self, db_path, tmp_path):
        _seed_cache(db_path)
        config_path = os.path.join(str(tmp_path), "gateway.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump({"cache": {"enabled": False, "min_confidence": 0.9}}, f)

        with patch("ai_usage_gateway.cli.main.ResponseCache", wraps=ResponseCache) as cache_cls:
            result = runner.invoke(app, ["--config", config_path, "--db", db_path, "cache-stats"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Cache enabled: no" in result.output
        assert "Total entries: 1" in result.output
        kwargs = cache_cls.call_args.kwargs
        assert kwargs["enabled"] is False
        assert kwargs["min_confidence"] == 0.9

    def test_recent(self, db_path):
        repository = GatewayRepository(db_path)
        repository.initialize()
        tracker = UsageTracker(repository)
        tracker.track_usage("42", "search", "llama3-8b-8192", 1000, 500)
        tracker.track_usage("7", "rewrite", "llama3-8b-8192", 10, 5)
        tracker.flush_logs()

        result = runner.invoke(app, ["--db", db_path, "recent", "--operation", "search"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Recent usage" in result.output
        assert "rewrite" not in result.output

        empty = runner.invoke(app, ["--db", db_path, "recent", "--user", "99"])
        assert empty.exit_code == EXIT_CODE_PASS
        assert "No usage recorded" in empty.output

    def test_recent_invalid_operation(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "recent", "--operation", "translate"])

        assert result.exit_code == EXIT_CODE_FAIL

    def test_alerts(self, db_path):
        repository = GatewayRepository(db_path)
        repository.initialize()
        alert = CostAlertMonitor(repository).record_cost(2.0)[0]

        listed = runner.invoke(app, ["--db", db_path, "alerts"])
        assert listed.exit_code == EXIT_CODE_PASS
        assert "Cost alerts" in listed.output
        assert "spike" in listed.output

        resolved = runner.invoke(app, ["--db", db_path, "alerts", "--resolve", str(alert.id)])
        assert resolved.exit_code == EXIT_CODE_PASS
        assert f"Alert {alert.id} resolved" in resolved.output

        assert "No cost alerts" in runner.invoke(app, ["--db", db_path, "alerts"]).output
        again = runner.invoke(app, ["--db", db_path, "alerts", "--resolve", str(alert.id)])
        assert again.exit_code == EXIT_CODE_FAIL

    def test_grant(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "grant", "42", "5", "--admin", "admin-1"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "New balance: 255" in result.output

        balance = runner.invoke(app, ["--db", db_path, "balance", "42"])
        assert "Granted today: 5" in balance.output

    def test_grant_invalid_amount(self, db_path):
        result = runner.invoke(app, ["--db", db_path, "grant", "42", "0", "--admin", "admin-1"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "amount" in result.output

    def test_settings(self, db_path):
        updated = runner.invoke(app, [
            "--db", db_path, "set-setting", "default_daily_limit", "40", "--admin", "admin-1",
        ])
        assert updated.exit_code == EXIT_CODE_PASS
        assert "default_daily_limit = 40" in updated.output

        shown = runner.invoke(app, ["--db", db_path, "settings"])
        assert "default_daily_limit: 40" in shown.output
        assert "Available today: 40/40" in runner.invoke(app, ["--db", db_path, "balance", "9"]).output

        unknown = runner.invoke(app, [
            "--db", db_path, "set-setting", "theme", "dark", "--admin", "admin-1",
        ])
        assert unknown.exit_code == EXIT_CODE_FAIL

    def test_categorize(self, db_path, mock_gateway):
        mock_gateway.categorize = AsyncMock(return_value={
            "category": "economia", "region": None, "confidence": 0.9, "cached": False, "fallback": False,
        })

        result = runner.invoke(app, [
            "--db", db_path, "categorize", "--title", "Sube el dólar", "--content", "El peso se deprecia", "-u", "42",
        ])

        assert result.exit_code == EXIT_CODE_PASS
        assert '"economia"' in result.output
        mock_gateway.categorize.assert_awaited_once_with("Sube el dólar", "El peso se deprecia", "", user_id="42")
        mock_gateway.aclose.assert_awaited_once()

    def test_search_failure(self, db_path, mock_gateway):
        mock_gateway.search = AsyncMock(side_effect=ValueError("query is required and cannot be empty"))

        result = runner.invoke(app, ["--db", db_path, "search", " "])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "query is required" in result.output
        mock_gateway.aclose.assert_awaited_once()
