"""
Unit tests for user id normalization and day boundaries.
"""

import uuid
from datetime import datetime, timezone

import pytest

from ai_usage_gateway.core.clock import get_zone, start_of_day
from ai_usage_gateway.core.identity import DEMO_USER_ID, normalize_user_id


class TestNormalizeUserId:
    """Test canonical user id forms."""

    def test_anonymous(self):
        assert normalize_user_id(None) is None
        assert normalize_user_id("   ") is None

    def test_numeric_forms_agree(self):
        """Integer ids and numeric strings share one key."""
        assert normalize_user_id(42) == normalize_user_id("42") == normalize_user_id(" 0042 ") == "42"

    def test_uuid_forms_agree(self):
        value = uuid.UUID("6f1c2a9e-4b7d-4c1e-9f3a-2d5e8b7c6a10")
        assert normalize_user_id(value) == "6f1c2a9e-4b7d-4c1e-9f3a-2d5e8b7c6a10"
        assert normalize_user_id("6F1C2A9E-4B7D-4C1E-9F3A-2D5E8B7C6A10") == str(value)
        assert normalize_user_id("6f1c2a9e4b7d4c1e9f3a2d5e8b7c6a10") == str(value)

    def test_demo_aliases(self):
        assert normalize_user_id("demo-admin") == DEMO_USER_ID
        assert normalize_user_id("demo-token") == DEMO_USER_ID

    def test_other_strings_are_stripped(self):
        assert normalize_user_id("  editor@example.com ") == "editor@example.com"

    def test_bool_rejected(self):
        with pytest.raises(ValueError):
            normalize_user_id(True)


class TestDayBoundaries:
    """Test the operating-timezone day start."""

    def test_utc_midnight(self):
        now = datetime(2024, 3, 10, 15, 30, tzinfo=timezone.utc)
        assert start_of_day(now, get_zone("UTC")) == datetime(2024, 3, 10, tzinfo=timezone.utc)

    def test_local_zone_day(self):
        """01:00 UTC is still the previous day in Santiago."""
        zone = get_zone("America/Santiago")
        now = datetime(2024, 7, 10, 1, 0, tzinfo=timezone.utc)
        start = start_of_day(now, zone)
        assert start.date().isoformat() == "2024-07-09"
        assert start.hour == 0

    def test_naive_treated_as_utc(self):
        start = start_of_day(datetime(2024, 3, 10, 23, 0), get_zone("UTC"))
        assert start == datetime(2024, 3, 10, tzinfo=timezone.utc)

    def test_unknown_zone(self):
        with pytest.raises(ValueError, match="Unknown timezone"):
            get_zone("Mars/Olympus_Mons")
