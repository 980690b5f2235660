"""
Day boundaries in the operating timezone.
"""

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_zone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name, raising ValueError for unknown names."""
    try:
        return ZoneInfo(name)
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc


def start_of_day(now: datetime, zone: ZoneInfo) -> datetime:
    """00:00 of ``now``'s calendar day in ``zone``, as an aware datetime."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(zone)
    return datetime.combine(local.date(), time.min, tzinfo=zone)
