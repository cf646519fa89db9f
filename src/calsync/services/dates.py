"""
Date Normalizer

All-day events round-trip through a local calendar date, never through UTC
midnight. Timed events round-trip through absolute instants.
"""

import re
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from dateutil import tz as dateutil_tz
from dateutil.relativedelta import relativedelta

from calsync.utils.config import settings

_FRACTION = re.compile(r"T\d{2}:\d{2}:\d{2}\.(\d+)")


def local_timezone() -> tzinfo:
    """Zone that all-day dates are anchored to"""
    if settings.LOCAL_TIMEZONE:
        return ZoneInfo(settings.LOCAL_TIMEZONE)
    # Host zone, with its DST transitions
    return dateutil_tz.tzlocal()


def parse_local_date(value: str, tz: Optional[tzinfo] = None) -> datetime:
    """Parse YYYY-MM-DD as local midnight"""
    day = date.fromisoformat(value[:10])
    return datetime(day.year, day.month, day.day, tzinfo=tz or local_timezone())


def _truncate_fraction(value: str) -> str:
    """Graph sends seven fractional digits; fromisoformat wants three or six"""
    match = _FRACTION.search(value)
    if match and len(match.group(1)) not in (3, 6):
        digits = match.group(1)[:6].ljust(6, "0")
        value = f"{value[:match.start(1)]}{digits}{value[match.end(1):]}"
    return value


def parse_instant(value: str) -> datetime:
    """
    Parse an RFC 3339 date-time. Values without an offset are taken as UTC.
    """
    parsed = datetime.fromisoformat(_truncate_fraction(value.replace("Z", "+00:00")))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_graph_datetime(value: Dict[str, Any], is_all_day: bool, tz: Optional[tzinfo] = None) -> datetime:
    """
    Parse a Graph dateTimeTimeZone. Graph sends "2026-02-17T09:00:00.0000000"
    with a separate timeZone; for all-day events only the date part is used.
    """
    raw = value.get("dateTime", "")
    if is_all_day:
        return parse_local_date(raw.split("T")[0], tz)
    return parse_instant(raw)


def local_date(value: datetime, tz: Optional[tzinfo] = None) -> date:
    return value.astimezone(tz or local_timezone()).date()


def all_day_last_day(start: datetime, end: datetime, tz: Optional[tzinfo] = None) -> date:
    """
    Last calendar day covered by an all-day event.
    Accepts both an exclusive midnight end and an end inside the last day.
    """
    tz = tz or local_timezone()
    first = local_date(start, tz)
    if end <= start:
        return first
    last = local_date(end - timedelta(microseconds=1), tz)
    return max(first, last)


def format_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def google_event_times(
    start: datetime, end: datetime, is_all_day: bool, tz: Optional[tzinfo] = None
) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Google start/end objects. All-day end dates are exclusive."""
    if is_all_day:
        first = local_date(start, tz)
        exclusive_end = all_day_last_day(start, end, tz) + timedelta(days=1)
        return {"date": first.isoformat()}, {"date": exclusive_end.isoformat()}
    return (
        {"dateTime": f"{format_utc(start)}Z", "timeZone": "UTC"},
        {"dateTime": f"{format_utc(end)}Z", "timeZone": "UTC"},
    )


def microsoft_event_times(
    start: datetime, end: datetime, is_all_day: bool, tz: Optional[tzinfo] = None
) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Graph start/end objects. All-day events use midnight bounds with an exclusive end."""
    if is_all_day:
        first = local_date(start, tz)
        exclusive_end = all_day_last_day(start, end, tz) + timedelta(days=1)
        return (
            {"dateTime": f"{first.isoformat()}T00:00:00.0000000", "timeZone": "UTC"},
            {"dateTime": f"{exclusive_end.isoformat()}T00:00:00.0000000", "timeZone": "UTC"},
        )
    return (
        {"dateTime": f"{format_utc(start)}.0000000", "timeZone": "UTC"},
        {"dateTime": f"{format_utc(end)}.0000000", "timeZone": "UTC"},
    )


def sync_window(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Time range covered by a full-window sync"""
    now = now or datetime.now(timezone.utc)
    return (
        now - relativedelta(months=settings.SYNC_WINDOW_PAST_MONTHS),
        now + relativedelta(months=settings.SYNC_WINDOW_FUTURE_MONTHS),
    )
