#!/usr/bin/env python3
"""
Shared date utilities for flow metrics
All timestamps are timezone-aware UTC; weeks are ISO weeks starting on Monday.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional, Tuple, Union


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse an RFC3339 timestamp from the GitHub API or a CSV cell.

    Args:
        value: ISO format string like "2025-09-18T15:25:13Z", a datetime, or empty

    Returns:
        UTC datetime, or None for empty values
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        value = value.strip()
        if not value:
            return None
        dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> str:
    """Format a datetime as RFC3339 UTC, or an empty string when missing"""
    if value is None:
        return ""
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def align_to_monday(value: datetime) -> datetime:
    """Return Monday 00:00 UTC of the ISO week containing value"""
    value = value.astimezone(timezone.utc)
    midnight = value.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=midnight.weekday())


def iso_week(value: datetime) -> Tuple[int, int]:
    """ISO (year, week) of a timestamp in UTC"""
    iso = value.astimezone(timezone.utc).isocalendar()
    return iso[0], iso[1]


def week_cutoff(monday: datetime) -> datetime:
    """Sunday 23:59:59.999999 UTC closing the week that starts on monday"""
    return monday + timedelta(days=7) - timedelta(microseconds=1)


def iter_mondays(start: datetime, end: datetime) -> Iterator[datetime]:
    """Yield every Monday from the week of start through the week of end"""
    current = align_to_monday(start)
    last = align_to_monday(end)
    while current <= last:
        yield current
        current += timedelta(days=7)


def month_key(value: datetime) -> str:
    """UTC calendar month as YYYY-MM"""
    return value.astimezone(timezone.utc).strftime('%Y-%m')


def days_between(start: datetime, end: datetime) -> float:
    """Elapsed days from start to end as a float"""
    return (end - start).total_seconds() / (24 * 3600)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
