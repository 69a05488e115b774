"""
Calendar-day helpers. Dates are stored as ISO strings (YYYY-MM-DD); there is no time-of-day.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone

from zoneinfo import ZoneInfo

# Already ISO date
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def today_in_tz(tz_name: str = "UTC") -> date:
    name = (tz_name or "").strip() or "UTC"
    try:
        tz = ZoneInfo(name)
    except (KeyError, ValueError):
        tz = timezone.utc
    return datetime.now(tz).date()


def as_date(value: date | str) -> date:
    """Accept a date or a YYYY-MM-DD string (longer ISO strings are cut to the day)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()[:10]
    if not _ISO_DATE.match(raw):
        raise ValueError(f"Expected a YYYY-MM-DD date, got {value!r}")
    return date.fromisoformat(raw)


def iso_date(value: date | str) -> str:
    return as_date(value).isoformat()


def resolve_relative_date(value: str | None, tz_name: str = "UTC") -> str | None:
    """
    Convert a date string to YYYY-MM-DD. Respects user timezone for relative phrases.
    - If value is already YYYY-MM-DD, return it.
    - If value is 'today', 'tomorrow', 'yesterday', 'next week', or 'in N days', return the resolved date.
    - Otherwise return None.
    """
    if not value or not str(value).strip():
        return None
    raw = str(value).strip().lower()
    if _ISO_DATE.match(raw):
        return raw
    today = today_in_tz(tz_name)
    if raw == "today":
        return today.isoformat()
    if raw == "tomorrow":
        return (today + timedelta(days=1)).isoformat()
    if raw == "yesterday":
        return (today - timedelta(days=1)).isoformat()
    if raw == "next week" or raw == "in a week":
        return (today + timedelta(days=7)).isoformat()
    m = re.match(r"^in\s+(\d+)\s+days?$", raw)
    if m:
        return (today + timedelta(days=int(m.group(1)))).isoformat()
    return None
