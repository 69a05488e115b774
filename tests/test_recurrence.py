# tests/test_recurrence.py

from __future__ import annotations

from datetime import date

import pytest

from tasktide.errors import MalformedRecurrence
from tasktide.recurrence import (
    LAST_DAY,
    Daily,
    Generic,
    Monthly,
    Weekly,
    describe_recurrence,
    ends_before,
    next_after,
    next_after_iso,
    parse_recurrence,
    upcoming_occurrences,
    validate_recurrence,
)


@pytest.mark.parametrize(
    "spec, expected",
    [
        ("daily", Daily()),
        ("DAILY", Daily()),
        ("FREQ=DAILY", Daily()),
        ("RRULE:FREQ=DAILY;INTERVAL=1", Daily()),
        ("weekly:Monday", Weekly(0)),
        ("weekly:fri", Weekly(4)),
        ("FREQ=WEEKLY;BYDAY=SU", Weekly(6)),
        ("monthly:15", Monthly(15)),
        ("monthly:last", Monthly(LAST_DAY)),
        ("FREQ=MONTHLY;BYMONTHDAY=-1", Monthly(LAST_DAY)),
        ("FREQ=MONTHLY;BYMONTHDAY=31", Monthly(31)),
    ],
)
def test_parse_constrained_forms(spec: str, expected) -> None:
    assert parse_recurrence(spec) == expected


def test_parse_falls_back_to_generic() -> None:
    rec = parse_recurrence("FREQ=WEEKLY;BYDAY=MO,WE")
    assert isinstance(rec, Generic)
    assert rec.to_rrule() == "FREQ=WEEKLY;BYDAY=MO,WE"


@pytest.mark.parametrize(
    "spec",
    ["", None, "weekly:Funday", "weekly", "monthly:32", "monthly:0", "daily:3", "BYDAY=MO", "garbage", "FREQ=SOMETIMES"],
)
def test_malformed_specs_raise(spec) -> None:
    with pytest.raises(MalformedRecurrence):
        parse_recurrence(spec)


def test_malformed_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        next_after("weekly:Funday", date(2024, 1, 1))


def test_daily_is_next_day() -> None:
    assert next_after("daily", date(2024, 2, 28)) == date(2024, 2, 29)
    assert next_after("daily", "2024-12-31") == date(2025, 1, 1)


def test_weekly_on_same_weekday_moves_a_full_week() -> None:
    monday = date(2024, 1, 1)
    assert next_after("weekly:Monday", monday) == date(2024, 1, 8)
    assert next_after("FREQ=WEEKLY;BYDAY=MO", monday) == date(2024, 1, 8)


def test_weekly_from_other_weekday() -> None:
    assert next_after("weekly:Monday", date(2024, 1, 3)) == date(2024, 1, 8)
    assert next_after("weekly:Sunday", date(2024, 1, 1)) == date(2024, 1, 7)


def test_monthly_31_clamps_to_february_then_returns_to_31() -> None:
    feb = next_after("monthly:31", date(2024, 1, 31))
    assert feb == date(2024, 2, 29)
    assert next_after("monthly:31", feb) == date(2024, 3, 31)
    assert next_after("monthly:31", date(2023, 1, 31)) == date(2023, 2, 28)


def test_monthly_last_day_and_year_rollover() -> None:
    assert next_after("monthly:last", date(2024, 2, 29)) == date(2024, 3, 31)
    assert next_after("monthly:last", date(2024, 4, 30)) == date(2024, 5, 31)
    assert next_after("monthly:15", date(2024, 12, 15)) == date(2025, 1, 15)


def test_monthly_is_always_in_the_following_month() -> None:
    assert next_after("monthly:15", date(2024, 1, 10)) == date(2024, 2, 15)
    assert next_after("monthly:15", date(2024, 1, 20)) == date(2024, 2, 15)


def test_generic_is_strictly_after() -> None:
    assert next_after("FREQ=WEEKLY;BYDAY=MO,WE", date(2024, 1, 1)) == date(2024, 1, 3)
    assert next_after("FREQ=DAILY;INTERVAL=2", date(2024, 1, 1)) == date(2024, 1, 3)


def test_generic_until_runs_out() -> None:
    spec = "FREQ=DAILY;UNTIL=20240105"
    assert next_after_iso(spec, "2024-01-04") == "2024-01-05"
    assert next_after(spec, date(2024, 1, 5)) is None


def test_generic_count_one_has_nothing_after_the_reference() -> None:
    assert next_after("FREQ=DAILY;COUNT=1", date(2024, 1, 1)) is None


def test_ends_before() -> None:
    assert ends_before("FREQ=DAILY;UNTIL=20240103", "2024-01-05") is True
    assert ends_before("FREQ=DAILY;UNTIL=20240105", "2024-01-05") is False
    assert ends_before("daily", "2024-01-05") is False
    # COUNT is counted from the pointer day, so a single-shot rule is not yet spent.
    assert ends_before("FREQ=DAILY;COUNT=1", "2024-06-01") is False


def test_validate_returns_canonical_rrule() -> None:
    assert validate_recurrence("weekly:monday") == "FREQ=WEEKLY;BYDAY=MO"
    assert validate_recurrence("monthly:last") == "FREQ=MONTHLY;BYMONTHDAY=-1"
    assert validate_recurrence("daily") == "FREQ=DAILY"


def test_describe() -> None:
    assert describe_recurrence("daily") == "Daily"
    assert describe_recurrence("weekly:tu") == "Weekly on Tuesday"
    assert describe_recurrence("monthly:3") == "Monthly on day 3"
    assert describe_recurrence("monthly:last") == "Monthly on the last day"
    assert describe_recurrence("FREQ=YEARLY") == "Custom repeat"
    assert describe_recurrence("nonsense") == "Custom repeat"


def test_upcoming_occurrences() -> None:
    assert upcoming_occurrences("weekly:Monday", "2024-01-01", limit=3) == [
        date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22),
    ]
    assert upcoming_occurrences("FREQ=DAILY;UNTIL=20240103", "2024-01-01", limit=5) == [
        date(2024, 1, 2), date(2024, 1, 3),
    ]
