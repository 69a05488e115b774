"""
Recurrence expressions for repeating rules.

A rule's repeat spec is parsed into one of four variants:

- Daily                 "daily"             / "FREQ=DAILY"
- Weekly(weekday)       "weekly:Monday"     / "FREQ=WEEKLY;BYDAY=MO"
- Monthly(day | last)   "monthly:15"        / "FREQ=MONTHLY;BYMONTHDAY=15"
                        "monthly:last"      / "FREQ=MONTHLY;BYMONTHDAY=-1"
- Generic(expression)   any other RFC 5545 RRULE, evaluated by dateutil

Every variant answers the same question: the next calendar date strictly after a
reference date, or None when a bounded rule (UNTIL / COUNT) has run out.
Evaluation is pure; "today" only ever arrives as an argument.
"""
from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from dateutil import rrule as du_rrule

from .date_utils import as_date
from .errors import MalformedRecurrence

WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

# Monthly.day value meaning "last day of the month"
LAST_DAY = -1

_SHORT_FORM = re.compile(r"^(daily|weekly|monthly)\s*(?::\s*(.*))?$", re.IGNORECASE)
_END_OF_DAY = time(23, 59, 59)


def _weekday_from_token(token: str, spec: str) -> int:
    """Monday=0 .. Sunday=6 from 'Monday', 'mon' or 'MO' (any case)."""
    t = (token or "").strip().lower()
    for i, name in enumerate(WEEKDAY_NAMES):
        if t in (name.lower(), name[:3].lower(), WEEKDAY_CODES[i].lower()):
            return i
    raise MalformedRecurrence(spec, f"unknown weekday {token!r}")


@dataclass(frozen=True, slots=True)
class Daily:
    def next_after(self, after: date) -> date | None:
        return after + timedelta(days=1)

    def to_rrule(self) -> str:
        return "FREQ=DAILY"

    def describe(self) -> str:
        return "Daily"


@dataclass(frozen=True, slots=True)
class Weekly:
    weekday: int  # Python weekday, Monday=0

    def next_after(self, after: date) -> date | None:
        offset = (self.weekday - after.weekday() + 7) % 7
        if offset == 0:
            offset = 7
        return after + timedelta(days=offset)

    def to_rrule(self) -> str:
        return f"FREQ=WEEKLY;BYDAY={WEEKDAY_CODES[self.weekday]}"

    def describe(self) -> str:
        return f"Weekly on {WEEKDAY_NAMES[self.weekday]}"


@dataclass(frozen=True, slots=True)
class Monthly:
    day: int  # 1..31 or LAST_DAY

    def next_after(self, after: date) -> date | None:
        # Always the following month; short months clamp instead of being skipped.
        if after.month == 12:
            year, month = after.year + 1, 1
        else:
            year, month = after.year, after.month + 1
        last = calendar.monthrange(year, month)[1]
        day = last if self.day == LAST_DAY else min(self.day, last)
        return date(year, month, day)

    def to_rrule(self) -> str:
        return f"FREQ=MONTHLY;BYMONTHDAY={self.day}"

    def describe(self) -> str:
        if self.day == LAST_DAY:
            return "Monthly on the last day"
        return f"Monthly on day {self.day}"


@dataclass(frozen=True, slots=True)
class Generic:
    expression: str

    def _rule(self, dtstart: date):
        kwargs = {"ignoretz": True}
        if "DTSTART" not in self.expression.upper():
            kwargs["dtstart"] = datetime.combine(dtstart, time.min)
        return du_rrule.rrulestr(self.expression, **kwargs)

    def next_after(self, after: date) -> date | None:
        try:
            rule = self._rule(after)
            nxt = rule.after(datetime.combine(after, _END_OF_DAY), inc=False)
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedRecurrence(self.expression, str(e)) from e
        return nxt.date() if nxt is not None else None

    def first_on_or_after(self, day: date) -> date | None:
        """First occurrence on `day` or later, with an implicit DTSTART of `day` itself."""
        try:
            rule = self._rule(day)
            nxt = rule.after(datetime.combine(day, time.min), inc=True)
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedRecurrence(self.expression, str(e)) from e
        return nxt.date() if nxt is not None else None

    def to_rrule(self) -> str:
        return self.expression

    def describe(self) -> str:
        return "Custom repeat"


Recurrence = Daily | Weekly | Monthly | Generic


def _parse_short(kind: str, arg: str | None, spec: str) -> Recurrence:
    arg = (arg or "").strip()
    if kind == "daily":
        if arg:
            raise MalformedRecurrence(spec, "daily takes no argument")
        return Daily()
    if not arg:
        raise MalformedRecurrence(spec, f"{kind} needs an argument")
    if kind == "weekly":
        return Weekly(_weekday_from_token(arg, spec))
    if arg.lower() == "last":
        return Monthly(LAST_DAY)
    if not arg.isdigit() or not 1 <= int(arg) <= 31:
        raise MalformedRecurrence(spec, "monthly day must be 1-31 or 'last'")
    return Monthly(int(arg))


def _rrule_parts(body: str, spec: str) -> dict[str, str]:
    parts: dict[str, str] = {}
    for chunk in body.split(";"):
        if not chunk.strip():
            continue
        key, sep, value = chunk.partition("=")
        key = key.strip().upper()
        if not sep or not key or not value.strip():
            raise MalformedRecurrence(spec, f"bad rule part {chunk!r}")
        if key in parts:
            raise MalformedRecurrence(spec, f"duplicate {key}")
        parts[key] = value.strip().upper()
    if "FREQ" not in parts:
        raise MalformedRecurrence(spec, "missing FREQ")
    return parts


def _constrained(parts: dict[str, str]) -> Recurrence | None:
    """Return the constrained variant for these RRULE parts, or None if it needs dateutil."""
    freq = parts["FREQ"]
    extra = set(parts) - {"FREQ"}
    if parts.get("INTERVAL") == "1":
        extra.discard("INTERVAL")
    if freq == "DAILY" and not extra:
        return Daily()
    if freq == "WEEKLY" and extra == {"BYDAY"} and parts["BYDAY"] in WEEKDAY_CODES:
        return Weekly(WEEKDAY_CODES.index(parts["BYDAY"]))
    if freq == "MONTHLY" and extra == {"BYMONTHDAY"}:
        try:
            day = int(parts["BYMONTHDAY"])
        except ValueError:
            return None
        if day == LAST_DAY:
            return Monthly(LAST_DAY)
        if 1 <= day <= 31:
            return Monthly(day)
    return None


def parse_recurrence(spec: str | Recurrence | None) -> Recurrence:
    """Parse a repeat spec. Raises MalformedRecurrence rather than guessing."""
    if isinstance(spec, (Daily, Weekly, Monthly, Generic)):
        return spec
    if spec is None or not str(spec).strip():
        raise MalformedRecurrence(spec, "empty")
    raw = str(spec).strip()
    m = _SHORT_FORM.match(raw)
    if m:
        return _parse_short(m.group(1).lower(), m.group(2), raw)

    body = raw[len("RRULE:"):] if raw.upper().startswith("RRULE:") else raw
    if "\n" not in body:
        found = _constrained(_rrule_parts(body, raw))
        if found is not None:
            return found
    generic = Generic(raw)
    # Probe once so a bad expression fails here, not during materialization.
    generic.next_after(date(2000, 1, 1))
    return generic


def next_after(spec: str | Recurrence, after: date | str) -> date | None:
    """Next qualifying date strictly after `after`, or None if the rule is exhausted."""
    return parse_recurrence(spec).next_after(as_date(after))


def next_after_iso(spec: str | Recurrence, after: date | str) -> str | None:
    nxt = next_after(spec, after)
    return nxt.isoformat() if nxt is not None else None


def ends_before(spec: str | Recurrence, day: date | str) -> bool:
    """True when a bounded rule has no occurrence on or after `day`. Only Generic rules can end."""
    rec = parse_recurrence(spec)
    if not isinstance(rec, Generic):
        return False
    return rec.first_on_or_after(as_date(day)) is None


def validate_recurrence(spec: str | None) -> str:
    """Return the canonical RRULE string for a spec, or raise MalformedRecurrence."""
    return parse_recurrence(spec).to_rrule()


def describe_recurrence(spec: str | None) -> str:
    try:
        return parse_recurrence(spec).describe()
    except MalformedRecurrence:
        return "Custom repeat"


def upcoming_occurrences(spec: str | Recurrence, after: date | str, limit: int = 5) -> list[date]:
    """Up to `limit` successive occurrences strictly after `after` (for previews)."""
    rec = parse_recurrence(spec)
    out: list[date] = []
    cur = as_date(after)
    while len(out) < max(0, limit):
        nxt = rec.next_after(cur)
        if nxt is None:
            break
        out.append(nxt)
        cur = nxt
    return out
