from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Dict, FrozenSet, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


_MONTH_NAMES: Dict[str, int] = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

_WEEKDAY_NAMES: Dict[str, int] = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
}

MIN_CRON_FIELDS = 5
MAX_CRON_FIELDS = 7
MIN_CRON_YEAR = 1970
MAX_CRON_YEAR = 2199
_SEARCH_YEARS = 30


class CronParseError(ValueError):
    pass


@dataclass(frozen=True)
class CronExpression:
    """Parsed cron expression.

    Field order is ``minute hour day-of-month month day-of-week [second] [year]``.
    Weekdays use 0 (or 7) for Sunday.
    """

    source: str
    seconds: Tuple[int, ...]
    minutes: Tuple[int, ...]
    hours: Tuple[int, ...]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    years: Optional[FrozenSet[int]]
    days_restricted: bool
    weekdays_restricted: bool

    def matches_day(self, day: date) -> bool:
        if self.years is not None and day.year not in self.years:
            return False
        if day.month not in self.months:
            return False
        dom_ok = day.day in self.days
        dow_ok = ((day.weekday() + 1) % 7) in self.weekdays
        # Classic cron: when both day fields are restricted either may match.
        if self.days_restricted and self.weekdays_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok


@lru_cache(maxsize=256)
def parse_cron(cron_expr: str) -> CronExpression:
    """Parse ``min hour dom month dow [sec] [year]``.

    The optional seconds field comes after day-of-week. Six-field expressions
    written for seconds-first dialects (``sec min hour dom month dow``) parse
    here with a different meaning and must be reordered.
    """
    fields = str(cron_expr or "").strip().split()
    if not (MIN_CRON_FIELDS <= len(fields) <= MAX_CRON_FIELDS):
        raise CronParseError(
            f"cron expression must contain {MIN_CRON_FIELDS} to {MAX_CRON_FIELDS} fields, got {len(fields)}"
        )
    minute_f, hour_f, dom_f, month_f, dow_f = fields[:5]
    second_f = fields[5] if len(fields) >= 6 else "0"
    year_f = fields[6] if len(fields) == 7 else None

    weekdays = {0 if value == 7 else value for value in _parse_field(dow_f, 0, 7, "day-of-week", _WEEKDAY_NAMES)}
    years: Optional[FrozenSet[int]] = None
    if year_f is not None and not _is_wildcard(year_f):
        years = frozenset(_parse_field(year_f, MIN_CRON_YEAR, MAX_CRON_YEAR, "year"))
    return CronExpression(
        source=" ".join(fields),
        seconds=tuple(sorted(_parse_field(second_f, 0, 59, "second"))),
        minutes=tuple(sorted(_parse_field(minute_f, 0, 59, "minute"))),
        hours=tuple(sorted(_parse_field(hour_f, 0, 23, "hour"))),
        days=frozenset(_parse_field(dom_f, 1, 31, "day-of-month")),
        months=frozenset(_parse_field(month_f, 1, 12, "month", _MONTH_NAMES)),
        weekdays=frozenset(weekdays),
        years=years,
        days_restricted=not _is_wildcard(dom_f),
        weekdays_restricted=not _is_wildcard(dow_f),
    )


def validate_cron(cron_expr: str) -> None:
    parse_cron(cron_expr)


def resolve_timezone(tz_name: str) -> ZoneInfo:
    name = str(tz_name or "UTC").strip() or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise CronParseError(f"Unknown timezone: {name}") from exc


def cron_next_run(cron_expr: str, after: datetime, tz_name: str = "UTC") -> Optional[datetime]:
    """Return the first fire time strictly after ``after`` as an aware UTC datetime.

    Fields are evaluated against wall-clock time in ``tz_name``. Local times
    skipped by a DST jump never fire; repeated local times fire once. Returns
    None when the expression cannot fire within the search horizon.
    """
    expr = parse_cron(cron_expr)
    tz = resolve_timezone(tz_name)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    after_utc = after.astimezone(timezone.utc)
    local_after = after_utc.astimezone(tz)

    day = local_after.date()
    last_year = max(expr.years) if expr.years else day.year + _SEARCH_YEARS
    while day.year <= last_year:
        if expr.years is not None and day.year not in expr.years:
            day = date(day.year + 1, 1, 1)
            continue
        if day.month not in expr.months:
            day = _first_of_next_month(day)
            continue
        if expr.matches_day(day):
            bound = local_after if day == local_after.date() else None
            found = _first_time_on(expr, day, tz, after_utc, bound)
            if found is not None:
                return found
        day += timedelta(days=1)
    return None


def _first_time_on(
    expr: CronExpression,
    day: date,
    tz: ZoneInfo,
    after_utc: datetime,
    bound: Optional[datetime],
) -> Optional[datetime]:
    for hour in expr.hours:
        if bound is not None and hour < bound.hour:
            continue
        for minute in expr.minutes:
            if bound is not None and hour == bound.hour and minute < bound.minute:
                continue
            for second in expr.seconds:
                naive = datetime.combine(day, time(hour, minute, second))
                candidate = naive.replace(tzinfo=tz)
                as_utc = candidate.astimezone(timezone.utc)
                if as_utc.astimezone(tz).replace(tzinfo=None) != naive:
                    continue
                if as_utc > after_utc:
                    return as_utc
    return None


def _first_of_next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def _is_wildcard(token: str) -> bool:
    return token.startswith(("*", "?"))


def _parse_field(
    token: str,
    min_value: int,
    max_value: int,
    label: str,
    names: Optional[Dict[str, int]] = None,
) -> FrozenSet[int]:
    values = set()
    for part in token.split(","):
        if not part:
            raise CronParseError(f"empty list item in {label} field '{token}'")
        base, has_step, step_raw = part.partition("/")
        step = 1
        if has_step:
            step = _parse_int(step_raw, label, part)
            if step <= 0:
                raise CronParseError(f"step must be positive in {label} field '{part}'")
        if base in ("*", "?"):
            start, end = min_value, max_value
        elif "-" in base:
            start_raw, end_raw = base.split("-", 1)
            start = _parse_value(start_raw, label, part, names)
            end = _parse_value(end_raw, label, part, names)
            if start > end:
                raise CronParseError(f"descending range in {label} field '{part}'")
        else:
            start = _parse_value(base, label, part, names)
            end = max_value if has_step else start
        if start < min_value or end > max_value:
            raise CronParseError(f"{label} field '{part}' outside {min_value}-{max_value}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


def _parse_value(raw: str, label: str, part: str, names: Optional[Dict[str, int]]) -> int:
    text = raw.strip().lower()
    if names and text in names:
        return names[text]
    return _parse_int(text, label, part)


def _parse_int(raw: str, label: str, part: str) -> int:
    if not raw.isdigit():
        raise CronParseError(f"invalid {label} field '{part}'")
    return int(raw)
