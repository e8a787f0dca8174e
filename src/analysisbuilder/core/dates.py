"""Helpers for handling date ranges, durations and period buckets."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

import pandas as pd

_EPOCH = pd.Timestamp("1970-01-01")


def format_date(value: date | pd.Timestamp | str) -> str:
    """Return ``value`` as a ``YYYY-MM-DD`` string."""

    return pd.Timestamp(value).strftime("%Y-%m-%d")


def format_timestamp(value: pd.Timestamp) -> str:
    return pd.Timestamp(value).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]


_LAST_N_PATTERN = re.compile(r"^last\s+(\d+)\s+(day|week|month|year)s?$")


def parse_relative_date_range(expression: str, *, today: date | None = None) -> tuple[date, date] | None:
    """Resolve a relative date expression to an inclusive ``(start, end)`` pair.

    Supported forms are ``today``, ``yesterday``, ``this``/``last``
    ``week|month|quarter|year`` and ``last N days|weeks|months|years``.
    Weeks start on Monday.  Unknown expressions return ``None``.
    """

    now = pd.Timestamp(today or date.today()).normalize()
    text = expression.lower().strip()
    one_day = pd.Timedelta(days=1)

    if text == "today":
        return now.date(), now.date()
    if text == "yesterday":
        return (now - one_day).date(), (now - one_day).date()

    if text in {"this week", "last week"}:
        monday = now - pd.Timedelta(days=now.weekday())
        if text == "last week":
            monday -= pd.Timedelta(days=7)
        return monday.date(), (monday + pd.Timedelta(days=6)).date()

    if text in {"this month", "last month"}:
        start = now.replace(day=1)
        if text == "last month":
            start -= pd.DateOffset(months=1)
        return start.date(), (start + pd.offsets.MonthEnd(0)).date()

    if text in {"this quarter", "last quarter"}:
        start = now.replace(month=3 * ((now.month - 1) // 3) + 1, day=1)
        if text == "last quarter":
            start -= pd.DateOffset(months=3)
        return start.date(), (start + pd.DateOffset(months=3) - one_day).date()

    if text in {"this year", "last year"}:
        start = now.replace(month=1, day=1)
        if text == "last year":
            start -= pd.DateOffset(years=1)
        return start.date(), start.replace(month=12, day=31).date()

    match = _LAST_N_PATTERN.fullmatch(text)
    if match is None:
        return None
    count = int(match.group(1))
    unit = match.group(2)
    if unit == "day":
        start = now - pd.Timedelta(days=count - 1)
    elif unit == "week":
        start = now - pd.Timedelta(days=7 * count - 1)
    elif unit == "month":
        start = now.replace(day=1) - pd.DateOffset(months=count - 1)
    else:
        start = now.replace(month=1, day=1) - pd.DateOffset(years=count)
    return start.date(), now.date()


def resolve_date_range(
    value: str | Sequence[str] | None, *, today: date | None = None
) -> tuple[date, date] | None:
    """Return the inclusive date pair for an explicit or relative range."""

    if value is None:
        return None
    if isinstance(value, str):
        return parse_relative_date_range(value, today=today)
    if len(value) < 2:
        return None
    try:
        start = pd.Timestamp(value[0])
        end = pd.Timestamp(value[1])
    except ValueError:
        return None
    if pd.isna(start) or pd.isna(end):
        return None
    return start.date(), end.date()


def calculate_prior_period(start: date | str, end: date | str) -> tuple[date, date]:
    """Return the period of equal day count that ends the day before ``start``.

    >>> calculate_prior_period("2024-01-01", "2024-01-31")
    (datetime.date(2023, 12, 1), datetime.date(2023, 12, 31))
    """

    start_ts = pd.Timestamp(start).normalize()
    end_ts = pd.Timestamp(end).normalize()
    if end_ts < start_ts:
        raise ValueError("end must be on or after start")
    length = (end_ts - start_ts).days + 1
    prior_end = start_ts - pd.Timedelta(days=1)
    prior_start = prior_end - pd.Timedelta(days=length - 1)
    return prior_start.date(), prior_end.date()


_ISO_DURATION_PATTERN = re.compile(
    r"P(?:(?P<years>\d+)Y)?(?:(?P<months>\d+)M)?(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?"
)


def parse_iso_duration(text: str) -> pd.DateOffset:
    """Convert an ISO-8601 duration such as ``P7D`` or ``PT1H30M`` to an offset."""

    match = _ISO_DURATION_PATTERN.fullmatch(text or "")
    parts = {key: int(value) for key, value in (match.groupdict().items() if match else ()) if value}
    if not parts or text.endswith("T"):
        raise ValueError(f"Invalid ISO 8601 duration: {text!r}")
    return pd.DateOffset(**parts)


def is_valid_iso_duration(text: str) -> bool:
    try:
        parse_iso_duration(text)
    except ValueError:
        return False
    return True


def to_local_timestamps(values: pd.Series, tz: str) -> pd.Series:
    """Parse ISO timestamps and return naive wall-clock times in ``tz``."""

    parsed = pd.to_datetime(values, utc=True, format="ISO8601")
    return parsed.dt.tz_convert(tz).dt.tz_localize(None)


@dataclass(frozen=True)
class _PeriodSpec:
    label_format: str
    offset_unit: str


_PERIOD_SPECS = {
    "day": _PeriodSpec("%Y-%m-%d", "days"),
    "week": _PeriodSpec("%Y-%m-%d", "weeks"),
    "month": _PeriodSpec("%Y-%m", "months"),
}

_PERIOD_ALIASES = {"date": "day"}


def _period_spec(granularity: str) -> tuple[str, _PeriodSpec]:
    normalized = granularity.lower()
    normalized = _PERIOD_ALIASES.get(normalized, normalized)
    spec = _PERIOD_SPECS.get(normalized)
    if spec is None:
        raise ValueError("granularity must be one of: 'day', 'week', 'month'")
    return normalized, spec


def period_buckets(timestamps: pd.Series, granularity: str) -> pd.DataFrame:
    """Return the integer period ordinal and label for naive ``timestamps``.

    Ordinals are consecutive integers so that ``ordinal_b - ordinal_a`` is the
    number of whole periods between two buckets.  Weeks start on Monday.
    """

    normalized, spec = _period_spec(granularity)
    days = timestamps.dt.normalize()
    if normalized == "day":
        start = days
        ordinal = (days - _EPOCH).dt.days
    elif normalized == "week":
        start = days - pd.to_timedelta(days.dt.weekday, unit="D")
        ordinal = (start - _EPOCH).dt.days // 7
    else:
        start = days - pd.to_timedelta(days.dt.day - 1, unit="D")
        ordinal = days.dt.year * 12 + days.dt.month - 1
    return pd.DataFrame(
        {"ordinal": ordinal.astype("int64"), "label": start.dt.strftime(spec.label_format)},
        index=timestamps.index,
    )


def shift_date(value: date | str, granularity: str, periods: int) -> date:
    """Return ``value`` moved forward by ``periods`` whole periods."""

    _, spec = _period_spec(granularity)
    return (pd.Timestamp(value) + pd.DateOffset(**{spec.offset_unit: periods})).date()


__all__ = [
    "calculate_prior_period",
    "format_date",
    "format_timestamp",
    "is_valid_iso_duration",
    "parse_iso_duration",
    "parse_relative_date_range",
    "period_buckets",
    "resolve_date_range",
    "shift_date",
    "to_local_timestamps",
]
