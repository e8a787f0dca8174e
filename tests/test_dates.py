from __future__ import annotations

from datetime import date

import pandas as pd
import pytest

from analysisbuilder.core.dates import (
    calculate_prior_period,
    format_timestamp,
    is_valid_iso_duration,
    parse_iso_duration,
    parse_relative_date_range,
    period_buckets,
    resolve_date_range,
    shift_date,
    to_local_timestamps,
)

WEDNESDAY = date(2024, 5, 15)


def test_prior_period_has_equal_length_and_ends_before_start() -> None:
    assert calculate_prior_period("2024-01-01", "2024-01-31") == (date(2023, 12, 1), date(2023, 12, 31))
    assert calculate_prior_period(date(2024, 2, 1), date(2024, 2, 29)) == (date(2024, 1, 3), date(2024, 1, 31))
    assert calculate_prior_period("2024-03-10", "2024-03-10") == (date(2024, 3, 9), date(2024, 3, 9))


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("today", (date(2024, 5, 15), date(2024, 5, 15))),
        ("yesterday", (date(2024, 5, 14), date(2024, 5, 14))),
        ("this week", (date(2024, 5, 13), date(2024, 5, 19))),
        ("last week", (date(2024, 5, 6), date(2024, 5, 12))),
        ("this month", (date(2024, 5, 1), date(2024, 5, 31))),
        ("last month", (date(2024, 4, 1), date(2024, 4, 30))),
        ("this quarter", (date(2024, 4, 1), date(2024, 6, 30))),
        ("last quarter", (date(2024, 1, 1), date(2024, 3, 31))),
        ("last year", (date(2023, 1, 1), date(2023, 12, 31))),
        ("Last 7 days", (date(2024, 5, 9), date(2024, 5, 15))),
    ],
)
def test_parse_relative_date_range(expression: str, expected: tuple[date, date]) -> None:
    assert parse_relative_date_range(expression, today=WEDNESDAY) == expected


def test_unknown_relative_range_is_none() -> None:
    assert parse_relative_date_range("next fortnight", today=WEDNESDAY) is None
    assert resolve_date_range(["2024-01-01"]) is None
    assert resolve_date_range(["2024-01-01", "2024-01-31"]) == (date(2024, 1, 1), date(2024, 1, 31))


def test_parse_iso_duration() -> None:
    start = pd.Timestamp("2024-01-01")

    assert start + parse_iso_duration("P7D") == pd.Timestamp("2024-01-08")
    assert start + parse_iso_duration("PT1H30M") == pd.Timestamp("2024-01-01 01:30")
    assert start + parse_iso_duration("P1W") == pd.Timestamp("2024-01-08")


@pytest.mark.parametrize("text", ["", "P", "PT", "7D", "P1DT", "P1.5D"])
def test_invalid_iso_duration(text: str) -> None:
    assert not is_valid_iso_duration(text)
    with pytest.raises(ValueError, match="Invalid ISO 8601 duration"):
        parse_iso_duration(text)


def test_to_local_timestamps_converts_and_drops_timezone() -> None:
    result = to_local_timestamps(pd.Series(["2024-01-01T05:00:00.000Z"]), "America/New_York")

    assert result.iloc[0] == pd.Timestamp("2024-01-01 00:00:00")
    assert result.dt.tz is None


def test_period_buckets_start_weeks_on_monday() -> None:
    timestamps = pd.Series(pd.to_datetime(["2024-01-03 10:00", "2024-01-08 00:30", "2024-01-14 23:59"]))

    buckets = period_buckets(timestamps, "week")

    assert list(buckets["label"]) == ["2024-01-01", "2024-01-08", "2024-01-08"]
    assert list(buckets["ordinal"] - buckets["ordinal"].iloc[0]) == [0, 1, 1]


def test_period_buckets_months_are_consecutive() -> None:
    buckets = period_buckets(pd.Series(pd.to_datetime(["2023-12-31", "2024-01-01", "2024-03-15"])), "month")

    assert list(buckets["label"]) == ["2023-12", "2024-01", "2024-03"]
    assert list(buckets["ordinal"] - buckets["ordinal"].iloc[0]) == [0, 1, 3]


def test_period_buckets_rejects_unknown_granularity() -> None:
    with pytest.raises(ValueError, match="granularity must be one of"):
        period_buckets(pd.Series(pd.to_datetime(["2024-01-01"])), "fortnight")


def test_shift_date_clips_to_month_end() -> None:
    assert shift_date("2024-01-31", "month", 1) == date(2024, 2, 29)
    assert shift_date("2024-01-01", "week", 2) == date(2024, 1, 15)
    assert shift_date("2024-01-01", "date", 3) == date(2024, 1, 4)


def test_format_timestamp_keeps_milliseconds() -> None:
    assert format_timestamp(pd.Timestamp("2024-01-02 03:04:05.678")) == "2024-01-02T03:04:05.678"
