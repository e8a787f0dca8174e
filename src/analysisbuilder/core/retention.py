"""Cohort retention analysis."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Literal, NotRequired, TypedDict, Unpack

import pandas as pd

from ._members import is_member_path
from .client import QueryExecutor
from .dates import format_date, parse_relative_date_range, period_buckets, shift_date, to_local_timestamps
from .errors import QueryExecutionError, ValidationResult, _IssueCollector
from .filters import validate_filters
from .query_helpers import rows_to_dataframe
from .settings import RETENTION_DEFAULT_PERIODS, RETENTION_MAX_PERIODS, RETENTION_MIN_PERIODS
from .types import (
    BindingKey,
    DateRange,
    FilterNode,
    Query,
    RetentionGranularity,
    RetentionType,
    Row,
    TimeDimension,
)

logger = logging.getLogger(__name__)

RETENTION_PERFORMANCE_WARNING_PERIODS = 26

RetentionStatus = Literal["idle", "executing", "success", "error"]

_GRANULARITIES = ("day", "week", "month")
_RETENTION_TYPES = ("classic", "rolling")


def clamp_periods(value: int) -> int:
    return max(RETENTION_MIN_PERIODS, min(RETENTION_MAX_PERIODS, int(value)))


def date_range_from_preset(preset: str, *, today: date | None = None) -> DateRange:
    """Resolve presets such as ``last_30_days`` or ``this_month``."""

    resolved = parse_relative_date_range(preset.replace("_", " "), today=today)
    if resolved is None:
        raise ValueError(f"Unknown date range preset: {preset}")
    start, end = resolved
    return DateRange(start=format_date(start), end=format_date(end))


@dataclass(frozen=True)
class RetentionQueryConfig:
    cube: str
    binding_key: BindingKey
    time_dimension: str
    date_range: DateRange
    granularity: RetentionGranularity = "week"
    periods: int = RETENTION_DEFAULT_PERIODS
    retention_type: RetentionType = "classic"
    cohort_filters: tuple[FilterNode, ...] = ()
    activity_filters: tuple[FilterNode, ...] = ()
    breakdowns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "cohort_filters", tuple(self.cohort_filters))
        object.__setattr__(self, "activity_filters", tuple(self.activity_filters))
        object.__setattr__(self, "breakdowns", tuple(self.breakdowns))

    @property
    def binding_key_field(self) -> str | None:
        return self.binding_key.field_for(self.cube)

    def to_dict(self) -> dict[str, Any]:
        retention: dict[str, Any] = {
            "bindingKey": self.binding_key.to_dict(),
            "timeDimension": self.time_dimension,
            "dateRange": self.date_range.to_dict(),
            "granularity": self.granularity,
            "periods": self.periods,
            "retentionType": self.retention_type,
        }
        if self.cohort_filters:
            retention["cohortFilters"] = [node.to_dict() for node in self.cohort_filters]
        if self.activity_filters:
            retention["activityFilters"] = [node.to_dict() for node in self.activity_filters]
        if self.breakdowns:
            retention["breakdownDimensions"] = list(self.breakdowns)
        return {"retention": retention}


class RetentionArguments(TypedDict):
    cube: str | None
    binding_key: BindingKey | None
    time_dimension: str | None
    date_range: DateRange | None
    granularity: NotRequired[RetentionGranularity]
    periods: NotRequired[int]
    retention_type: NotRequired[RetentionType]
    cohort_filters: NotRequired[Sequence[FilterNode]]
    activity_filters: NotRequired[Sequence[FilterNode]]
    breakdowns: NotRequired[Sequence[str]]


def build_retention_query(**arguments: Unpack[RetentionArguments]) -> RetentionQueryConfig | None:
    """Return the retention query, or ``None`` while required inputs are missing."""

    cube = arguments["cube"]
    binding_key = arguments["binding_key"]
    time_dimension = arguments["time_dimension"]
    date_range = arguments["date_range"]
    if not cube or binding_key is None or binding_key.is_empty or not time_dimension or date_range is None:
        return None

    return RetentionQueryConfig(
        cube=cube,
        binding_key=binding_key,
        time_dimension=time_dimension,
        date_range=date_range,
        granularity=arguments.get("granularity", "week"),
        periods=clamp_periods(arguments.get("periods", RETENTION_DEFAULT_PERIODS)),
        retention_type=arguments.get("retention_type", "classic"),
        cohort_filters=tuple(arguments.get("cohort_filters", ())),
        activity_filters=tuple(arguments.get("activity_filters", ())),
        breakdowns=tuple(arguments.get("breakdowns", ())),
    )


def validate_retention_config(config: RetentionQueryConfig) -> ValidationResult:
    issues = _IssueCollector()
    if not config.cube:
        issues.error("missing_cube", "Cube is required")
    if config.binding_key.is_empty:
        issues.error("missing_binding_key", "Binding key is required")
    elif config.binding_key_field is None:
        issues.error("missing_binding_key", f"Binding key has no mapping for cube '{config.cube}'")
    if not is_member_path(config.time_dimension):
        issues.error("missing_time_dimension", "Time dimension must be in 'Cube.member' format")

    try:
        start = pd.Timestamp(config.date_range.start)
        end = pd.Timestamp(config.date_range.end)
    except ValueError:
        issues.error("invalid_date_range", "Date range must use YYYY-MM-DD dates")
    else:
        if pd.isna(start) or pd.isna(end):
            issues.error("invalid_date_range", "Date range must use YYYY-MM-DD dates")
        elif end < start:
            issues.error("invalid_date_range", "Date range start must be on or before end")

    if config.granularity not in _GRANULARITIES:
        issues.error("invalid_granularity", f"granularity must be one of: {', '.join(_GRANULARITIES)}")
    if config.retention_type not in _RETENTION_TYPES:
        issues.error("invalid_retention_type", f"retention_type must be one of: {', '.join(_RETENTION_TYPES)}")
    if not RETENTION_MIN_PERIODS <= config.periods <= RETENTION_MAX_PERIODS:
        issues.error(
            "invalid_periods",
            f"periods must be between {RETENTION_MIN_PERIODS} and {RETENTION_MAX_PERIODS}",
        )
    elif config.periods > RETENTION_PERFORMANCE_WARNING_PERIODS:
        issues.warn(
            "many_periods",
            f"More than {RETENTION_PERFORMANCE_WARNING_PERIODS} periods may make the retention query slow",
        )

    for message in validate_filters(config.cohort_filters):
        issues.error("invalid_filter", f"Cohort filter: {message}")
    for message in validate_filters(config.activity_filters):
        issues.error("invalid_filter", f"Activity filter: {message}")
    return issues.result()


def cohort_query(config: RetentionQueryConfig) -> Query:
    """Entity, entry time and breakdown values of cohort events within the date range."""

    return Query(
        dimensions=(config.binding_key_field, *config.breakdowns),
        time_dimensions=(
            TimeDimension(
                dimension=config.time_dimension,
                granularity=config.granularity,
                date_range=(config.date_range.start, config.date_range.end),
            ),
        ),
        filters=config.cohort_filters,
    )


def activity_query(config: RetentionQueryConfig) -> Query:
    """Entity activity from the first cohort period through the last return period."""

    end = shift_date(config.date_range.end, config.granularity, config.periods)
    return Query(
        dimensions=(config.binding_key_field,),
        time_dimensions=(
            TimeDimension(
                dimension=config.time_dimension,
                granularity=config.granularity,
                date_range=(config.date_range.start, format_date(end)),
            ),
        ),
        filters=config.activity_filters,
    )


@dataclass(frozen=True)
class RetentionCell:
    cohort_period: str
    period: int
    entered_count: int
    returned_count: int
    rate: float
    breakdown: tuple[Any, ...] = ()


@dataclass(frozen=True)
class RetentionSummary:
    total_users: int
    avg_period1_retention: float
    max_period1_retention: float
    min_period1_retention: float
    segment_count: int


@dataclass(frozen=True)
class RetentionResult:
    status: RetentionStatus
    cells: tuple[RetentionCell, ...] = ()
    breakdowns: tuple[str, ...] = ()
    error: str | None = None
    validation: ValidationResult = field(default_factory=ValidationResult)

    @property
    def segments(self) -> tuple[tuple[Any, ...], ...]:
        return tuple(dict.fromkeys(cell.breakdown for cell in self.cells))

    @property
    def summary(self) -> RetentionSummary:
        cohorts = [cell for cell in self.cells if cell.period == 0]
        period1 = [cell.rate for cell in self.cells if cell.period == 1 and cell.entered_count > 0]
        return RetentionSummary(
            total_users=sum(cell.entered_count for cell in cohorts),
            avg_period1_retention=sum(period1) / len(period1) if period1 else 0.0,
            max_period1_retention=max(period1, default=0.0),
            min_period1_retention=min(period1, default=0.0),
            segment_count=len(self.segments),
        )

    def to_dataframe(self, values: Literal["rate", "returned_count"] = "rate") -> pd.DataFrame:
        """Return the cohort by period matrix, one row per (breakdown..., cohort)."""

        records = [
            {
                **dict(zip(self.breakdowns, cell.breakdown)),
                "cohort_period": cell.cohort_period,
                "period": cell.period,
                values: getattr(cell, values),
            }
            for cell in self.cells
        ]
        index = [*self.breakdowns, "cohort_period"]
        if not records:
            return pd.DataFrame(index=pd.Index([], name="cohort_period"))
        return pd.DataFrame(records).pivot(index=index, columns="period", values=values).sort_index()


def _events_frame(
    rows: Sequence[Row],
    entity_field: str,
    time_member: str,
    granularity: str,
    tz: str,
    extra: Sequence[str] = (),
) -> pd.DataFrame:
    df = rows_to_dataframe(rows)
    if df.empty:
        return pd.DataFrame(columns=["entity", "ts", *extra])
    time_column = time_member if time_member in df.columns else f"{time_member}.{granularity}"
    frame = pd.DataFrame(
        {
            "entity": df[entity_field],
            "ts": df[time_column],
            **{member: df[member] if member in df.columns else None for member in extra},
        }
    )
    frame = frame.dropna(subset=["entity", "ts"])
    frame["ts"] = to_local_timestamps(frame["ts"], tz)
    return frame


def compute_retention(
    config: RetentionQueryConfig,
    cohort_rows: Sequence[Row],
    activity_rows: Sequence[Row],
    *,
    tz: str = "UTC",
) -> RetentionResult:
    """Build the cohort matrix from raw cohort and activity events.

    Period 0 is the entry period and reports the cohort size.  For period
    ``k >= 1`` an entity counts as returned when it has activity exactly ``k``
    periods after entry (classic) or ``k`` or more periods after (rolling).
    """

    entity_field = config.binding_key_field
    assert entity_field is not None
    breakdowns = list(config.breakdowns)
    offsets = list(range(1, config.periods + 1))

    cohort = _events_frame(cohort_rows, entity_field, config.time_dimension, config.granularity, tz, breakdowns)
    if not cohort.empty:
        # Rows may carry timestamps already truncated to the period start, so
        # the range is enforced on whole periods.
        bounds = period_buckets(
            pd.Series(pd.to_datetime([config.date_range.start, config.date_range.end])), config.granularity
        )["ordinal"]
        ordinals = period_buckets(cohort["ts"], config.granularity)["ordinal"]
        cohort = cohort[ordinals.between(bounds.iloc[0], bounds.iloc[1])]
    if cohort.empty:
        return RetentionResult(status="success", breakdowns=config.breakdowns)

    cohort = cohort.sort_values("ts", kind="stable").drop_duplicates("entity", keep="first")
    buckets = period_buckets(cohort["ts"], config.granularity)
    cohort = cohort.assign(cohort_ordinal=buckets["ordinal"], cohort_period=buckets["label"])

    activity = _events_frame(activity_rows, entity_field, config.time_dimension, config.granularity, tz)
    if activity.empty:
        returned = pd.DataFrame(columns=["entity", "offset"])
    else:
        activity = activity.assign(ordinal=period_buckets(activity["ts"], config.granularity)["ordinal"])
        joined = activity.merge(cohort[["entity", "cohort_ordinal"]], on="entity")
        joined["offset"] = joined["ordinal"] - joined["cohort_ordinal"]
        returned = joined.loc[joined["offset"].between(1, config.periods), ["entity", "offset"]].drop_duplicates()

    hits = pd.DataFrame(0, index=pd.Index(cohort["entity"], name="entity"), columns=offsets)
    for offset, group in returned.groupby("offset"):
        hits.loc[hits.index.isin(group["entity"]), int(offset)] = 1
    if config.retention_type == "rolling":
        hits = hits.loc[:, ::-1].cummax(axis=1).loc[:, ::-1]
    hits.insert(0, 0, 1)

    group_columns = [*breakdowns, "cohort_period"]
    matrix = hits.join(cohort.set_index("entity")[group_columns])
    grouped = matrix.groupby(group_columns, sort=True, dropna=False)
    returned_counts = grouped[[0, *offsets]].sum()

    cells: list[RetentionCell] = []
    for keys, counts in returned_counts.iterrows():
        keys = keys if isinstance(keys, tuple) else (keys,)
        size = int(counts[0])
        for period in [0, *offsets]:
            count = int(counts[period])
            cells.append(
                RetentionCell(
                    cohort_period=str(keys[-1]),
                    period=period,
                    entered_count=size,
                    returned_count=count,
                    rate=count / size if size else 0.0,
                    breakdown=tuple(None if pd.isna(value) else value for value in keys[:-1]),
                )
            )

    return RetentionResult(status="success", cells=tuple(cells), breakdowns=config.breakdowns)


async def execute_retention(
    config: RetentionQueryConfig,
    executor: QueryExecutor,
    *,
    tz: str = "UTC",
) -> RetentionResult:
    """Run the cohort and activity queries concurrently and compute the matrix."""

    validation = validate_retention_config(config)
    if not validation.is_valid:
        return RetentionResult(
            status="error",
            breakdowns=config.breakdowns,
            error="; ".join(issue.message for issue in validation.errors),
            validation=validation,
        )

    queries = (cohort_query(config), activity_query(config))
    cohort_rows, activity_rows = await asyncio.gather(
        *(executor.execute(query) for query in queries),
        return_exceptions=True,
    )
    for name, query, response in zip(("cohort", "activity"), queries, (cohort_rows, activity_rows)):
        if isinstance(response, BaseException):
            if not isinstance(response, Exception):
                raise response
            failure = QueryExecutionError.wrap(response, query=query)
            logger.warning("Retention %s query failed: %s", name, failure)
            return RetentionResult(
                status="error",
                breakdowns=config.breakdowns,
                error=f"Retention {name} query failed: {failure}",
                validation=validation,
            )

    result = compute_retention(config, cohort_rows, activity_rows, tz=tz)
    return RetentionResult(
        status=result.status,
        cells=result.cells,
        breakdowns=result.breakdowns,
        validation=validation,
    )


__all__ = [
    "RETENTION_PERFORMANCE_WARNING_PERIODS",
    "RetentionArguments",
    "RetentionCell",
    "RetentionQueryConfig",
    "RetentionResult",
    "RetentionStatus",
    "RetentionSummary",
    "activity_query",
    "build_retention_query",
    "clamp_periods",
    "cohort_query",
    "compute_retention",
    "date_range_from_preset",
    "execute_retention",
    "validate_retention_config",
]
