"""Sequential funnel execution.

Each step runs as an ordinary query restricted to the entities (binding-key
values) that reached the previous step, so step ``i`` can only start once step
``i - 1`` has returned.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

import pandas as pd

from ._members import cube_name_from_query
from .client import QueryExecutor
from .dates import format_timestamp, is_valid_iso_duration, parse_iso_duration, to_local_timestamps
from .errors import QueryExecutionError, ValidationResult, _IssueCollector
from .filters import validate_filters
from .query_helpers import (
    prepare_result_dataframe,
    rows_to_dataframe,
    unique_in_order,
    with_dimension,
    with_filters,
)
from .settings import DEFAULT_BINDING_KEY_LIMIT
from .types import BindingKey, FunnelConfig, FunnelStep, Query, Row, SimpleFilter

logger = logging.getLogger(__name__)

MAX_RECOMMENDED_STEPS = 5

FunnelStatus = Literal["idle", "executing", "success", "partial", "error"]


@dataclass(frozen=True)
class BindingKeyValues:
    values: tuple[Any, ...]
    total_count: int
    was_truncated: bool


@dataclass(frozen=True)
class FunnelStepResult:
    """Outcome of one funnel step within one execution."""

    step_index: int
    step_name: str
    step_id: str
    count: int = 0
    conversion_rate: float | None = None
    cumulative_conversion_rate: float = 0.0
    binding_key_values: tuple[Any, ...] = ()
    binding_key_total_count: int = 0
    execution_time: float = 0.0
    rows: tuple[Row, ...] = ()
    error: QueryExecutionError | None = None
    skipped: bool = False


@dataclass(frozen=True)
class FunnelSummary:
    total_entries: int
    total_completions: int
    overall_conversion_rate: float
    total_execution_time: float


@dataclass(frozen=True)
class FunnelChartPoint:
    name: str
    value: int
    percentage: float
    conversion_rate: float | None
    step_index: int


@dataclass(frozen=True)
class FunnelExecutionResult:
    status: FunnelStatus
    steps: tuple[FunnelStepResult, ...] = ()
    error: str | None = None
    validation: ValidationResult = field(default_factory=ValidationResult)
    executed_queries: tuple[Query, ...] = ()

    @property
    def summary(self) -> FunnelSummary:
        entries = self.steps[0].count if self.steps else 0
        completions = self.steps[-1].count if self.steps else 0
        return FunnelSummary(
            total_entries=entries,
            total_completions=completions,
            overall_conversion_rate=completions / entries if entries > 0 else 0.0,
            total_execution_time=sum(step.execution_time for step in self.steps),
        )

    def chart_data(self) -> list[FunnelChartPoint]:
        return [
            FunnelChartPoint(
                name=step.step_name,
                value=step.count,
                percentage=step.cumulative_conversion_rate * 100,
                conversion_rate=step.conversion_rate,
                step_index=step.step_index,
            )
            for step in self.steps
        ]

    def to_dataframe(self) -> pd.DataFrame:
        """Return one row per executed step indexed by step name."""

        df = pd.DataFrame(
            {
                "count": [step.count for step in self.steps],
                "conversion_rate": [
                    float("nan") if step.conversion_rate is None else step.conversion_rate
                    for step in self.steps
                ],
                "cumulative_conversion_rate": [
                    float(step.cumulative_conversion_rate) for step in self.steps
                ],
            },
            index=pd.Index([step.step_name for step in self.steps], name="step"),
        )
        return df


def binding_key_field(binding_key: BindingKey, query: Query) -> str | None:
    """Return the binding-key member for the cube ``query`` targets."""

    return binding_key.field_for(cube_name_from_query(query))


def extract_binding_key_values(
    rows: Sequence[Row], field_name: str, limit: int = DEFAULT_BINDING_KEY_LIMIT
) -> BindingKeyValues:
    """Return distinct values of ``field_name`` in order of first appearance, capped at ``limit``."""

    unique = unique_in_order(row.get(field_name) for row in rows)
    return BindingKeyValues(
        values=tuple(unique[:limit]),
        total_count=len(unique),
        was_truncated=len(unique) > limit,
    )


def calculate_conversion_rates(
    count: int, previous_count: int | None, first_count: int
) -> tuple[float | None, float]:
    """Return ``(conversion_rate, cumulative_conversion_rate)`` for a step."""

    conversion = count / previous_count if previous_count else None
    cumulative = count / first_count if first_count > 0 else 0.0
    return conversion, cumulative


def step_time_dimension(step: FunnelStep) -> str | None:
    if step.time_dimension:
        return step.time_dimension
    if step.query.time_dimensions:
        return step.query.time_dimensions[0].dimension
    return None


def build_step_query(
    step: FunnelStep,
    field_name: str,
    previous_values: Sequence[Any] | None = None,
    *,
    time_member: str | None = None,
) -> Query:
    """Return the query for ``step`` with the binding key selected.

    ``previous_values`` restricts the step to entities that reached the
    previous step.  ``time_member`` is selected as a plain dimension so rows
    carry the raw event timestamp needed for conversion windows.
    """

    query = with_dimension(step.query, field_name)
    if time_member is not None:
        query = with_dimension(query, time_member)
    if previous_values is not None:
        query = with_filters(query, SimpleFilter(member=field_name, operator="in", values=tuple(previous_values)))
    return query


def validate_funnel_config(config: FunnelConfig) -> ValidationResult:
    issues = _IssueCollector()
    steps = config.steps

    if len(steps) < 2:
        issues.error("too_few_steps", "Funnel requires at least 2 steps")
    if len(steps) > MAX_RECOMMENDED_STEPS:
        issues.warn(
            "too_many_steps",
            f"Funnels with more than {MAX_RECOMMENDED_STEPS} steps may be slow to execute",
        )
    if config.binding_key.is_empty:
        issues.error("missing_binding_key", "Binding key is required")
    if config.binding_key_limit < 1:
        issues.error("invalid_binding_key_limit", "binding_key_limit must be at least 1")
    if config.global_time_window and not is_valid_iso_duration(config.global_time_window):
        issues.error(
            "invalid_duration",
            f"Invalid global time window '{config.global_time_window}'; expected an ISO 8601 duration such as P30D",
        )

    for index, step in enumerate(steps):
        label = f"Step {index + 1} ({step.name})"
        if not step.query.is_valid():
            issues.error("empty_step_query", f"{label} must select at least one measure or dimension", index=index)
        for message in validate_filters(step.query.filters):
            issues.error("invalid_filter", f"{label}: {message}", index=index)

        if not config.binding_key.is_empty and binding_key_field(config.binding_key, step.query) is None:
            cube = cube_name_from_query(step.query)
            issues.error(
                "missing_binding_key_mapping",
                f"{label} uses cube '{cube}' which has no binding key mapping",
                index=index,
            )

        if step.time_to_convert:
            if not is_valid_iso_duration(step.time_to_convert):
                issues.error(
                    "invalid_duration",
                    f"{label} has invalid time to convert '{step.time_to_convert}'; "
                    "expected an ISO 8601 duration such as P7D",
                    index=index,
                )
            if index == 0:
                issues.warn("ignored_time_to_convert", f"{label}: time to convert is ignored on the first step", index=index)
            elif step_time_dimension(step) is None or step_time_dimension(steps[index - 1]) is None:
                issues.error(
                    "missing_time_dimension",
                    f"{label}: time to convert requires a time dimension on this and the previous step",
                    index=index,
                )
        if config.global_time_window and step_time_dimension(step) is None:
            issues.error(
                "missing_time_dimension",
                f"{label}: the global time window requires a time dimension on every step",
                index=index,
            )

    return issues.result()


def _entity_first_timestamps(rows: Sequence[Row], field_name: str, time_member: str, tz: str) -> pd.Series:
    df = rows_to_dataframe(rows, [field_name, time_member]).dropna()
    if df.empty:
        return pd.Series(dtype="datetime64[ns]")
    df = prepare_result_dataframe(df, time_member, tz)
    return df.groupby(field_name, sort=False)[time_member].min()


def _rows_within_window(
    rows: Sequence[Row],
    field_name: str,
    time_member: str,
    tz: str,
    previous_times: pd.Series,
    window: pd.DateOffset | None,
    first_times: pd.Series | None,
    global_window: pd.DateOffset | None,
) -> list[Row]:
    """Keep rows whose timestamp falls inside the entity's conversion window."""

    if not rows:
        return []
    df = rows_to_dataframe(rows, [field_name, time_member])
    timestamps = to_local_timestamps(df[time_member], tz)
    previous = df[field_name].map(previous_times)
    keep = timestamps.notna() & previous.notna() & (timestamps >= previous)
    if window is not None:
        keep &= timestamps <= previous + window
    if first_times is not None and global_window is not None:
        keep &= timestamps <= df[field_name].map(first_times) + global_window
    return [row for row, kept in zip(rows, keep.tolist()) if kept]


async def execute_funnel(
    config: FunnelConfig,
    executor: QueryExecutor,
    *,
    tz: str = "UTC",
    on_step: Callable[[FunnelStepResult], None] | None = None,
) -> FunnelExecutionResult:
    """Run every step of ``config`` in order.

    Validation failures and execution errors are returned on the result, never
    raised.  A failing step stops the funnel; the result is ``partial`` when an
    earlier step succeeded.
    """

    validation = validate_funnel_config(config)
    if not validation.is_valid:
        return FunnelExecutionResult(
            status="error",
            error="; ".join(issue.message for issue in validation.errors),
            validation=validation,
        )

    global_window = parse_iso_duration(config.global_time_window) if config.global_time_window else None
    uses_time = global_window is not None or any(step.time_to_convert for step in config.steps[1:])

    results: list[FunnelStepResult] = []
    executed: list[Query] = []
    previous_values: tuple[Any, ...] | None = None
    previous_times: pd.Series | None = None
    first_times: pd.Series | None = None
    status: FunnelStatus = "success"
    error: str | None = None

    for index, step in enumerate(config.steps):
        field_name = binding_key_field(config.binding_key, step.query)
        assert field_name is not None  # guaranteed by validate_funnel_config
        first_count = results[0].count if results else 0
        previous_count = results[-1].count if results else None

        if index > 0 and not previous_values:
            logger.debug("Skipping funnel step %s: no entities reached the previous step", step.name)
            result = FunnelStepResult(
                step_index=index,
                step_name=step.name,
                step_id=step.id,
                conversion_rate=calculate_conversion_rates(0, previous_count, first_count)[0],
                skipped=True,
            )
            results.append(result)
            if on_step is not None:
                on_step(result)
            continue

        time_member = step_time_dimension(step) if uses_time else None
        window = parse_iso_duration(step.time_to_convert) if index > 0 and step.time_to_convert else None
        query = build_step_query(
            step,
            field_name,
            previous_values if index > 0 else None,
            time_member=time_member,
        )
        if window is not None and time_member and previous_times is not None and not previous_times.empty:
            query = with_filters(
                query,
                SimpleFilter(
                    member=time_member,
                    operator="inDateRange",
                    values=(
                        format_timestamp(previous_times.min()),
                        format_timestamp(previous_times.max() + window),
                    ),
                ),
            )
        executed.append(query)

        started = time.perf_counter()
        try:
            rows = await executor.execute(query)
        except Exception as exc:
            failure = QueryExecutionError.wrap(exc, query=query)
            logger.warning("Funnel step %s (%s) failed: %s", index + 1, step.name, failure)
            result = FunnelStepResult(
                step_index=index,
                step_name=step.name,
                step_id=step.id,
                execution_time=(time.perf_counter() - started) * 1000,
                error=failure,
            )
            results.append(result)
            if on_step is not None:
                on_step(result)
            status = "partial" if index > 0 else "error"
            error = f"Step {index + 1} ({step.name}) failed: {failure}"
            break
        elapsed = (time.perf_counter() - started) * 1000

        if index > 0 and time_member and previous_times is not None and (window is not None or global_window is not None):
            rows = _rows_within_window(
                rows, field_name, time_member, tz, previous_times, window, first_times, global_window
            )

        extracted = extract_binding_key_values(rows, field_name, config.binding_key_limit)
        if extracted.was_truncated:
            logger.debug(
                "Funnel step %s: %s entities capped at %s", step.name, extracted.total_count, config.binding_key_limit
            )
        count = extracted.total_count if config.count_unique else len(rows)
        if index == 0:
            first_count = count
        conversion, cumulative = calculate_conversion_rates(count, previous_count, first_count)

        result = FunnelStepResult(
            step_index=index,
            step_name=step.name,
            step_id=step.id,
            count=count,
            conversion_rate=conversion if index > 0 else None,
            cumulative_conversion_rate=cumulative,
            binding_key_values=extracted.values,
            binding_key_total_count=extracted.total_count,
            execution_time=elapsed,
            rows=tuple(rows),
        )
        results.append(result)
        if on_step is not None:
            on_step(result)

        previous_values = extracted.values
        previous_times = _entity_first_timestamps(rows, field_name, time_member, tz) if time_member else None
        if index == 0:
            first_times = previous_times

    return FunnelExecutionResult(
        status=status,
        steps=tuple(results),
        error=error,
        validation=validation,
        executed_queries=tuple(executed),
    )


__all__ = [
    "BindingKeyValues",
    "FunnelChartPoint",
    "FunnelExecutionResult",
    "FunnelStatus",
    "FunnelStepResult",
    "FunnelSummary",
    "MAX_RECOMMENDED_STEPS",
    "binding_key_field",
    "build_step_query",
    "calculate_conversion_rates",
    "execute_funnel",
    "extract_binding_key_values",
    "step_time_dimension",
    "validate_funnel_config",
]
