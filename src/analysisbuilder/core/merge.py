"""Run several queries side by side and combine their rows."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

import pandas as pd

from ._members import short_name
from .client import QueryExecutor
from .errors import QueryExecutionError, ValidationResult, _IssueCollector
from .filters import iter_simple_filters
from .query_builder import validate_query
from .query_helpers import dataframe_to_rows, rows_to_dataframe, unique_in_order
from .types import MergeStrategy, MultiQueryConfig, Query, Row

logger = logging.getLogger(__name__)

QUERY_INDEX_FIELD = "__queryIndex"
QUERY_LABEL_FIELD = "__queryLabel"

MultiQueryStatus = Literal["success", "partial", "error"]


def is_multi_query_mode(queries: Sequence[Query]) -> bool:
    """Multi-query mode needs at least two individually valid queries."""

    return sum(1 for query in queries if query.is_valid()) >= 2


def default_query_label(index: int) -> str:
    return f"Query {index + 1}"


def generate_query_label(query: Query, index: int) -> str:
    """Suggest a label from the query's first measure."""

    if query.measures:
        return short_name(query.measures[0])
    return default_query_label(index)


def resolve_query_labels(config: MultiQueryConfig) -> list[str]:
    labels = list(config.query_labels)
    return [
        labels[index] if index < len(labels) and labels[index] else default_query_label(index)
        for index in range(len(config.queries))
    ]


def _time_dimension_granularities(query: Query) -> dict[str, str | None]:
    return {td.dimension: td.granularity for td in query.time_dimensions}


def _date_ranges(query: Query) -> set[tuple[str, tuple[str, ...] | str]]:
    ranges: set[tuple[str, tuple[str, ...] | str]] = set()
    for td in query.time_dimensions:
        if td.date_range is not None:
            ranges.add((td.dimension, td.date_range))
    for _, node in iter_simple_filters(query.filters):
        if node.operator == "inDateRange":
            ranges.add((node.member, node.date_range if node.date_range is not None else node.values))
    return ranges


def colliding_measures(queries: Sequence[Query]) -> set[str]:
    counts = Counter(measure for query in queries for measure in dict.fromkeys(query.measures))
    return {measure for measure, count in counts.items() if count > 1}


def validate_merge_key(queries: Sequence[Query], merge_keys: Sequence[str]) -> ValidationResult:
    """Every merge key must be selected by every query, at matching granularity."""

    issues = _IssueCollector()
    if not merge_keys:
        issues.error("missing_merge_key", "Merge strategy requires at least one merge key")
        return issues.result()

    time_keys = {
        key for key in merge_keys for query in queries if key in _time_dimension_granularities(query)
    }
    for key in merge_keys:
        granularities: dict[int, str | None] = {}
        for index, query in enumerate(queries):
            granularity_by_member = _time_dimension_granularities(query)
            if key in granularity_by_member:
                granularities[index] = granularity_by_member[key]
            elif key not in query.dimensions:
                if key in time_keys:
                    issues.error(
                        "missing_time_dimension",
                        f"Query {index + 1} is missing time dimension '{key}' used as a merge key",
                        index=index,
                    )
                else:
                    issues.error(
                        "missing_merge_key",
                        f"Query {index + 1} does not include merge key '{key}'",
                        index=index,
                    )
        if len(set(granularities.values())) > 1:
            details = [f"Query {index + 1}: {value}" for index, value in granularities.items()]
            issues.error(
                "granularity_mismatch",
                f"Time dimension '{key}' uses different granularities across queries",
                details=details,
            )
    return issues.result()


def validate_multi_query_config(config: MultiQueryConfig) -> ValidationResult:
    issues = _IssueCollector()
    if not is_multi_query_mode(config.queries):
        issues.error("too_few_queries", "Multi-query mode requires at least 2 valid queries")
    for index, query in enumerate(config.queries):
        for issue in validate_query(query).errors:
            issues.error(issue.type, f"Query {index + 1}: {issue.message}", index=index)

    result = issues.result()
    if config.merge_strategy == "merge":
        result = result.merge(validate_merge_key(config.queries, config.merge_keys))

    warnings = _IssueCollector()
    for measure in sorted(colliding_measures(config.queries)):
        warnings.warn(
            "measure_collision",
            f"Measure '{measure}' appears in more than one query",
            details=[short_name(measure)],
        )
    ranges = [_date_ranges(query) for query in config.queries if query.is_valid()]
    if any(r != ranges[0] for r in ranges[1:]):
        warnings.warn("asymmetric_date_range", "Queries use different date ranges")
    return result.merge(warnings.result())


def merge_results_concat(result_sets: Sequence[Sequence[Row]], labels: Sequence[str]) -> list[Row]:
    """Union all rows, tagging each with the index and label of its query."""

    merged: list[Row] = []
    for index, rows in enumerate(result_sets):
        for row in rows:
            merged.append({**row, QUERY_INDEX_FIELD: index, QUERY_LABEL_FIELD: labels[index]})
    return merged


def merge_results_by_key(
    result_sets: Sequence[Sequence[Row]],
    queries: Sequence[Query],
    merge_keys: Sequence[str],
    labels: Sequence[str],
) -> list[Row]:
    """Outer-join result sets on ``merge_keys``.

    Measures keep their names unless the same measure is selected by several
    queries, in which case each copy becomes ``"measure (label)"``.  Duplicate
    keys within one result set keep their first row.  Rows are ordered by the
    first merge key.
    """

    keys = list(merge_keys)
    collisions = colliding_measures(queries)
    merged: pd.DataFrame | None = None

    for index, (rows, query) in enumerate(zip(result_sets, queries)):
        measures = list(dict.fromkeys(query.measures))
        columns = unique_in_order([*keys, *measures])
        if index == 0:
            columns += [name for name in unique_in_order(k for row in rows for k in row) if name not in columns]
        # object columns keep integer measures intact when the join leaves gaps
        frame = rows_to_dataframe(rows, columns).astype(object).drop_duplicates(subset=keys, keep="first")
        frame = frame.rename(
            columns={measure: f"{measure} ({labels[index]})" for measure in measures if measure in collisions}
        )
        merged = frame if merged is None else merged.merge(frame, on=keys, how="outer", sort=False)

    if merged is None:
        return []
    merged = merged.sort_values(by=keys[0], key=lambda s: s.astype(str), kind="stable").reset_index(drop=True)
    return dataframe_to_rows(merged)


def merge_query_results(
    result_sets: Sequence[Sequence[Row]],
    queries: Sequence[Query],
    strategy: MergeStrategy,
    merge_keys: Sequence[str] = (),
    labels: Sequence[str] | None = None,
) -> list[Row]:
    if len(result_sets) == 1:
        return list(result_sets[0])
    resolved = list(labels) if labels else [default_query_label(i) for i in range(len(result_sets))]
    if strategy == "merge" and merge_keys:
        return merge_results_by_key(result_sets, queries, merge_keys, resolved)
    return merge_results_concat(result_sets, resolved)


@dataclass(frozen=True)
class QueryResultSet:
    """Rows or error for one query of a (multi-)query execution."""

    index: int
    label: str
    query: Query
    rows: tuple[Row, ...] = ()
    error: QueryExecutionError | None = None
    execution_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class MultiQueryResult:
    status: MultiQueryStatus
    rows: tuple[Row, ...] = ()
    results: tuple[QueryResultSet, ...] = ()
    error: str | None = None
    validation: ValidationResult = field(default_factory=ValidationResult)

    def to_dataframe(self) -> pd.DataFrame:
        return rows_to_dataframe(self.rows)


async def _run_query(executor: QueryExecutor, query: Query, index: int, label: str) -> QueryResultSet:
    started = time.perf_counter()
    try:
        rows = await executor.execute(query)
    except Exception as exc:
        failure = QueryExecutionError.wrap(exc, query=query)
        logger.warning("%s failed: %s", label, failure)
        return QueryResultSet(
            index=index,
            label=label,
            query=query,
            error=failure,
            execution_time=(time.perf_counter() - started) * 1000,
        )
    return QueryResultSet(
        index=index,
        label=label,
        query=query,
        rows=tuple(rows),
        execution_time=(time.perf_counter() - started) * 1000,
    )


async def execute_query(query: Query, executor: QueryExecutor) -> MultiQueryResult:
    """Run a single query; its rows are returned untouched."""

    validation = validate_query(query)
    if not validation.is_valid:
        return MultiQueryResult(
            status="error",
            error="; ".join(issue.message for issue in validation.errors),
            validation=validation,
        )
    result = await _run_query(executor, query, 0, default_query_label(0))
    if not result.ok:
        return MultiQueryResult(status="error", results=(result,), error=str(result.error), validation=validation)
    return MultiQueryResult(status="success", rows=result.rows, results=(result,), validation=validation)


async def execute_multi_query(config: MultiQueryConfig, executor: QueryExecutor) -> MultiQueryResult:
    """Run every query concurrently and merge the rows of those that succeeded."""

    validation = validate_multi_query_config(config)
    if not validation.is_valid:
        return MultiQueryResult(
            status="error",
            error="; ".join(issue.message for issue in validation.errors),
            validation=validation,
        )

    labels = resolve_query_labels(config)
    results = await asyncio.gather(
        *(_run_query(executor, query, index, labels[index]) for index, query in enumerate(config.queries))
    )
    succeeded = [result for result in results if result.ok]
    failed = [result for result in results if not result.ok]

    if not succeeded:
        return MultiQueryResult(
            status="error",
            results=tuple(results),
            error="; ".join(f"{r.label}: {r.error}" for r in failed),
            validation=validation,
        )

    rows = merge_query_results(
        [result.rows for result in succeeded],
        [result.query for result in succeeded],
        config.merge_strategy,
        config.merge_keys,
        [result.label for result in succeeded],
    )
    return MultiQueryResult(
        status="partial" if failed else "success",
        rows=tuple(rows),
        results=tuple(results),
        error="; ".join(f"{r.label}: {r.error}" for r in failed) or None,
        validation=validation,
    )


__all__ = [
    "MultiQueryResult",
    "MultiQueryStatus",
    "QUERY_INDEX_FIELD",
    "QUERY_LABEL_FIELD",
    "QueryResultSet",
    "colliding_measures",
    "default_query_label",
    "execute_multi_query",
    "execute_query",
    "generate_query_label",
    "is_multi_query_mode",
    "merge_query_results",
    "merge_results_by_key",
    "merge_results_concat",
    "resolve_query_labels",
    "validate_merge_key",
    "validate_multi_query_config",
]
