"""Build semantic-layer queries from metric, breakdown and filter selections."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import replace
from datetime import date

from .dates import calculate_prior_period, format_date, resolve_date_range
from .errors import ValidationResult, _IssueCollector
from .filters import find_date_filter, remove_filter_at_path, validate_filters
from .types import (
    BreakdownItem,
    FilterNode,
    MetricItem,
    Query,
    SimpleFilter,
    SortDirection,
    TimeDimension,
)

logger = logging.getLogger(__name__)

CompareDateRange = tuple[tuple[str, str], tuple[str, str]]


def is_valid_query(query: Query | None) -> bool:
    """A query is executable once it selects at least one member."""

    return query is not None and query.is_valid()


def _date_filter_range(filter_: SimpleFilter, today: date | None) -> tuple[date, date] | None:
    if filter_.date_range is not None:
        return resolve_date_range(filter_.date_range, today=today)
    if len(filter_.values) == 2:
        return resolve_date_range(filter_.values, today=today)
    if len(filter_.values) == 1 and isinstance(filter_.values[0], str):
        return resolve_date_range(filter_.values[0], today=today)
    return None


def build_compare_date_range(
    member: str,
    filters: Sequence[FilterNode],
    *,
    today: date | None = None,
) -> tuple[CompareDateRange, tuple[FilterNode, ...]] | None:
    """Return the current/prior range pair for ``member`` and the filters without its date filter.

    ``None`` when there is no resolvable ``inDateRange`` filter on ``member``.
    """

    found = find_date_filter(filters, member)
    if found is None:
        return None
    path, date_filter = found
    current = _date_filter_range(date_filter, today)
    if current is None:
        logger.debug("Date filter on %s is not resolvable; skipping comparison", member)
        return None
    start, end = current
    prior_start, prior_end = calculate_prior_period(start, end)
    compare = (
        (format_date(start), format_date(end)),
        (format_date(prior_start), format_date(prior_end)),
    )
    return compare, remove_filter_at_path(filters, path)


def toggle_breakdown_comparison(
    breakdowns: Sequence[BreakdownItem], breakdown_id: str
) -> tuple[BreakdownItem, ...]:
    """Flip comparison on ``breakdown_id``; enabling it disables it everywhere else."""

    target = next((item for item in breakdowns if item.id == breakdown_id), None)
    if target is None or not target.is_time_dimension:
        return tuple(breakdowns)
    enable = not target.enable_comparison
    updated = []
    for item in breakdowns:
        if item.id == breakdown_id:
            updated.append(replace(item, enable_comparison=enable))
        elif enable and item.is_time_dimension and item.enable_comparison:
            updated.append(replace(item, enable_comparison=False))
        else:
            updated.append(item)
    return tuple(updated)


def build_query(
    metrics: Sequence[MetricItem],
    breakdowns: Sequence[BreakdownItem],
    filters: Sequence[FilterNode] = (),
    order: Mapping[str, SortDirection] | None = None,
    *,
    limit: int | None = None,
    today: date | None = None,
) -> Query:
    """Return the :class:`Query` for the current selections.

    Time breakdowns become time dimensions.  When a time breakdown has
    comparison enabled and the filters hold an ``inDateRange`` filter on the
    same member, that filter is moved into the time dimension's
    ``compare_date_range`` alongside the prior period.
    """

    remaining_filters = tuple(filters)
    dimensions: list[str] = []
    time_dimensions: list[TimeDimension] = []
    comparison_used = False

    for item in breakdowns:
        if not item.field:
            continue
        if not item.is_time_dimension:
            if item.field not in dimensions:
                dimensions.append(item.field)
            continue

        compare_date_range = None
        if item.enable_comparison and not comparison_used:
            comparison = build_compare_date_range(item.field, remaining_filters, today=today)
            if comparison is not None:
                compare_date_range, remaining_filters = comparison
                comparison_used = True
        time_dimensions.append(
            TimeDimension(
                dimension=item.field,
                granularity=item.granularity or "day",
                compare_date_range=compare_date_range,
            )
        )

    measures = list(dict.fromkeys(metric.field for metric in metrics if metric.field))
    return Query(
        measures=tuple(measures),
        dimensions=tuple(dimensions),
        time_dimensions=tuple(time_dimensions),
        filters=remaining_filters,
        order=tuple((order or {}).items()),
        limit=limit,
    )


def items_from_query(query: Query) -> tuple[tuple[MetricItem, ...], tuple[BreakdownItem, ...]]:
    """Return metric and breakdown items describing an existing query."""

    metrics = tuple(
        MetricItem(id=f"metric-{index}", field=member) for index, member in enumerate(query.measures)
    )
    breakdowns = [
        BreakdownItem(id=f"breakdown-{index}", field=member)
        for index, member in enumerate(query.dimensions)
    ]
    for index, td in enumerate(query.time_dimensions, start=len(breakdowns)):
        breakdowns.append(
            BreakdownItem(
                id=f"breakdown-{index}",
                field=td.dimension,
                is_time_dimension=True,
                granularity=td.granularity or "day",
                enable_comparison=td.compare_date_range is not None,
            )
        )
    return metrics, tuple(breakdowns)


def validate_query(query: Query) -> ValidationResult:
    issues = _IssueCollector()
    if not query.is_valid():
        issues.error("empty_query", "Query must select at least one measure or dimension")
    for message in validate_filters(query.filters):
        issues.error("invalid_filter", message)
    if query.limit is not None and query.limit < 1:
        issues.error("invalid_limit", "limit must be at least 1")
    return issues.result()


__all__ = [
    "CompareDateRange",
    "build_compare_date_range",
    "build_query",
    "is_valid_query",
    "items_from_query",
    "toggle_breakdown_comparison",
    "validate_query",
]
