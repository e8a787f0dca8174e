"""Public data structures shared by the query builder and the analysis engines."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Union

__all__ = [
    "AnalysisType",
    "BindingKey",
    "BindingKeyMapping",
    "BreakdownItem",
    "DateRange",
    "FilterNode",
    "FilterOperator",
    "FlowOutputMode",
    "FlowStartingStep",
    "FunnelConfig",
    "FunnelStep",
    "Granularity",
    "GroupFilter",
    "GroupType",
    "JoinStrategy",
    "MergeStrategy",
    "MetricItem",
    "MultiQueryConfig",
    "Query",
    "RetentionGranularity",
    "RetentionType",
    "Row",
    "SimpleFilter",
    "SortDirection",
    "TimeDimension",
    "filter_node_from_dict",
]

Row = dict[str, Any]

FilterOperator = Literal[
    "equals",
    "notEquals",
    "contains",
    "notContains",
    "startsWith",
    "endsWith",
    "gt",
    "gte",
    "lt",
    "lte",
    "set",
    "notSet",
    "in",
    "notIn",
    "inDateRange",
    "notInDateRange",
    "beforeDate",
    "afterDate",
]
GroupType = Literal["and", "or"]
Granularity = Literal["second", "minute", "hour", "day", "week", "month", "quarter", "year"]
SortDirection = Literal["asc", "desc"]
MergeStrategy = Literal["concat", "merge"]
FlowOutputMode = Literal["sankey", "sunburst"]
JoinStrategy = Literal["auto", "lateral", "window"]
RetentionGranularity = Literal["day", "week", "month"]
RetentionType = Literal["classic", "rolling"]
AnalysisType = Literal["query", "funnel", "flow", "retention"]


def _as_tuple(value: Any) -> tuple[Any, ...]:
    if value is None:
        return tuple()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class SimpleFilter:
    """A single ``member operator values`` predicate."""

    member: str
    operator: FilterOperator
    values: tuple[Any, ...] = ()
    date_range: str | tuple[str, str] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", _as_tuple(self.values))
        if self.date_range is not None and not isinstance(self.date_range, str):
            object.__setattr__(self, "date_range", tuple(self.date_range))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "member": self.member,
            "operator": self.operator,
            "values": list(self.values),
        }
        if self.date_range is not None:
            payload["dateRange"] = (
                self.date_range if isinstance(self.date_range, str) else list(self.date_range)
            )
        return payload


@dataclass(frozen=True)
class GroupFilter:
    """An ``and``/``or`` group of nested filter nodes."""

    type: GroupType
    filters: tuple[FilterNode, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "filters", tuple(self.filters))

    def to_dict(self) -> dict[str, Any]:
        return {self.type: [node.to_dict() for node in self.filters]}


FilterNode = Union[SimpleFilter, GroupFilter]


def filter_node_from_dict(data: Mapping[str, Any]) -> FilterNode:
    """Parse a filter node from either the server or the client-side shape.

    Groups may be written as ``{"and": [...]}``/``{"or": [...]}`` or as
    ``{"type": "and", "filters": [...]}``.
    """

    for group_type in ("and", "or"):
        if group_type in data:
            return GroupFilter(
                type=group_type,
                filters=tuple(filter_node_from_dict(child) for child in data[group_type]),
            )
    if "type" in data and "filters" in data:
        return GroupFilter(
            type=data["type"],
            filters=tuple(filter_node_from_dict(child) for child in data["filters"]),
        )
    date_range = data.get("dateRange")
    return SimpleFilter(
        member=data["member"],
        operator=data["operator"],
        values=tuple(data.get("values") or ()),
        date_range=date_range if date_range is None or isinstance(date_range, str) else tuple(date_range),
    )


@dataclass(frozen=True)
class TimeDimension:
    """A time dimension bucketed by ``granularity``."""

    dimension: str
    granularity: Granularity | None = "day"
    date_range: str | tuple[str, str] | None = None
    compare_date_range: tuple[tuple[str, str], ...] | None = None

    def __post_init__(self) -> None:
        if self.date_range is not None and not isinstance(self.date_range, str):
            object.__setattr__(self, "date_range", tuple(self.date_range))
        if self.compare_date_range is not None:
            object.__setattr__(
                self,
                "compare_date_range",
                tuple(tuple(pair) for pair in self.compare_date_range),
            )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"dimension": self.dimension}
        if self.granularity is not None:
            payload["granularity"] = self.granularity
        if self.date_range is not None:
            payload["dateRange"] = (
                self.date_range if isinstance(self.date_range, str) else list(self.date_range)
            )
        if self.compare_date_range is not None:
            payload["compareDateRange"] = [list(pair) for pair in self.compare_date_range]
        return payload


@dataclass(frozen=True)
class Query:
    """Aggregation query against the semantic layer.

    Sequences are stored as tuples so a query can be compared and reused as a
    cache or de-duplication key. ``to_dict`` produces the JSON shape the
    semantic-layer API expects.
    """

    measures: tuple[str, ...] = ()
    dimensions: tuple[str, ...] = ()
    time_dimensions: tuple[TimeDimension, ...] = ()
    filters: tuple[FilterNode, ...] = ()
    order: tuple[tuple[str, SortDirection], ...] = ()
    limit: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "measures", _as_tuple(self.measures))
        object.__setattr__(self, "dimensions", _as_tuple(self.dimensions))
        object.__setattr__(self, "time_dimensions", tuple(self.time_dimensions))
        object.__setattr__(self, "filters", tuple(self.filters))
        order = self.order.items() if isinstance(self.order, Mapping) else self.order
        object.__setattr__(self, "order", tuple(tuple(item) for item in order))

    def is_valid(self) -> bool:
        return bool(self.measures or self.dimensions or self.time_dimensions)

    def members(self) -> list[str]:
        """Return measures, dimensions and time dimensions in declaration order."""

        return [
            *self.measures,
            *self.dimensions,
            *(td.dimension for td in self.time_dimensions),
        ]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.measures:
            payload["measures"] = list(self.measures)
        if self.dimensions:
            payload["dimensions"] = list(self.dimensions)
        if self.time_dimensions:
            payload["timeDimensions"] = [td.to_dict() for td in self.time_dimensions]
        if self.filters:
            payload["filters"] = [node.to_dict() for node in self.filters]
        if self.order:
            payload["order"] = dict(self.order)
        if self.limit is not None:
            payload["limit"] = self.limit
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Query:
        time_dimensions = tuple(
            TimeDimension(
                dimension=item["dimension"],
                granularity=item.get("granularity"),
                date_range=item.get("dateRange"),
                compare_date_range=item.get("compareDateRange"),
            )
            for item in data.get("timeDimensions") or ()
        )
        return cls(
            measures=tuple(data.get("measures") or ()),
            dimensions=tuple(data.get("dimensions") or ()),
            time_dimensions=time_dimensions,
            filters=tuple(filter_node_from_dict(item) for item in data.get("filters") or ()),
            order=tuple((data.get("order") or {}).items()),
            limit=data.get("limit"),
        )


@dataclass(frozen=True)
class MetricItem:
    id: str
    field: str
    label: str | None = None


@dataclass(frozen=True)
class BreakdownItem:
    id: str
    field: str
    is_time_dimension: bool = False
    granularity: Granularity = "day"
    enable_comparison: bool = False


@dataclass(frozen=True)
class BindingKeyMapping:
    cube: str
    dimension: str


@dataclass(frozen=True)
class BindingKey:
    """Dimension identifying the entity followed through an analysis.

    ``dimension`` is either a single member name or, for analyses spanning
    several cubes, one mapping per cube.
    """

    dimension: str | tuple[BindingKeyMapping, ...]

    def __post_init__(self) -> None:
        if not isinstance(self.dimension, str):
            object.__setattr__(self, "dimension", tuple(self.dimension))

    @property
    def is_cross_cube(self) -> bool:
        return not isinstance(self.dimension, str)

    @property
    def is_empty(self) -> bool:
        return not self.dimension

    def field_for(self, cube: str | None) -> str | None:
        """Return the binding-key member to use for ``cube``."""

        if isinstance(self.dimension, str):
            return self.dimension or None
        for mapping in self.dimension:
            if mapping.cube == cube:
                return mapping.dimension
        return None

    def to_dict(self) -> str | list[dict[str, str]]:
        if isinstance(self.dimension, str):
            return self.dimension
        return [{"cube": m.cube, "dimension": m.dimension} for m in self.dimension]


@dataclass(frozen=True)
class FunnelStep:
    """A single step in a funnel.

    ``time_to_convert`` is an ISO-8601 duration (``P7D``, ``PT1H``) bounding
    how long after the previous step an entity may reach this one.
    """

    id: str
    name: str
    query: Query
    time_to_convert: str | None = None
    time_dimension: str | None = None


@dataclass(frozen=True)
class FunnelConfig:
    binding_key: BindingKey
    steps: tuple[FunnelStep, ...]
    count_unique: bool = True
    binding_key_limit: int = 500
    global_time_window: str | None = None
    id: str = "funnel"
    name: str = "Funnel"

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))


@dataclass(frozen=True)
class FlowStartingStep:
    name: str = "Starting Step"
    filters: tuple[FilterNode, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "filters", tuple(self.filters))


@dataclass(frozen=True)
class DateRange:
    """Inclusive ``YYYY-MM-DD`` date range."""

    start: str
    end: str

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class MultiQueryConfig:
    queries: tuple[Query, ...]
    merge_strategy: MergeStrategy = "concat"
    merge_keys: tuple[str, ...] = ()
    query_labels: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "queries", tuple(self.queries))
        object.__setattr__(self, "merge_keys", _as_tuple(self.merge_keys))
        object.__setattr__(self, "query_labels", _as_tuple(self.query_labels))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "queries": [query.to_dict() for query in self.queries],
            "mergeStrategy": self.merge_strategy,
        }
        if self.merge_keys:
            payload["mergeKeys"] = list(self.merge_keys)
        if self.query_labels:
            payload["queryLabels"] = list(self.query_labels)
        return payload
