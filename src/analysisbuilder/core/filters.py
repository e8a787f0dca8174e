"""Operations on the recursive filter tree.

Every function takes the current tuple of top-level nodes and returns a new
one; nodes are immutable so edits rebuild the path from the root down to the
edited node.  A *path* is a sequence of child indices, ``()`` being the root.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import replace
from typing import Any

from .types import FilterNode, GroupFilter, SimpleFilter, filter_node_from_dict

FilterPath = Sequence[int]


def _rebuild(
    filters: tuple[FilterNode, ...],
    path: FilterPath,
    transform: Callable[[FilterNode], FilterNode | None],
) -> tuple[FilterNode, ...]:
    """Return ``filters`` with the node at ``path`` replaced by ``transform(node)``.

    A ``None`` from ``transform`` removes the node, and a group whose last
    child was removed is removed with it.
    """

    index, rest = path[0], path[1:]
    if not 0 <= index < len(filters):
        raise IndexError(f"filter path {list(path)} is out of range")
    node = filters[index]
    if rest:
        if not isinstance(node, GroupFilter):
            raise ValueError(f"filter path {list(path)} descends into a simple filter")
        children = _rebuild(node.filters, rest, transform)
        new_node: FilterNode | None = replace(node, filters=children) if children else None
    else:
        new_node = transform(node)
    if new_node is None:
        return filters[:index] + filters[index + 1 :]
    return filters[:index] + (new_node,) + filters[index + 1 :]


def _unwrap_single_child_groups(filters: tuple[FilterNode, ...]) -> tuple[FilterNode, ...]:
    return tuple(
        node.filters[0] if isinstance(node, GroupFilter) and len(node.filters) == 1 else node
        for node in filters
    )


def _require_group(node: FilterNode) -> GroupFilter:
    if not isinstance(node, GroupFilter):
        raise ValueError("filter path must address a filter group")
    return node


def get_filter_at_path(filters: Sequence[FilterNode], path: FilterPath) -> FilterNode:
    nodes = tuple(filters)
    node: FilterNode | None = None
    for index in path:
        if not 0 <= index < len(nodes):
            raise IndexError(f"filter path {list(path)} is out of range")
        node = nodes[index]
        nodes = node.filters if isinstance(node, GroupFilter) else ()
    if node is None:
        raise IndexError("the root path does not address a single filter")
    return node


def add_filter_at_path(
    filters: Sequence[FilterNode], path: FilterPath, new_filter: FilterNode
) -> tuple[FilterNode, ...]:
    """Insert ``new_filter`` into the group at ``path``.

    At the root the tree is kept to a single implicit group: an empty tree
    becomes ``[new]``, a lone simple filter is wrapped with the new one in an
    ``and`` group, a lone group receives the new filter, and several siblings
    are wrapped together with it in an ``and`` group.
    """

    nodes = tuple(filters)
    if not path:
        if not nodes:
            return (new_filter,)
        if len(nodes) == 1:
            only = nodes[0]
            if isinstance(only, GroupFilter):
                return (replace(only, filters=only.filters + (new_filter,)),)
            return (GroupFilter(type="and", filters=(only, new_filter)),)
        return (GroupFilter(type="and", filters=nodes + (new_filter,)),)

    def append(node: FilterNode) -> FilterNode:
        group = _require_group(node)
        return replace(group, filters=group.filters + (new_filter,))

    return _rebuild(nodes, path, append)


def remove_filter_at_path(filters: Sequence[FilterNode], path: FilterPath) -> tuple[FilterNode, ...]:
    """Remove the node at ``path``, pruning groups that become empty."""

    if not path:
        return tuple()
    return _unwrap_single_child_groups(_rebuild(tuple(filters), path, lambda node: None))


def remove_top_level_filter(filters: Sequence[FilterNode], index: int) -> tuple[FilterNode, ...]:
    return remove_filter_at_path(filters, (index,))


def update_filter_at_path(
    filters: Sequence[FilterNode], path: FilterPath, new_filter: FilterNode
) -> tuple[FilterNode, ...]:
    if not path:
        raise IndexError("the root path does not address a single filter")
    return _rebuild(tuple(filters), path, lambda node: new_filter)


def toggle_group_type(filters: Sequence[FilterNode], path: FilterPath) -> tuple[FilterNode, ...]:
    """Flip the group at ``path`` between ``and`` and ``or``."""

    def toggle(node: FilterNode) -> FilterNode:
        group = _require_group(node)
        return replace(group, type="or" if group.type == "and" else "and")

    if not path:
        raise IndexError("the root path does not address a filter group")
    return _rebuild(tuple(filters), path, toggle)


def iter_simple_filters(
    filters: Sequence[FilterNode], _prefix: tuple[int, ...] = ()
) -> Iterator[tuple[tuple[int, ...], SimpleFilter]]:
    """Yield ``(path, filter)`` for every simple filter, depth first."""

    for index, node in enumerate(filters):
        path = _prefix + (index,)
        if isinstance(node, GroupFilter):
            yield from iter_simple_filters(node.filters, path)
        else:
            yield path, node


def find_date_filter(
    filters: Sequence[FilterNode], member: str
) -> tuple[tuple[int, ...], SimpleFilter] | None:
    """Return the first ``inDateRange`` filter on ``member`` and its path."""

    for path, node in iter_simple_filters(filters):
        if node.member == member and node.operator == "inDateRange":
            return path, node
    return None


def remove_date_filter(filters: Sequence[FilterNode], member: str) -> tuple[FilterNode, ...]:
    found = find_date_filter(filters, member)
    if found is None:
        return tuple(filters)
    return remove_filter_at_path(filters, found[0])


def filter_members(filters: Sequence[FilterNode]) -> list[str]:
    members: list[str] = []
    for _, node in iter_simple_filters(filters):
        if node.member not in members:
            members.append(node.member)
    return members


def count_filters(filters: Sequence[FilterNode]) -> int:
    return sum(1 for _ in iter_simple_filters(filters))


def filters_to_server(filters: Sequence[FilterNode]) -> list[dict[str, Any]]:
    """Convert nodes to the ``{"and": [...]}``/``{"or": [...]}`` wire shape."""

    return [node.to_dict() for node in filters]


def filters_from_server(data: Sequence[Mapping[str, Any]]) -> tuple[FilterNode, ...]:
    return tuple(filter_node_from_dict(item) for item in data)


_LIST_OPERATORS = {"in", "notIn"}
_SCALAR_OPERATORS = {"gt", "gte", "lt", "lte", "beforeDate", "afterDate"}
_NO_VALUE_OPERATORS = {"set", "notSet"}
_DATE_RANGE_OPERATORS = {"inDateRange", "notInDateRange"}


def filter_value_error(filter_: SimpleFilter) -> str | None:
    """Return why ``filter_`` carries the wrong number of values, if it does."""

    op = filter_.operator
    values = filter_.values
    if op in _NO_VALUE_OPERATORS:
        return None if not values else f"Operator '{op}' does not take values"
    if op in _DATE_RANGE_OPERATORS:
        if filter_.date_range is not None or len(values) == 2:
            return None
        return f"Operator '{op}' requires a date range"
    if op in _SCALAR_OPERATORS:
        return None if len(values) == 1 else "Comparison operators require exactly one value"
    if op in _LIST_OPERATORS:
        return None if values else "IN style operators require at least one value"
    return None if values else f"Operator '{op}' requires at least one value"


def validate_filters(filters: Sequence[FilterNode]) -> list[str]:
    """Return a message for every malformed filter or empty group."""

    messages: list[str] = []
    for node in filters:
        if isinstance(node, GroupFilter):
            if not node.filters:
                messages.append(f"Empty '{node.type}' filter group")
            messages.extend(validate_filters(node.filters))
            continue
        problem = filter_value_error(node)
        if problem is not None:
            messages.append(f"{node.member}: {problem}")
    return messages


__all__ = [
    "FilterPath",
    "add_filter_at_path",
    "count_filters",
    "filter_members",
    "filter_value_error",
    "filters_from_server",
    "filters_to_server",
    "find_date_filter",
    "get_filter_at_path",
    "iter_simple_filters",
    "remove_date_filter",
    "remove_filter_at_path",
    "remove_top_level_filter",
    "toggle_group_type",
    "update_filter_at_path",
    "validate_filters",
]
