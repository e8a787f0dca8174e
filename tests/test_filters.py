from __future__ import annotations

from collections.abc import Iterator, Sequence

import pytest

from analysisbuilder.core.filters import (
    add_filter_at_path,
    count_filters,
    filter_members,
    filters_from_server,
    filters_to_server,
    find_date_filter,
    get_filter_at_path,
    remove_date_filter,
    remove_filter_at_path,
    remove_top_level_filter,
    toggle_group_type,
    update_filter_at_path,
    validate_filters,
)
from analysisbuilder.core.types import FilterNode, GroupFilter, SimpleFilter

PAID = SimpleFilter("Orders.status", "equals", ("paid",))
LARGE = SimpleFilter("Orders.amount", "gt", ("100",))
NORDIC = SimpleFilter("Users.country", "in", ("NO", "SE"))
JANUARY = SimpleFilter("Orders.createdAt", "inDateRange", ("2024-01-01", "2024-01-31"))


def _all_paths(filters: Sequence[FilterNode], prefix: tuple[int, ...] = ()) -> Iterator[tuple[int, ...]]:
    for index, node in enumerate(filters):
        path = prefix + (index,)
        yield path
        if isinstance(node, GroupFilter):
            yield from _all_paths(node.filters, path)


def _has_empty_group(filters: Sequence[FilterNode]) -> bool:
    return any(
        isinstance(node, GroupFilter) and (not node.filters or _has_empty_group(node.filters))
        for node in filters
    )


def test_add_to_empty_root() -> None:
    assert add_filter_at_path((), (), PAID) == (PAID,)


def test_add_to_single_simple_filter_wraps_in_and_group() -> None:
    assert add_filter_at_path((PAID,), (), LARGE) == (GroupFilter("and", (PAID, LARGE)),)


def test_add_to_single_group_appends() -> None:
    tree = (GroupFilter("or", (PAID, LARGE)),)

    assert add_filter_at_path(tree, (), NORDIC) == (GroupFilter("or", (PAID, LARGE, NORDIC)),)


def test_add_to_several_siblings_wraps_all() -> None:
    assert add_filter_at_path((PAID, LARGE), [], NORDIC) == (GroupFilter("and", (PAID, LARGE, NORDIC)),)


def test_add_at_nested_path_appends_into_addressed_group() -> None:
    tree = (GroupFilter("and", (PAID, GroupFilter("or", (LARGE,)))),)

    result = add_filter_at_path(tree, (0, 1), NORDIC)

    assert result == (GroupFilter("and", (PAID, GroupFilter("or", (LARGE, NORDIC)))),)
    assert tree == (GroupFilter("and", (PAID, GroupFilter("or", (LARGE,)))),)


def test_add_at_path_of_simple_filter_is_rejected() -> None:
    with pytest.raises(ValueError, match="must address a filter group"):
        add_filter_at_path((GroupFilter("and", (PAID, LARGE)),), (0, 0), NORDIC)


def test_remove_unwraps_single_child_top_level_group() -> None:
    assert remove_filter_at_path((GroupFilter("and", (PAID, LARGE)),), (0, 1)) == (PAID,)


def test_remove_last_child_prunes_groups_upward() -> None:
    tree = (GroupFilter("and", (PAID, GroupFilter("or", (LARGE,)))),)

    assert remove_filter_at_path(tree, (0, 1, 0)) == (PAID,)


def test_remove_root_clears_tree() -> None:
    assert remove_filter_at_path((PAID, LARGE), ()) == ()


def test_remove_top_level_filter() -> None:
    assert remove_top_level_filter((PAID, LARGE, NORDIC), 1) == (PAID, NORDIC)


def test_remove_out_of_range_path() -> None:
    with pytest.raises(IndexError, match="out of range"):
        remove_filter_at_path((PAID,), (3,))


def test_remove_never_leaves_empty_or_single_top_level_groups() -> None:
    tree = (
        GroupFilter(
            "and",
            (
                PAID,
                GroupFilter("or", (LARGE, GroupFilter("and", (NORDIC,)))),
                GroupFilter("or", (JANUARY, LARGE)),
            ),
        ),
    )

    for path in _all_paths(tree):
        result = remove_filter_at_path(tree, path)
        assert not _has_empty_group(result), path
        assert not (len(result) == 1 and isinstance(result[0], GroupFilter) and len(result[0].filters) == 1), path


def test_update_and_get_at_path() -> None:
    tree = (GroupFilter("and", (PAID, LARGE)),)

    result = update_filter_at_path(tree, (0, 1), NORDIC)

    assert get_filter_at_path(result, (0, 1)) == NORDIC
    assert get_filter_at_path(result, (0,)) == GroupFilter("and", (PAID, NORDIC))


def test_toggle_group_type() -> None:
    tree = (GroupFilter("and", (PAID, LARGE)),)

    assert toggle_group_type(tree, (0,)) == (GroupFilter("or", (PAID, LARGE)),)
    with pytest.raises(IndexError):
        toggle_group_type(tree, ())


def test_find_and_remove_nested_date_filter() -> None:
    tree = (GroupFilter("and", (PAID, JANUARY)),)

    assert find_date_filter(tree, "Orders.createdAt") == ((0, 1), JANUARY)
    assert find_date_filter(tree, "Orders.updatedAt") is None
    assert remove_date_filter(tree, "Orders.createdAt") == (PAID,)


def test_members_and_count() -> None:
    tree = (GroupFilter("and", (PAID, GroupFilter("or", (LARGE, PAID)))), NORDIC)

    assert count_filters(tree) == 4
    assert filter_members(tree) == ["Orders.status", "Orders.amount", "Users.country"]


def test_server_shape_round_trip() -> None:
    tree = (GroupFilter("or", (PAID, LARGE)), NORDIC)

    payload = filters_to_server(tree)

    assert payload == [
        {
            "or": [
                {"member": "Orders.status", "operator": "equals", "values": ["paid"]},
                {"member": "Orders.amount", "operator": "gt", "values": ["100"]},
            ]
        },
        {"member": "Users.country", "operator": "in", "values": ["NO", "SE"]},
    ]
    assert filters_from_server(payload) == tree


def test_validate_filters_reports_value_counts_and_empty_groups() -> None:
    tree = (
        SimpleFilter("Users.country", "in"),
        SimpleFilter("Orders.amount", "gt", ("1", "2")),
        SimpleFilter("Orders.status", "set", ("x",)),
        GroupFilter("or", ()),
        SimpleFilter("Orders.createdAt", "inDateRange", date_range="last 7 days"),
    )

    assert validate_filters(tree) == [
        "Users.country: IN style operators require at least one value",
        "Orders.amount: Comparison operators require exactly one value",
        "Orders.status: Operator 'set' does not take values",
        "Empty 'or' filter group",
    ]
