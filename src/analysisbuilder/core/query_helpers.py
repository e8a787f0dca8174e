"""Shared helper utilities for query construction and result handling."""

from __future__ import annotations

from collections.abc import Hashable, Iterable, Sequence
from dataclasses import replace
from typing import Any

import pandas as pd

from .dates import to_local_timestamps
from .types import FilterNode, Query, Row


def unique_in_order(values: Iterable[Hashable]) -> list[Any]:
    """Drop duplicates and ``None`` while keeping first-appearance order."""

    return [value for value in dict.fromkeys(values) if value is not None]


def with_dimension(query: Query, member: str) -> Query:
    if member in query.dimensions:
        return query
    return replace(query, dimensions=query.dimensions + (member,))


def with_filters(query: Query, *filters: FilterNode) -> Query:
    return replace(query, filters=query.filters + filters)


def rows_to_dataframe(rows: Sequence[Row], columns: Sequence[str] | None = None) -> pd.DataFrame:
    if columns is None:
        return pd.DataFrame.from_records(list(rows))
    return pd.DataFrame(list(rows), columns=list(columns))


def prepare_result_dataframe(df: pd.DataFrame, time_column: str, tz: str) -> pd.DataFrame:
    df[time_column] = to_local_timestamps(df[time_column], tz)
    return df


def dataframe_to_rows(df: pd.DataFrame) -> list[Row]:
    """Return records with missing values as ``None``."""

    return df.astype(object).where(df.notna(), None).to_dict("records")


__all__ = [
    "dataframe_to_rows",
    "prepare_result_dataframe",
    "rows_to_dataframe",
    "unique_in_order",
    "with_dimension",
    "with_filters",
]
