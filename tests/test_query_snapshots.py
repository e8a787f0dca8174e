"""Snapshot-style tests that assert the wire payloads sent to the semantic layer remain stable."""

from __future__ import annotations

from datetime import date

from analysisbuilder.core.flow import FlowLayerQuery
from analysisbuilder.core.funnel import build_step_query
from analysisbuilder.core.query_builder import build_query
from analysisbuilder.core.retention import activity_query, build_retention_query, cohort_query
from analysisbuilder.core.types import (
    BindingKey,
    BindingKeyMapping,
    BreakdownItem,
    DateRange,
    FlowStartingStep,
    FunnelStep,
    GroupFilter,
    MetricItem,
    MultiQueryConfig,
    Query,
    SimpleFilter,
)
from analysisbuilder.core.flow import build_flow_query


def test_comparison_query_snapshot() -> None:
    query = build_query(
        [MetricItem(id="m1", field="Orders.count"), MetricItem(id="m2", field="Orders.revenue")],
        [
            BreakdownItem(id="b1", field="Orders.status"),
            BreakdownItem(id="b2", field="Orders.createdAt", is_time_dimension=True, granularity="week", enable_comparison=True),
        ],
        [
            GroupFilter(
                "and",
                (
                    SimpleFilter("Orders.createdAt", "inDateRange", ("2024-01-01", "2024-01-31")),
                    GroupFilter(
                        "or",
                        (
                            SimpleFilter("Orders.status", "equals", ("paid",)),
                            SimpleFilter("Orders.amount", "gte", ("100",)),
                        ),
                    ),
                ),
            )
        ],
        {"Orders.revenue": "desc"},
        limit=100,
        today=date(2024, 2, 1),
    )

    assert query.to_dict() == {
        "measures": ["Orders.count", "Orders.revenue"],
        "dimensions": ["Orders.status"],
        "timeDimensions": [
            {
                "dimension": "Orders.createdAt",
                "granularity": "week",
                "compareDateRange": [["2024-01-01", "2024-01-31"], ["2023-12-01", "2023-12-31"]],
            }
        ],
        "filters": [
            {
                "or": [
                    {"member": "Orders.status", "operator": "equals", "values": ["paid"]},
                    {"member": "Orders.amount", "operator": "gte", "values": ["100"]},
                ]
            }
        ],
        "order": {"Orders.revenue": "desc"},
        "limit": 100,
    }


def test_funnel_step_query_snapshot() -> None:
    step = FunnelStep(
        id="s2",
        name="Purchase",
        query=Query(measures=("Orders.count",), filters=(SimpleFilter("Orders.status", "equals", ("paid",)),)),
    )
    binding_key = BindingKey((BindingKeyMapping("Orders", "Orders.customerId"),))

    query = build_step_query(step, binding_key.field_for("Orders"), ["c1", "c2"], time_member="Orders.createdAt")

    assert query.to_dict() == {
        "measures": ["Orders.count"],
        "dimensions": ["Orders.customerId", "Orders.createdAt"],
        "filters": [
            {"member": "Orders.status", "operator": "equals", "values": ["paid"]},
            {"member": "Orders.customerId", "operator": "in", "values": ["c1", "c2"]},
        ],
    }


def test_flow_layer_query_snapshot() -> None:
    config = build_flow_query(
        cube="Events",
        binding_key=BindingKey("Events.userId"),
        time_dimension="Events.timestamp",
        event_dimension="Events.name",
        starting_step=FlowStartingStep(
            name="Purchase",
            filters=(
                SimpleFilter("Events.name", "equals", ("Purchase",)),
                SimpleFilter("Events.country", "in", ("NO", "SE")),
            ),
        ),
        steps_before=2,
        steps_after=1,
        join_strategy="window",
        entity_limit=1000,
    )

    assert FlowLayerQuery(flow=config, layer=-2).to_dict() == {
        "flow": {
            "bindingKey": "Events.userId",
            "timeDimension": "Events.timestamp",
            "eventDimension": "Events.name",
            "startingStep": {
                "name": "Purchase",
                "filter": [
                    {"member": "Events.name", "operator": "equals", "values": ["Purchase"]},
                    {"member": "Events.country", "operator": "in", "values": ["NO", "SE"]},
                ],
            },
            "stepsBefore": 2,
            "stepsAfter": 1,
            "outputMode": "sankey",
            "joinStrategy": "window",
            "entityLimit": 1000,
            "layer": -2,
        }
    }


def test_retention_queries_snapshot() -> None:
    config = build_retention_query(
        cube="Events",
        binding_key=BindingKey("Events.userId"),
        time_dimension="Events.timestamp",
        date_range=DateRange("2024-01-01", "2024-03-31"),
        granularity="month",
        periods=3,
        cohort_filters=[SimpleFilter("Events.name", "equals", ("signup",))],
        breakdowns=["Users.plan"],
    )

    assert cohort_query(config).to_dict() == {
        "dimensions": ["Events.userId", "Users.plan"],
        "timeDimensions": [
            {"dimension": "Events.timestamp", "granularity": "month", "dateRange": ["2024-01-01", "2024-03-31"]}
        ],
        "filters": [{"member": "Events.name", "operator": "equals", "values": ["signup"]}],
    }
    assert activity_query(config).to_dict() == {
        "dimensions": ["Events.userId"],
        "timeDimensions": [
            {"dimension": "Events.timestamp", "granularity": "month", "dateRange": ["2024-01-01", "2024-06-30"]}
        ],
    }


def test_multi_query_snapshot() -> None:
    config = MultiQueryConfig(
        queries=[Query(measures=["Sales.revenue"], dimensions=["Sales.region"]), Query(measures=["Visits.count"], dimensions=["Sales.region"])],
        merge_strategy="merge",
        merge_keys="Sales.region",
        query_labels=["Revenue", "Traffic"],
    )

    assert config.to_dict() == {
        "queries": [
            {"measures": ["Sales.revenue"], "dimensions": ["Sales.region"]},
            {"measures": ["Visits.count"], "dimensions": ["Sales.region"]},
        ],
        "mergeStrategy": "merge",
        "mergeKeys": ["Sales.region"],
        "queryLabels": ["Revenue", "Traffic"],
    }
