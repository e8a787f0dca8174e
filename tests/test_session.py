from __future__ import annotations

from datetime import date

import pytest

from analysisbuilder.core.flow import FlowQueryConfig
from analysisbuilder.core.funnel import FunnelExecutionResult
from analysisbuilder.core.merge import MultiQueryResult
from analysisbuilder.core.retention import RetentionQueryConfig
from analysisbuilder.core.session import AnalysisSession
from analysisbuilder.core.settings import AnalysisSettings
from analysisbuilder.core.types import (
    BindingKey,
    DateRange,
    FunnelConfig,
    GroupFilter,
    MultiQueryConfig,
    Query,
    SimpleFilter,
)

MANUAL = AnalysisSettings(auto_execute=False)
FAST = AnalysisSettings(debounce_ms=5)
PAID = SimpleFilter("Orders.status", "equals", ("paid",))
LARGE = SimpleFilter("Orders.amount", "gt", ("100",))
PURCHASE = SimpleFilter("Events.name", "equals", ("Purchase",))


def _manual_session(fake_executor, **kwargs) -> AnalysisSession:
    return AnalysisSession(fake_executor([]), settings=MANUAL, today=date(2024, 2, 10), **kwargs)


def test_query_setters_build_query(fake_executor) -> None:
    session = _manual_session(fake_executor)

    metric_id = session.add_metric("Orders.count")
    session.add_breakdown("Orders.status")
    created = session.add_breakdown("Orders.createdAt", is_time_dimension=True)
    session.set_breakdown_granularity(created, "month")
    session.add_filter(PAID)
    session.add_filter(LARGE)
    session.set_order("Orders.count", "desc")
    session.set_limit(50)

    query = session.build_query()
    assert query.measures == ("Orders.count",)
    assert query.dimensions == ("Orders.status",)
    assert query.time_dimensions[0].granularity == "month"
    assert query.filters == (GroupFilter("and", (PAID, LARGE)),)
    assert query.order == (("Orders.count", "desc"),)
    assert query.limit == 50

    session.remove_filter((0, 0))
    session.set_order("Orders.count", None)
    session.remove_metric(metric_id)
    query = session.build_query()
    assert query.filters == (LARGE,)
    assert query.order == ()
    assert query.measures == ()


def test_comparison_toggle_through_session(fake_executor) -> None:
    session = _manual_session(fake_executor)
    session.add_metric("Orders.count")
    created = session.add_breakdown("Orders.createdAt", is_time_dimension=True)
    session.add_filter(SimpleFilter("Orders.createdAt", "inDateRange", date_range="last month"))

    session.toggle_breakdown_comparison(created)

    query = session.build_query()
    assert query.time_dimensions[0].compare_date_range == (
        ("2024-01-01", "2024-01-31"),
        ("2023-12-01", "2023-12-31"),
    )
    assert query.filters == ()


def test_filter_group_toggle_and_update(fake_executor) -> None:
    session = _manual_session(fake_executor)
    session.set_filters([GroupFilter("and", (PAID, LARGE))])

    session.toggle_filter_group((0,))
    session.update_filter((0, 1), PURCHASE)

    assert session.active_query.filters == (GroupFilter("or", (PAID, PURCHASE)),)


def test_build_config_switches_to_multi_query(fake_executor) -> None:
    session = _manual_session(fake_executor)
    assert session.build_config() is None

    session.add_metric("Sales.revenue")
    session.add_breakdown("Sales.region")
    assert isinstance(session.build_config(), Query)

    session.add_query(copy_active=False)
    assert isinstance(session.build_config(), Query)
    session.add_metric("Visits.count")
    session.add_breakdown("Sales.region")
    session.set_query_label(1, "Traffic")
    session.set_merge_strategy("merge")
    session.set_merge_keys(["Sales.region"])

    config = session.build_config()
    assert isinstance(config, MultiQueryConfig)
    assert config.queries[1].measures == ("Visits.count",)
    assert config.query_labels == ("", "Traffic")
    assert config.merge_keys == ("Sales.region",)
    assert session.validate().is_valid
    assert session.query_label(0) == "revenue"
    assert session.query_label(1) == "Traffic"

    session.remove_query(1)
    assert session.active_tab == 0
    assert isinstance(session.build_config(), Query)


def test_set_active_query_out_of_range(fake_executor) -> None:
    session = _manual_session(fake_executor)

    with pytest.raises(IndexError, match="out of range"):
        session.set_active_query(3)


def test_funnel_setters(fake_executor) -> None:
    session = _manual_session(fake_executor)
    session.set_analysis_type("funnel")
    assert session.build_config() is None

    session.set_funnel_binding_key(BindingKey("Events.userId"))
    first = session.add_funnel_step("Signup", Query(measures=("Events.count",)))
    second = session.add_funnel_step("Purchase", Query(measures=("Events.count",)))
    session.update_funnel_step(second, time_to_convert="P7D", time_dimension="Events.timestamp")
    session.move_funnel_step(second, 0)

    config = session.build_config()
    assert isinstance(config, FunnelConfig)
    assert [step.id for step in config.steps] == [second, first]
    assert config.steps[0].time_to_convert == "P7D"
    assert config.binding_key_limit == 500
    assert [issue.type for issue in session.validate().warnings] == ["ignored_time_to_convert"]

    session.remove_funnel_step(first)
    assert [issue.type for issue in session.validate().errors] == ["too_few_steps"]


def test_flow_depths_are_clamped(fake_executor) -> None:
    session = _manual_session(fake_executor)

    session.set_steps_before(-1)
    assert session.flow.steps_before == 0
    session.set_steps_before(10)
    assert session.flow.steps_before == 5
    session.set_steps_after(99)
    assert session.flow.steps_after == 5


def test_sunburst_forces_steps_before_to_zero(fake_executor) -> None:
    session = _manual_session(fake_executor)
    session.set_analysis_type("flow")
    session.set_flow_cube("Events")
    session.set_flow_binding_key(BindingKey("Events.userId"))
    session.set_flow_time_dimension("Events.timestamp")
    session.set_event_dimension("Events.name")
    session.add_starting_step_filter(PURCHASE)
    session.set_steps_before(2)

    session.set_flow_output_mode("sunburst")
    session.set_steps_before(4)

    config = session.build_config()
    assert isinstance(config, FlowQueryConfig)
    assert config.steps_before == 0
    assert session.flow.steps_before == 0
    assert config.starting_step.filters == (PURCHASE,)


def test_changing_flow_cube_clears_members(fake_executor) -> None:
    session = _manual_session(fake_executor)
    session.set_flow_cube("Events")
    session.set_flow_binding_key(BindingKey("Events.userId"))
    session.set_event_dimension("Events.name")
    session.add_starting_step_filter(PURCHASE)
    session.set_starting_step_name("Bought")

    session.set_flow_cube("Orders")

    assert session.flow.binding_key is None
    assert session.flow.event_dimension is None
    assert session.flow.starting_step.filters == ()
    assert session.flow.starting_step.name == "Bought"


def test_retention_setters(fake_executor) -> None:
    session = _manual_session(fake_executor)
    session.set_analysis_type("retention")
    session.set_retention_cube("Events")
    session.set_retention_binding_key(BindingKey("Events.userId"))
    session.set_retention_time_dimension("Events.timestamp")
    session.set_retention_date_range("last_30_days")
    session.set_retention_periods(80)
    session.set_retention_granularity("month")
    session.set_retention_type("rolling")
    session.add_retention_breakdown("Users.country")
    session.add_retention_breakdown("Users.country")

    config = session.build_config()
    assert isinstance(config, RetentionQueryConfig)
    assert config.date_range == DateRange("2024-01-12", "2024-02-10")
    assert config.periods == 52
    assert config.granularity == "month"
    assert config.retention_type == "rolling"
    assert config.breakdowns == ("Users.country",)
    assert [issue.type for issue in session.validate().warnings] == ["many_periods"]

    session.remove_retention_breakdown("Users.country")
    session.set_retention_periods(0)
    assert session.retention.periods == 1
    assert session.retention.breakdowns == ()


def test_on_change_is_notified(fake_executor) -> None:
    changes: list[str] = []
    session = _manual_session(fake_executor, on_change=lambda s: changes.append(s.analysis_type))

    session.add_metric("Orders.count")
    session.set_analysis_type("flow")

    assert changes == ["query", "flow"]


@pytest.mark.asyncio
async def test_setters_schedule_debounced_execution(fake_executor) -> None:
    executor = fake_executor(lambda query: [{"Orders.status": "paid", "Orders.count": 3}])
    session = AnalysisSession(executor, settings=FAST)

    session.add_metric("Orders.count")
    session.add_breakdown("Orders.status")
    assert session.status == "debouncing"
    await session.wait()

    assert len(executor.queries) == 1
    assert executor.queries[0] == Query(measures=("Orders.count",), dimensions=("Orders.status",))
    assert session.status == "success"
    assert isinstance(session.result, MultiQueryResult)
    assert session.result.rows == ({"Orders.status": "paid", "Orders.count": 3},)


@pytest.mark.asyncio
async def test_invalid_configuration_clears_results(fake_executor) -> None:
    executor = fake_executor(lambda query: [])
    session = AnalysisSession(executor, settings=FAST)
    metric = session.add_metric("Orders.count")
    await session.wait()
    assert session.status == "success"

    session.remove_metric(metric)

    assert session.status == "idle"
    assert session.result is None


@pytest.mark.asyncio
async def test_funnel_runs_through_session(fake_executor) -> None:
    responses = [[{"Events.userId": "u1"}, {"Events.userId": "u2"}], [{"Events.userId": "u1"}]]
    executor = fake_executor(responses)
    session = AnalysisSession(executor, settings=FAST)

    session.set_analysis_type("funnel")
    session.set_funnel_binding_key(BindingKey("Events.userId"))
    session.add_funnel_step("Signup", Query(measures=("Events.count",)))
    session.add_funnel_step("Purchase", Query(measures=("Events.count",)))
    await session.wait()

    assert isinstance(session.result, FunnelExecutionResult)
    assert [step.count for step in session.result.steps] == [2, 1]
    assert session.status == "success"


@pytest.mark.asyncio
async def test_refresh_and_dry_run(fake_executor) -> None:
    executor = fake_executor(lambda query: [{"Orders.count": 1}])
    session = AnalysisSession(executor, settings=MANUAL)
    session.add_metric("Orders.count")
    assert session.status == "idle"

    result = await session.refresh()
    inspection = await session.dry_run()

    assert result.rows == ({"Orders.count": 1},)
    assert session.status == "success"
    assert inspection.sql == "SELECT 1"
    assert executor.dry_runs == [Query(measures=("Orders.count",))]


@pytest.mark.asyncio
async def test_closed_session_rejects_changes(fake_executor) -> None:
    session = AnalysisSession(fake_executor([]), settings=FAST)

    session.close()

    assert session.status == "idle"
    with pytest.raises(RuntimeError, match="session is closed"):
        session.add_metric("Orders.count")


def test_display_config_follows_chart_type(fake_executor) -> None:
    changes: list[str] = []
    session = _manual_session(fake_executor, on_change=lambda s: changes.append(s.chart_type))
    assert session.display_config == {"pivotTimeDimension": False, "hiddenColumns": ()}

    session.set_chart_type("bar")
    session.set_display_option("showLegend", False)
    session.set_display_option("stacked", "sideways")
    assert session.display_config["showLegend"] is False
    assert session.display_config["stacked"] == "none"
    assert "pivotTimeDimension" not in session.display_config

    session.set_chart_type("line")
    assert session.display_config["showLegend"] is False
    assert session.display_config["smooth"] is False
    assert "stacked" not in session.display_config
    assert changes == ["bar", "bar", "bar", "line"]

    with pytest.raises(ValueError, match="Invalid chart type"):
        session.set_chart_type("radar")
    assert session.chart_type == "line"
