"""Analysis session: the single owner of builder state.

The presentation layer renders the session's state and forwards user intent
through the setter methods.  Every setter replaces an immutable state value
and, when auto-execution is enabled, schedules a debounced execution of the
configuration for the active analysis type.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import date
from typing import Any

from . import filters as filter_tree
from .client import DryRunResult, QueryExecutor, SupportsToDict
from .display import resolve_display_config
from .errors import ValidationResult
from .flow import FlowQueryConfig, build_flow_query, clamp_depth, execute_flow, validate_flow_config
from .funnel import execute_funnel, validate_funnel_config
from .merge import (
    execute_multi_query,
    execute_query,
    generate_query_label,
    validate_multi_query_config,
)
from .query_builder import build_query, toggle_breakdown_comparison, validate_query
from .retention import (
    RetentionQueryConfig,
    build_retention_query,
    clamp_periods,
    date_range_from_preset,
    execute_retention,
    validate_retention_config,
)
from .scheduler import ExecutionScheduler, ExecutionStatus
from .settings import AnalysisSettings
from .types import (
    AnalysisType,
    BindingKey,
    BreakdownItem,
    DateRange,
    FilterNode,
    FlowOutputMode,
    FlowStartingStep,
    FunnelConfig,
    FunnelStep,
    Granularity,
    JoinStrategy,
    MergeStrategy,
    MetricItem,
    MultiQueryConfig,
    Query,
    RetentionGranularity,
    RetentionType,
    SortDirection,
)

logger = logging.getLogger(__name__)

ExecutableConfig = Query | MultiQueryConfig | FunnelConfig | FlowQueryConfig | RetentionQueryConfig


@dataclass(frozen=True)
class QueryTab:
    metrics: tuple[MetricItem, ...] = ()
    breakdowns: tuple[BreakdownItem, ...] = ()
    filters: tuple[FilterNode, ...] = ()
    order: tuple[tuple[str, SortDirection], ...] = ()
    limit: int | None = None
    label: str = ""


@dataclass(frozen=True)
class FunnelState:
    binding_key: BindingKey | None = None
    steps: tuple[FunnelStep, ...] = ()
    count_unique: bool = True
    global_time_window: str | None = None


@dataclass(frozen=True)
class FlowState:
    cube: str | None = None
    binding_key: BindingKey | None = None
    time_dimension: str | None = None
    event_dimension: str | None = None
    starting_step: FlowStartingStep = FlowStartingStep()
    steps_before: int = 3
    steps_after: int = 3
    output_mode: FlowOutputMode = "sankey"
    join_strategy: JoinStrategy = "auto"


@dataclass(frozen=True)
class RetentionState:
    cube: str | None = None
    binding_key: BindingKey | None = None
    time_dimension: str | None = None
    date_range: DateRange | None = None
    granularity: RetentionGranularity = "week"
    periods: int = 12
    retention_type: RetentionType = "classic"
    cohort_filters: tuple[FilterNode, ...] = ()
    activity_filters: tuple[FilterNode, ...] = ()
    breakdowns: tuple[str, ...] = ()


class AnalysisSession:
    """State and execution for one analysis builder instance."""

    def __init__(
        self,
        executor: QueryExecutor,
        *,
        settings: AnalysisSettings | None = None,
        on_change: Callable[[AnalysisSession], None] | None = None,
        today: date | None = None,
    ) -> None:
        self.executor = executor
        self.settings = settings or AnalysisSettings()
        self.on_change = on_change
        self.today = today
        self._ids = itertools.count(1)

        self.analysis_type: AnalysisType = "query"
        self.tabs: tuple[QueryTab, ...] = (QueryTab(),)
        self.active_tab = 0
        self.merge_strategy: MergeStrategy = "concat"
        self.merge_keys: tuple[str, ...] = ()
        self.funnel = FunnelState()
        self.flow = FlowState(
            steps_before=self.settings.flow_default_depth,
            steps_after=self.settings.flow_default_depth,
        )
        self.retention = RetentionState(
            granularity=self.settings.retention_default_granularity,
            periods=self.settings.retention_default_periods,
            retention_type=self.settings.retention_default_type,
        )
        self.scheduler: ExecutionScheduler[ExecutableConfig, Any] = ExecutionScheduler(
            self._run,
            debounce_ms=self.settings.debounce_ms,
            on_change=lambda _: self._notify(),
        )
        self.chart_type = "table"
        self.display_config: dict[str, Any] = resolve_display_config(self.chart_type)
        self._closed = False

    # ------------------------------------------------------------------
    # Execution state
    # ------------------------------------------------------------------

    @property
    def status(self) -> ExecutionStatus:
        return self.scheduler.status

    @property
    def result(self) -> Any:
        return self.scheduler.result

    @property
    def error(self) -> Any:
        return self.scheduler.error

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("session is closed")

    def _changed(self) -> None:
        self._ensure_open()
        self._notify()
        if not self.settings.auto_execute:
            return
        config = self.build_config()
        if config is None or not self.validate(config).is_valid:
            logger.debug("No executable %s configuration; clearing results", self.analysis_type)
            self.scheduler.schedule(None)
            return
        self.scheduler.schedule(config)

    async def _run(self, config: ExecutableConfig) -> Any:
        if isinstance(config, MultiQueryConfig):
            return await execute_multi_query(config, self.executor)
        if isinstance(config, FunnelConfig):
            return await execute_funnel(config, self.executor, tz=self.settings.tz)
        if isinstance(config, FlowQueryConfig):
            return await execute_flow(config, self.executor)
        if isinstance(config, RetentionQueryConfig):
            return await execute_retention(config, self.executor, tz=self.settings.tz)
        return await execute_query(config, self.executor)

    async def refresh(self) -> Any:
        """Execute the current configuration now, bypassing the debounce."""

        config = self.build_config()
        if config is None:
            self.scheduler.clear()
            return None
        return await self.scheduler.run_now(config)

    async def wait(self) -> None:
        await self.scheduler.wait()

    async def dry_run(self) -> DryRunResult | None:
        config = self.build_config()
        if config is None:
            return None
        target: SupportsToDict = config
        if isinstance(config, MultiQueryConfig):
            target = config.queries[0]
        return await self.executor.dry_run(target)

    def clear(self) -> None:
        self.scheduler.clear()

    def close(self) -> None:
        self.scheduler.clear()
        self.on_change = None
        self._closed = True

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def build_query(self, index: int | None = None) -> Query:
        tab = self.tabs[self.active_tab if index is None else index]
        return build_query(
            tab.metrics,
            tab.breakdowns,
            tab.filters,
            dict(tab.order),
            limit=tab.limit,
            today=self.today,
        )

    def build_config(self) -> ExecutableConfig | None:
        """Return the executable configuration for the active analysis type."""

        if self.analysis_type == "funnel":
            state = self.funnel
            if state.binding_key is None or not state.steps:
                return None
            return FunnelConfig(
                binding_key=state.binding_key,
                steps=state.steps,
                count_unique=state.count_unique,
                binding_key_limit=self.settings.binding_key_limit,
                global_time_window=state.global_time_window,
            )
        if self.analysis_type == "flow":
            flow = self.flow
            return build_flow_query(
                cube=flow.cube,
                binding_key=flow.binding_key,
                time_dimension=flow.time_dimension,
                event_dimension=flow.event_dimension,
                starting_step=flow.starting_step,
                steps_before=flow.steps_before,
                steps_after=flow.steps_after,
                output_mode=flow.output_mode,
                join_strategy=flow.join_strategy,
            )
        if self.analysis_type == "retention":
            retention = self.retention
            return build_retention_query(
                cube=retention.cube,
                binding_key=retention.binding_key,
                time_dimension=retention.time_dimension,
                date_range=retention.date_range,
                granularity=retention.granularity,
                periods=retention.periods,
                retention_type=retention.retention_type,
                cohort_filters=retention.cohort_filters,
                activity_filters=retention.activity_filters,
                breakdowns=retention.breakdowns,
            )

        queries = [self.build_query(index) for index in range(len(self.tabs))]
        valid = [(index, query) for index, query in enumerate(queries) if query.is_valid()]
        if len(valid) >= 2:
            return MultiQueryConfig(
                queries=tuple(query for _, query in valid),
                merge_strategy=self.merge_strategy,
                merge_keys=self.merge_keys,
                query_labels=tuple(self.tabs[index].label for index, _ in valid),
            )
        if valid:
            return valid[0][1]
        return None

    def validate(self, config: ExecutableConfig | None = None) -> ValidationResult:
        config = self.build_config() if config is None else config
        if config is None:
            return ValidationResult()
        if isinstance(config, MultiQueryConfig):
            return validate_multi_query_config(config)
        if isinstance(config, FunnelConfig):
            return validate_funnel_config(config)
        if isinstance(config, FlowQueryConfig):
            return validate_flow_config(config)
        if isinstance(config, RetentionQueryConfig):
            return validate_retention_config(config)
        return validate_query(config)

    def set_analysis_type(self, analysis_type: AnalysisType) -> None:
        self.analysis_type = analysis_type
        self._changed()

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def set_chart_type(self, chart_type: str) -> None:
        """Switch chart type, keeping the display options both charts share."""

        self._ensure_open()
        self.display_config = resolve_display_config(chart_type, self.display_config)
        self.chart_type = chart_type
        self._notify()

    def set_display_config(self, raw: Mapping[str, Any]) -> None:
        self._ensure_open()
        self.display_config = resolve_display_config(self.chart_type, raw)
        self._notify()

    def set_display_option(self, key: str, value: Any) -> None:
        self.set_display_config({**self.display_config, key: value})

    # ------------------------------------------------------------------
    # Query tabs
    # ------------------------------------------------------------------

    @property
    def active_query(self) -> QueryTab:
        return self.tabs[self.active_tab]

    def _update_tab(self, **changes: Any) -> None:
        tabs = list(self.tabs)
        tabs[self.active_tab] = replace(tabs[self.active_tab], **changes)
        self.tabs = tuple(tabs)
        self._changed()

    def add_metric(self, field: str, label: str | None = None) -> str:
        item = MetricItem(id=self._next_id("metric"), field=field, label=label)
        self._update_tab(metrics=self.active_query.metrics + (item,))
        return item.id

    def remove_metric(self, metric_id: str) -> None:
        self._update_tab(metrics=tuple(m for m in self.active_query.metrics if m.id != metric_id))

    def add_breakdown(
        self,
        field: str,
        *,
        is_time_dimension: bool = False,
        granularity: Granularity = "day",
    ) -> str:
        item = BreakdownItem(
            id=self._next_id("breakdown"),
            field=field,
            is_time_dimension=is_time_dimension,
            granularity=granularity,
        )
        self._update_tab(breakdowns=self.active_query.breakdowns + (item,))
        return item.id

    def remove_breakdown(self, breakdown_id: str) -> None:
        self._update_tab(breakdowns=tuple(b for b in self.active_query.breakdowns if b.id != breakdown_id))

    def set_breakdown_granularity(self, breakdown_id: str, granularity: Granularity) -> None:
        self._update_tab(
            breakdowns=tuple(
                replace(b, granularity=granularity) if b.id == breakdown_id else b
                for b in self.active_query.breakdowns
            )
        )

    def toggle_breakdown_comparison(self, breakdown_id: str) -> None:
        self._update_tab(breakdowns=toggle_breakdown_comparison(self.active_query.breakdowns, breakdown_id))

    def set_filters(self, filters: Sequence[FilterNode]) -> None:
        self._update_tab(filters=tuple(filters))

    def add_filter(self, new_filter: FilterNode, path: Sequence[int] = ()) -> None:
        self._update_tab(filters=filter_tree.add_filter_at_path(self.active_query.filters, path, new_filter))

    def remove_filter(self, path: Sequence[int]) -> None:
        self._update_tab(filters=filter_tree.remove_filter_at_path(self.active_query.filters, path))

    def update_filter(self, path: Sequence[int], new_filter: FilterNode) -> None:
        self._update_tab(filters=filter_tree.update_filter_at_path(self.active_query.filters, path, new_filter))

    def toggle_filter_group(self, path: Sequence[int]) -> None:
        self._update_tab(filters=filter_tree.toggle_group_type(self.active_query.filters, path))

    def set_order(self, field: str, direction: SortDirection | None) -> None:
        order = dict(self.active_query.order)
        if direction is None:
            order.pop(field, None)
        else:
            order[field] = direction
        self._update_tab(order=tuple(order.items()))

    def set_limit(self, limit: int | None) -> None:
        self._update_tab(limit=limit)

    def add_query(self, *, copy_active: bool = True) -> int:
        """Append a query tab and make it active; returns its index."""

        source = self.active_query if copy_active else QueryTab()
        tab = replace(source, label="")
        self.tabs = self.tabs + (tab,)
        self.active_tab = len(self.tabs) - 1
        self._changed()
        return self.active_tab

    def remove_query(self, index: int) -> None:
        if len(self.tabs) == 1:
            self.tabs = (QueryTab(),)
        else:
            self.tabs = self.tabs[:index] + self.tabs[index + 1 :]
        self.active_tab = min(self.active_tab, len(self.tabs) - 1)
        self._changed()

    def set_active_query(self, index: int) -> None:
        if not 0 <= index < len(self.tabs):
            raise IndexError(f"query index {index} is out of range")
        self.active_tab = index
        self._notify()

    def set_query_label(self, index: int, label: str) -> None:
        tabs = list(self.tabs)
        tabs[index] = replace(tabs[index], label=label)
        self.tabs = tuple(tabs)
        self._changed()

    def query_label(self, index: int) -> str:
        return self.tabs[index].label or generate_query_label(self.build_query(index), index)

    def set_merge_strategy(self, strategy: MergeStrategy) -> None:
        self.merge_strategy = strategy
        self._changed()

    def set_merge_keys(self, keys: Sequence[str]) -> None:
        self.merge_keys = tuple(keys)
        self._changed()

    # ------------------------------------------------------------------
    # Funnel
    # ------------------------------------------------------------------

    def _update_funnel(self, **changes: Any) -> None:
        self.funnel = replace(self.funnel, **changes)
        self._changed()

    def set_funnel_binding_key(self, binding_key: BindingKey | None) -> None:
        self._update_funnel(binding_key=binding_key)

    def add_funnel_step(
        self,
        name: str,
        query: Query,
        *,
        time_to_convert: str | None = None,
        time_dimension: str | None = None,
    ) -> str:
        step = FunnelStep(
            id=self._next_id("step"),
            name=name,
            query=query,
            time_to_convert=time_to_convert,
            time_dimension=time_dimension,
        )
        self._update_funnel(steps=self.funnel.steps + (step,))
        return step.id

    def update_funnel_step(self, step_id: str, **changes: Any) -> None:
        self._update_funnel(
            steps=tuple(replace(s, **changes) if s.id == step_id else s for s in self.funnel.steps)
        )

    def remove_funnel_step(self, step_id: str) -> None:
        self._update_funnel(steps=tuple(s for s in self.funnel.steps if s.id != step_id))

    def move_funnel_step(self, step_id: str, new_index: int) -> None:
        steps = [s for s in self.funnel.steps if s.id != step_id]
        moved = next(s for s in self.funnel.steps if s.id == step_id)
        steps.insert(max(0, min(new_index, len(steps))), moved)
        self._update_funnel(steps=tuple(steps))

    def set_funnel_count_unique(self, count_unique: bool) -> None:
        self._update_funnel(count_unique=count_unique)

    def set_funnel_time_window(self, duration: str | None) -> None:
        self._update_funnel(global_time_window=duration)

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    def _update_flow(self, **changes: Any) -> None:
        self.flow = replace(self.flow, **changes)
        self._changed()

    def set_flow_cube(self, cube: str | None) -> None:
        """Switch cube; members chosen for the previous cube are cleared."""

        self._update_flow(
            cube=cube,
            binding_key=None,
            time_dimension=None,
            event_dimension=None,
            starting_step=replace(self.flow.starting_step, filters=()),
        )

    def set_flow_binding_key(self, binding_key: BindingKey | None) -> None:
        self._update_flow(binding_key=binding_key)

    def set_flow_time_dimension(self, member: str | None) -> None:
        self._update_flow(time_dimension=member)

    def set_event_dimension(self, member: str | None) -> None:
        self._update_flow(event_dimension=member)

    def set_starting_step_name(self, name: str) -> None:
        self._update_flow(starting_step=replace(self.flow.starting_step, name=name))

    def set_starting_step_filters(self, filters: Sequence[FilterNode]) -> None:
        self._update_flow(starting_step=replace(self.flow.starting_step, filters=tuple(filters)))

    def add_starting_step_filter(self, new_filter: FilterNode) -> None:
        self.set_starting_step_filters(self.flow.starting_step.filters + (new_filter,))

    def remove_starting_step_filter(self, index: int) -> None:
        self.set_starting_step_filters(filter_tree.remove_top_level_filter(self.flow.starting_step.filters, index))

    def set_steps_before(self, steps: int) -> None:
        self._update_flow(steps_before=0 if self.flow.output_mode == "sunburst" else clamp_depth(steps))

    def set_steps_after(self, steps: int) -> None:
        self._update_flow(steps_after=clamp_depth(steps))

    def set_flow_output_mode(self, mode: FlowOutputMode) -> None:
        if mode == "sunburst":
            self._update_flow(output_mode=mode, steps_before=0)
        else:
            self._update_flow(output_mode=mode)

    def set_join_strategy(self, strategy: JoinStrategy) -> None:
        self._update_flow(join_strategy=strategy)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def _update_retention(self, **changes: Any) -> None:
        self.retention = replace(self.retention, **changes)
        self._changed()

    def set_retention_cube(self, cube: str | None) -> None:
        self._update_retention(
            cube=cube,
            binding_key=None,
            time_dimension=None,
            cohort_filters=(),
            activity_filters=(),
            breakdowns=(),
        )

    def set_retention_binding_key(self, binding_key: BindingKey | None) -> None:
        self._update_retention(binding_key=binding_key)

    def set_retention_time_dimension(self, member: str | None) -> None:
        self._update_retention(time_dimension=member)

    def set_retention_date_range(self, date_range: DateRange | str) -> None:
        if isinstance(date_range, str):
            date_range = date_range_from_preset(date_range, today=self.today)
        self._update_retention(date_range=date_range)

    def set_retention_granularity(self, granularity: RetentionGranularity) -> None:
        self._update_retention(granularity=granularity)

    def set_retention_periods(self, periods: int) -> None:
        self._update_retention(periods=clamp_periods(periods))

    def set_retention_type(self, retention_type: RetentionType) -> None:
        self._update_retention(retention_type=retention_type)

    def set_cohort_filters(self, filters: Sequence[FilterNode]) -> None:
        self._update_retention(cohort_filters=tuple(filters))

    def set_activity_filters(self, filters: Sequence[FilterNode]) -> None:
        self._update_retention(activity_filters=tuple(filters))

    def add_retention_breakdown(self, member: str) -> None:
        if member not in self.retention.breakdowns:
            self._update_retention(breakdowns=self.retention.breakdowns + (member,))

    def remove_retention_breakdown(self, member: str) -> None:
        self._update_retention(breakdowns=tuple(b for b in self.retention.breakdowns if b != member))


__all__ = [
    "AnalysisSession",
    "ExecutableConfig",
    "FlowState",
    "FunnelState",
    "QueryTab",
    "RetentionState",
]
