from .client import DryRunResult, QueryExecutor, SemanticLayerClient
from .display import CHART_DISPLAY_OPTIONS, DisplayOption, resolve_display_config
from .errors import AnalysisError, QueryExecutionError, ValidationIssue, ValidationResult
from .flow import FlowGraph, FlowQueryConfig, FlowResult, build_flow_query, execute_flow
from .funnel import FunnelExecutionResult, FunnelStepResult, execute_funnel
from .merge import MultiQueryResult, execute_multi_query, execute_query
from .query_builder import build_query
from .retention import RetentionQueryConfig, RetentionResult, build_retention_query, execute_retention
from .scheduler import ExecutionScheduler, ExecutionStatus
from .session import AnalysisSession
from .settings import AnalysisSettings
from .types import (
    BindingKey,
    BindingKeyMapping,
    BreakdownItem,
    DateRange,
    FilterOperator,
    FlowStartingStep,
    FunnelConfig,
    FunnelStep,
    GroupFilter,
    MetricItem,
    MultiQueryConfig,
    Query,
    SimpleFilter,
    TimeDimension,
)

__all__ = [
    "CHART_DISPLAY_OPTIONS",
    "AnalysisError",
    "AnalysisSession",
    "AnalysisSettings",
    "BindingKey",
    "BindingKeyMapping",
    "BreakdownItem",
    "DateRange",
    "DisplayOption",
    "DryRunResult",
    "ExecutionScheduler",
    "ExecutionStatus",
    "FilterOperator",
    "FlowGraph",
    "FlowQueryConfig",
    "FlowResult",
    "FlowStartingStep",
    "FunnelConfig",
    "FunnelExecutionResult",
    "FunnelStep",
    "FunnelStepResult",
    "GroupFilter",
    "MetricItem",
    "MultiQueryConfig",
    "MultiQueryResult",
    "Query",
    "QueryExecutionError",
    "QueryExecutor",
    "RetentionQueryConfig",
    "RetentionResult",
    "SemanticLayerClient",
    "SimpleFilter",
    "TimeDimension",
    "ValidationIssue",
    "ValidationResult",
    "build_flow_query",
    "build_query",
    "build_retention_query",
    "execute_flow",
    "execute_funnel",
    "execute_multi_query",
    "execute_query",
    "execute_retention",
    "resolve_display_config",
]
