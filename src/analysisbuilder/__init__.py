"""Public package API."""

import logging
from importlib import metadata

from .core import (
    AnalysisError,
    AnalysisSession,
    AnalysisSettings,
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
    QueryExecutionError,
    SemanticLayerClient,
    SimpleFilter,
    TimeDimension,
    ValidationResult,
    build_flow_query,
    build_query,
    build_retention_query,
    execute_flow,
    execute_funnel,
    execute_multi_query,
    execute_query,
    execute_retention,
    resolve_display_config,
)

__all__ = [
    "AnalysisError",
    "AnalysisSession",
    "AnalysisSettings",
    "BindingKey",
    "BindingKeyMapping",
    "BreakdownItem",
    "DateRange",
    "FilterOperator",
    "FlowStartingStep",
    "FunnelConfig",
    "FunnelStep",
    "GroupFilter",
    "MetricItem",
    "MultiQueryConfig",
    "Query",
    "QueryExecutionError",
    "SemanticLayerClient",
    "SimpleFilter",
    "TimeDimension",
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

logging.getLogger(__name__).addHandler(logging.NullHandler())

try:
    __version__ = metadata.version("analysisbuilder")
except (
    metadata.PackageNotFoundError
):  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"
