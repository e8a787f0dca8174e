"""Tunable defaults for an analysis session."""

from __future__ import annotations

from dataclasses import dataclass

from .types import RetentionGranularity, RetentionType

DEFAULT_DEBOUNCE_MS = 300
DEFAULT_BINDING_KEY_LIMIT = 500

FLOW_MIN_DEPTH = 0
FLOW_MAX_DEPTH = 5
FLOW_DEFAULT_DEPTH = 3

RETENTION_MIN_PERIODS = 1
RETENTION_MAX_PERIODS = 52
RETENTION_DEFAULT_PERIODS = 12


@dataclass(frozen=True)
class AnalysisSettings:
    """Session-wide defaults.

    ``tz`` is the timezone used to bucket timestamps into retention periods
    and to evaluate conversion windows.
    """

    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    binding_key_limit: int = DEFAULT_BINDING_KEY_LIMIT
    tz: str = "UTC"
    auto_execute: bool = True
    flow_default_depth: int = FLOW_DEFAULT_DEPTH
    retention_default_periods: int = RETENTION_DEFAULT_PERIODS
    retention_default_granularity: RetentionGranularity = "week"
    retention_default_type: RetentionType = "classic"

    def __post_init__(self) -> None:
        if self.debounce_ms < 0:
            raise ValueError("debounce_ms must be non-negative")
        if self.binding_key_limit < 1:
            raise ValueError("binding_key_limit must be at least 1")
        if not FLOW_MIN_DEPTH <= self.flow_default_depth <= FLOW_MAX_DEPTH:
            raise ValueError(
                f"flow_default_depth must be between {FLOW_MIN_DEPTH} and {FLOW_MAX_DEPTH}"
            )
        if not RETENTION_MIN_PERIODS <= self.retention_default_periods <= RETENTION_MAX_PERIODS:
            raise ValueError(
                "retention_default_periods must be between "
                f"{RETENTION_MIN_PERIODS} and {RETENTION_MAX_PERIODS}"
            )
        if self.retention_default_granularity not in ("day", "week", "month"):
            raise ValueError("retention_default_granularity must be one of: 'day', 'week', 'month'")
