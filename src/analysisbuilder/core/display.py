"""Display option schemas for the chart types a result can be rendered as.

Each chart type declares an ordered list of :class:`DisplayOption`
descriptors.  :func:`resolve_display_config` turns a raw, possibly stale
mapping coming from the presentation layer into a complete configuration
with every value coerced to its declared kind.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

logger = logging.getLogger(__name__)

OptionKind = Literal[
    "boolean",
    "string",
    "number",
    "select",
    "color",
    "axisFormat",
    "stringArray",
    "buttonGroup",
    "paletteColor",
]

_HEX_COLOR = re.compile(r"#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})")
_AXIS_UNITS = ("number", "currency", "percent")


@dataclass(frozen=True)
class DisplayOption:
    key: str
    kind: OptionKind
    label: str
    default: Any = None
    choices: tuple[str, ...] = ()
    min: float | None = None
    max: float | None = None


def _bool(key: str, label: str, default: bool) -> DisplayOption:
    return DisplayOption(key=key, kind="boolean", label=label, default=default)


_LEGEND = _bool("showLegend", "Show legend", True)
_GRID = _bool("showGrid", "Show grid", True)
_TOOLTIP = _bool("showTooltip", "Show tooltip", True)
_AXIS_FORMAT = DisplayOption(
    key="leftYAxisFormat",
    kind="axisFormat",
    label="Left Y axis format",
    default={"unit": "number", "decimals": None},
)
_STACKING = DisplayOption(
    key="stacked",
    kind="buttonGroup",
    label="Stacking",
    default="none",
    choices=("none", "normal", "percent"),
)
_PALETTE_COLOR = DisplayOption(key="paletteColor", kind="paletteColor", label="Series color", default=0, min=0)
_TARGET = DisplayOption(key="target", kind="string", label="Target value", default="")

CHART_DISPLAY_OPTIONS: dict[str, tuple[DisplayOption, ...]] = {
    "bar": (_LEGEND, _GRID, _TOOLTIP, _STACKING, _AXIS_FORMAT, _TARGET),
    "line": (
        _LEGEND,
        _GRID,
        _TOOLTIP,
        _bool("smooth", "Smooth lines", False),
        _AXIS_FORMAT,
        _TARGET,
        DisplayOption(key="priorPeriodStyle", kind="select", label="Prior period style", default="dashed", choices=("solid", "dashed", "dotted")),
    ),
    "area": (_LEGEND, _GRID, _TOOLTIP, _STACKING, _AXIS_FORMAT),
    "pie": (_LEGEND, _TOOLTIP, _bool("showPercentages", "Show percentages", True)),
    "table": (
        _bool("pivotTimeDimension", "Pivot time dimension", False),
        DisplayOption(key="hiddenColumns", kind="stringArray", label="Hidden columns", default=()),
    ),
    "kpiNumber": (
        DisplayOption(key="prefix", kind="string", label="Prefix", default=""),
        DisplayOption(key="suffix", kind="string", label="Suffix", default=""),
        DisplayOption(key="decimals", kind="number", label="Decimals", default=0, min=0, max=10),
        DisplayOption(key="valueColor", kind="color", label="Value color", default="#111827"),
        _PALETTE_COLOR,
    ),
    "funnel": (
        DisplayOption(key="orientation", kind="select", label="Orientation", default="horizontal", choices=("horizontal", "vertical")),
        _bool("showConversionRates", "Show conversion rates", True),
        _PALETTE_COLOR,
    ),
    "sankey": (
        _TOOLTIP,
        DisplayOption(key="linkOpacity", kind="number", label="Link opacity", default=0.5, min=0, max=1),
        DisplayOption(key="nodeAlign", kind="buttonGroup", label="Node alignment", default="justify", choices=("left", "right", "center", "justify")),
    ),
    "sunburst": (_TOOLTIP, _bool("showLabels", "Show labels", True)),
    "retentionHeatmap": (
        DisplayOption(key="displayMode", kind="select", label="Display", default="heatmap", choices=("heatmap", "line", "combined")),
        _bool("showPercentages", "Show percentages", True),
        DisplayOption(key="heatColor", kind="color", label="Heat color", default="#2563eb"),
    ),
}


def display_options(chart_type: str) -> tuple[DisplayOption, ...]:
    options = CHART_DISPLAY_OPTIONS.get(chart_type)
    if options is None:
        raise ValueError(
            f"Invalid chart type: '{chart_type}'. Valid types: {sorted(CHART_DISPLAY_OPTIONS)}"
        )
    return options


def _clamp(option: DisplayOption, value: float) -> float:
    if option.min is not None:
        value = max(option.min, value)
    if option.max is not None:
        value = min(option.max, value)
    return value


def coerce_option(option: DisplayOption, value: Any) -> Any:
    """Return ``value`` as the option's kind, or the default when it cannot be."""

    kind = option.kind
    if kind == "boolean":
        return value if isinstance(value, bool) else option.default
    if kind == "string":
        return value if isinstance(value, str) else option.default
    if kind == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return option.default
        return _clamp(option, value)
    if kind in ("select", "buttonGroup"):
        return value if value in option.choices else option.default
    if kind == "color":
        return value if isinstance(value, str) and _HEX_COLOR.fullmatch(value) else option.default
    if kind == "stringArray":
        if isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
            return tuple(value)
        return option.default
    if kind == "paletteColor":
        if isinstance(value, int) and not isinstance(value, bool):
            return int(_clamp(option, value))
        return value if isinstance(value, str) and _HEX_COLOR.fullmatch(value) else option.default
    if kind == "axisFormat":
        if not isinstance(value, Mapping):
            return dict(option.default)
        unit = value.get("unit")
        decimals = value.get("decimals")
        return {
            "unit": unit if unit in _AXIS_UNITS else option.default["unit"],
            "decimals": decimals if isinstance(decimals, int) and not isinstance(decimals, bool) and decimals >= 0 else None,
        }
    raise ValueError(f"Unsupported display option kind: {kind}")


def resolve_display_config(chart_type: str, raw: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Return a complete display configuration for ``chart_type``.

    Unknown keys are dropped and invalid values fall back to the defaults.
    """

    options = display_options(chart_type)
    raw = raw or {}
    unknown = set(raw) - {option.key for option in options}
    if unknown:
        logger.debug("Ignoring display options not supported by %s: %s", chart_type, sorted(unknown))
    resolved: dict[str, Any] = {}
    for option in options:
        if option.key in raw:
            resolved[option.key] = coerce_option(option, raw[option.key])
        elif isinstance(option.default, Mapping):
            resolved[option.key] = dict(option.default)
        else:
            resolved[option.key] = option.default
    return resolved


__all__ = [
    "CHART_DISPLAY_OPTIONS",
    "DisplayOption",
    "OptionKind",
    "coerce_option",
    "display_options",
    "resolve_display_config",
]
