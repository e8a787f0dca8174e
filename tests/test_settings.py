from __future__ import annotations

import pytest

from analysisbuilder.core.settings import AnalysisSettings


def test_defaults() -> None:
    settings = AnalysisSettings()

    assert settings.debounce_ms == 300
    assert settings.binding_key_limit == 500
    assert settings.flow_default_depth == 3
    assert settings.retention_default_periods == 12


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"debounce_ms": -1}, "debounce_ms must be non-negative"),
        ({"binding_key_limit": 0}, "binding_key_limit must be at least 1"),
        ({"flow_default_depth": 6}, "flow_default_depth must be between 0 and 5"),
        ({"retention_default_periods": 53}, "retention_default_periods must be between 1 and 52"),
        ({"retention_default_granularity": "year"}, "retention_default_granularity must be one of"),
    ],
)
def test_invalid_settings(kwargs: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        AnalysisSettings(**kwargs)
