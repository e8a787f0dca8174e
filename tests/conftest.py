from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import pytest

from analysisbuilder.core.client import DryRunResult, SupportsToDict
from analysisbuilder.core.types import Row

Responder = Callable[[Any], Sequence[Row]]


class FakeExecutor:
    """Query executor returning canned rows.

    ``responses`` is either a list consumed in call order (exceptions in it are
    raised) or a callable computing rows from the query.
    """

    def __init__(self, responses: list[Any] | Responder | None = None) -> None:
        self.responses = responses if responses is not None else []
        self.queries: list[Any] = []
        self.dry_runs: list[Any] = []

    async def execute(self, query: SupportsToDict) -> list[Row]:
        self.queries.append(query)
        if callable(self.responses):
            response: Any = self.responses(query)
        else:
            response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return list(response)

    async def dry_run(self, query: SupportsToDict) -> DryRunResult:
        self.dry_runs.append(query)
        return DryRunResult(sql="SELECT 1", params=(), analysis={}, raw={"query": query.to_dict()})


@pytest.fixture
def fake_executor() -> type[FakeExecutor]:
    return FakeExecutor
