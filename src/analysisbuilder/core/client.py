"""Query execution against a Cube-style semantic layer over HTTP."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from .errors import QueryExecutionError
from .types import Row

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "/cubejs-api/v1"


class SupportsToDict(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


@dataclass(frozen=True)
class DryRunResult:
    """Generated SQL and analysis returned by a dry run, for inspection only."""

    sql: str | None
    params: tuple[Any, ...] = ()
    analysis: Mapping[str, Any] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> DryRunResult:
        sql: Any = payload.get("sql")
        params: tuple[Any, ...] = ()
        if isinstance(sql, Mapping):
            sql = sql.get("sql")
        if isinstance(sql, (list, tuple)):
            sql, params = sql[0], tuple(sql[1]) if len(sql) > 1 else ()
        return cls(
            sql=sql,
            params=params,
            analysis=payload.get("analysis") or {},
            raw=payload,
        )


class QueryExecutor(Protocol):
    """Anything able to run a query object and return its rows."""

    async def execute(self, query: SupportsToDict) -> list[Row]: ...

    async def dry_run(self, query: SupportsToDict) -> DryRunResult: ...


class SemanticLayerClient:
    """Minimal async client for the semantic-layer REST API."""

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        *,
        token: str | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.headers = dict(headers or {})
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        headers = dict(self.headers)
        if self.token:
            headers["Authorization"] = self.token
        return headers

    @staticmethod
    def _error_message(response: httpx.Response, prefix: str) -> str:
        message = f"{prefix}: {response.status_code}"
        try:
            payload = response.json()
        except ValueError:
            return f"{message} {response.text}".strip()
        if isinstance(payload, Mapping) and payload.get("error"):
            return str(payload["error"])
        return f"{message} {response.text}".strip()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        error_prefix: str,
        query: SupportsToDict | None = None,
        **kwargs: Any,
    ) -> Any:
        url = f"{self.api_url}{path}"
        try:
            response = await self.client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise QueryExecutionError(f"{error_prefix}: {exc}", query=query) from exc
        if response.is_error:
            message = self._error_message(response, error_prefix)
            logger.warning("%s %s failed with %s: %s", method, path, response.status_code, message)
            raise QueryExecutionError(message, query=query, status_code=response.status_code)
        return response.json()

    async def execute(self, query: SupportsToDict) -> list[Row]:
        """Run ``query`` through ``/load`` and return its data rows."""

        payload = await self._request(
            "GET",
            "/load",
            error_prefix="Query failed",
            query=query,
            params={"query": json.dumps(query.to_dict())},
        )
        return list(payload.get("data") or [])

    async def dry_run(self, query: SupportsToDict) -> DryRunResult:
        payload = await self._request(
            "POST",
            "/dry-run",
            error_prefix="Dry run failed",
            query=query,
            json={"query": query.to_dict()},
        )
        return DryRunResult.from_payload(payload)

    async def meta(self) -> dict[str, Any]:
        return await self._request("GET", "/meta", error_prefix="Failed to fetch meta")

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> SemanticLayerClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = [
    "DEFAULT_API_URL",
    "DryRunResult",
    "QueryExecutor",
    "SemanticLayerClient",
    "SupportsToDict",
]
