"""Flow (Sankey/Sunburst) analysis around a starting step."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from ._members import is_member_path
from .client import QueryExecutor
from .errors import QueryExecutionError, ValidationResult, _IssueCollector
from .filters import validate_filters
from .settings import FLOW_DEFAULT_DEPTH, FLOW_MAX_DEPTH, FLOW_MIN_DEPTH
from .types import (
    BindingKey,
    FlowOutputMode,
    FlowStartingStep,
    JoinStrategy,
    Row,
)

logger = logging.getLogger(__name__)

FLOW_PATH_SEPARATOR = "→"
FLOW_DEPTH_WARNING = 4

FlowStatus = Literal["idle", "executing", "success", "error"]

_JOIN_STRATEGIES = ("auto", "lateral", "window")
_OUTPUT_MODES = ("sankey", "sunburst")


def clamp_depth(value: int) -> int:
    return max(FLOW_MIN_DEPTH, min(FLOW_MAX_DEPTH, int(value)))


@dataclass(frozen=True)
class FlowQueryConfig:
    """Server-side flow query around the events matching ``starting_step``."""

    cube: str
    binding_key: BindingKey
    time_dimension: str
    event_dimension: str
    starting_step: FlowStartingStep
    steps_before: int = FLOW_DEFAULT_DEPTH
    steps_after: int = FLOW_DEFAULT_DEPTH
    output_mode: FlowOutputMode = "sankey"
    join_strategy: JoinStrategy = "auto"
    entity_limit: int | None = None

    @property
    def binding_key_field(self) -> str | None:
        return self.binding_key.field_for(self.cube)

    def layers(self) -> range:
        return range(-self.steps_before, self.steps_after + 1)

    def to_dict(self) -> dict[str, Any]:
        filters = [node.to_dict() for node in self.starting_step.filters]
        flow: dict[str, Any] = {
            "bindingKey": self.binding_key.to_dict(),
            "timeDimension": self.time_dimension,
            "eventDimension": self.event_dimension,
            "startingStep": {
                "name": self.starting_step.name,
                "filter": filters[0] if len(filters) == 1 else filters,
            },
            "stepsBefore": self.steps_before,
            "stepsAfter": self.steps_after,
            "outputMode": self.output_mode,
            "joinStrategy": self.join_strategy,
        }
        if self.entity_limit is not None:
            flow["entityLimit"] = self.entity_limit
        return {"flow": flow}


@dataclass(frozen=True)
class FlowLayerQuery:
    """Request for the entities' events at one ``layer`` relative to the anchor."""

    flow: FlowQueryConfig
    layer: int

    def to_dict(self) -> dict[str, Any]:
        payload = self.flow.to_dict()
        payload["flow"]["layer"] = self.layer
        return payload


@dataclass(frozen=True)
class SankeyNode:
    id: str
    name: str
    layer: int
    value: int


@dataclass(frozen=True)
class SankeyLink:
    source: str
    target: str
    value: int


@dataclass(frozen=True)
class FlowGraph:
    nodes: tuple[SankeyNode, ...] = ()
    links: tuple[SankeyLink, ...] = ()

    def node(self, node_id: str) -> SankeyNode | None:
        return next((node for node in self.nodes if node.id == node_id), None)

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "nodes": [
                {"id": n.id, "name": n.name, "layer": n.layer, "value": n.value} for n in self.nodes
            ],
            "links": [{"source": l.source, "target": l.target, "value": l.value} for l in self.links],
        }


@dataclass(frozen=True)
class FlowResult:
    status: FlowStatus
    graph: FlowGraph = field(default_factory=FlowGraph)
    error: str | None = None
    validation: ValidationResult = field(default_factory=ValidationResult)


def build_flow_query(
    *,
    cube: str | None,
    binding_key: BindingKey | None,
    time_dimension: str | None,
    event_dimension: str | None,
    starting_step: FlowStartingStep,
    steps_before: int = FLOW_DEFAULT_DEPTH,
    steps_after: int = FLOW_DEFAULT_DEPTH,
    output_mode: FlowOutputMode = "sankey",
    join_strategy: JoinStrategy = "auto",
    entity_limit: int | None = None,
) -> FlowQueryConfig | None:
    """Return the flow query, or ``None`` while the configuration is incomplete.

    Depths are clamped to the supported range and sunburst output always
    explores forward only.
    """

    if not cube or binding_key is None or binding_key.is_empty:
        return None
    if not time_dimension or not event_dimension or not starting_step.filters:
        return None
    before = 0 if output_mode == "sunburst" else clamp_depth(steps_before)
    return FlowQueryConfig(
        cube=cube,
        binding_key=binding_key,
        time_dimension=time_dimension,
        event_dimension=event_dimension,
        starting_step=FlowStartingStep(
            name=starting_step.name or "Starting Step",
            filters=starting_step.filters,
        ),
        steps_before=before,
        steps_after=clamp_depth(steps_after),
        output_mode=output_mode,
        join_strategy=join_strategy,
        entity_limit=entity_limit,
    )


def validate_flow_config(config: FlowQueryConfig) -> ValidationResult:
    issues = _IssueCollector()
    if config.binding_key_field is None:
        issues.error("missing_binding_key", f"Binding key has no mapping for cube '{config.cube}'")
    for name, member in (("Time dimension", config.time_dimension), ("Event dimension", config.event_dimension)):
        if not is_member_path(member):
            issues.error("invalid_member", f"{name} '{member}' must be in 'Cube.member' format")
    if not config.starting_step.filters:
        issues.error("missing_starting_step", "Starting step requires at least one filter")
    for message in validate_filters(config.starting_step.filters):
        issues.error("invalid_filter", f"Starting step: {message}")
    for name, depth in (("steps_before", config.steps_before), ("steps_after", config.steps_after)):
        if not FLOW_MIN_DEPTH <= depth <= FLOW_MAX_DEPTH:
            issues.error("invalid_depth", f"{name} must be between {FLOW_MIN_DEPTH} and {FLOW_MAX_DEPTH}")
        elif depth >= FLOW_DEPTH_WARNING:
            issues.warn("deep_flow", f"{name} of {depth} may make the flow query slow")
    if config.output_mode == "sunburst" and config.steps_before:
        issues.error("invalid_depth", "Sunburst output only supports steps after the starting step")
    if config.output_mode not in _OUTPUT_MODES:
        issues.error("invalid_output_mode", f"output_mode must be one of: {', '.join(_OUTPUT_MODES)}")
    if config.join_strategy not in _JOIN_STRATEGIES:
        issues.error("invalid_join_strategy", f"join_strategy must be one of: {', '.join(_JOIN_STRATEGIES)}")
    return issues.result()


def node_id(layer: int, key: str) -> str:
    if layer < 0:
        return f"before_{-layer}_{key}"
    if layer == 0:
        return f"start_{key}"
    return f"after_{layer}_{key}"


def _layer_events(rows: Sequence[Row], entity_field: str, event_field: str) -> dict[Any, str]:
    events: dict[Any, str] = {}
    for row in rows:
        entity = row.get(entity_field)
        event = row.get(event_field)
        if entity is None or event is None:
            continue
        events.setdefault(entity, str(event))
    return events


def _entity_paths(config: FlowQueryConfig, layer_rows: Mapping[int, Sequence[Row]]) -> list[dict[int, str]]:
    """Return each anchored entity's events by layer, contiguous from layer 0."""

    entity_field = config.binding_key_field
    assert entity_field is not None
    chains = {
        entity: {0: event}
        for entity, event in _layer_events(layer_rows.get(0, ()), entity_field, config.event_dimension).items()
    }
    orphans = 0
    for direction, depth in ((1, config.steps_after), (-1, config.steps_before)):
        for distance in range(1, depth + 1):
            layer = direction * distance
            for entity, event in _layer_events(layer_rows.get(layer, ()), entity_field, config.event_dimension).items():
                chain = chains.get(entity)
                if chain is None or layer - direction not in chain:
                    orphans += 1
                    continue
                chain[layer] = event
    if orphans:
        logger.warning("Dropped %s flow events with no path back to the starting step", orphans)
    return list(chains.values())


def assemble_flow_graph(config: FlowQueryConfig, layer_rows: Mapping[int, Sequence[Row]]) -> FlowGraph:
    """Fold per-layer entity events into Sankey or Sunburst nodes and links.

    Sankey nodes are keyed by ``(layer, event)``; sunburst nodes by the full
    event path from the starting step, so identical events reached through
    different paths stay separate.
    """

    sunburst = config.output_mode == "sunburst"
    node_values: Counter[tuple[int, str]] = Counter()
    node_names: dict[tuple[int, str], str] = {}
    link_values: Counter[tuple[str, str]] = Counter()

    def key_for(chain: dict[int, str], layer: int) -> str:
        if not sunburst:
            return chain[layer]
        return FLOW_PATH_SEPARATOR.join(chain[step] for step in range(0, layer + 1))

    for chain in _entity_paths(config, layer_rows):
        for layer in chain:
            key = (layer, key_for(chain, layer))
            node_values[key] += 1
            node_names[key] = chain[layer]
            if layer > 0:
                link_values[(node_id(layer - 1, key_for(chain, layer - 1)), node_id(layer, key[1]))] += 1
            elif layer < 0:
                link_values[(node_id(layer, key[1]), node_id(layer + 1, key_for(chain, layer + 1)))] += 1

    nodes = sorted(
        (
            SankeyNode(id=node_id(layer, key), name=node_names[(layer, key)], layer=layer, value=value)
            for (layer, key), value in node_values.items()
        ),
        key=lambda node: (node.layer, -node.value, node.name),
    )
    links = sorted(
        (SankeyLink(source=source, target=target, value=value) for (source, target), value in link_values.items()),
        key=lambda link: (link.source, -link.value, link.target),
    )
    return FlowGraph(nodes=tuple(nodes), links=tuple(links))


def transform_flow_result(rows: Sequence[Row]) -> FlowGraph:
    """Build a graph from server rows tagged ``record_type`` ``node``/``link``.

    Links pointing at node ids absent from the result are dropped.
    """

    nodes: list[SankeyNode] = []
    links: list[SankeyLink] = []
    for row in rows:
        record_type = row.get("record_type")
        if record_type == "node":
            nodes.append(
                SankeyNode(
                    id=str(row["id"]),
                    name=str(row["name"]),
                    layer=int(row["layer"]),
                    value=int(float(row["value"])),
                )
            )
        elif record_type == "link":
            links.append(
                SankeyLink(
                    source=str(row["source_id"]),
                    target=str(row["target_id"]),
                    value=int(float(row["value"])),
                )
            )

    known = {node.id for node in nodes}
    kept = [link for link in links if link.source in known and link.target in known]
    if len(kept) != len(links):
        logger.warning("Dropped %s flow links referencing unknown nodes", len(links) - len(kept))
    nodes.sort(key=lambda node: node.layer)
    return FlowGraph(nodes=tuple(nodes), links=tuple(kept))


async def execute_flow(config: FlowQueryConfig, executor: QueryExecutor) -> FlowResult:
    """Fetch every layer concurrently and assemble the graph once all have returned."""

    validation = validate_flow_config(config)
    if not validation.is_valid:
        return FlowResult(
            status="error",
            error="; ".join(issue.message for issue in validation.errors),
            validation=validation,
        )

    layer_queries = [FlowLayerQuery(flow=config, layer=layer) for layer in config.layers()]
    responses = await asyncio.gather(
        *(executor.execute(query) for query in layer_queries),
        return_exceptions=True,
    )

    layer_rows: dict[int, Sequence[Row]] = {}
    for query, response in zip(layer_queries, responses):
        if isinstance(response, BaseException):
            if not isinstance(response, Exception):
                raise response
            failure = QueryExecutionError.wrap(response, query=query)
            logger.warning("Flow layer %s failed: %s", query.layer, failure)
            return FlowResult(
                status="error",
                error=f"Flow layer {query.layer} failed: {failure}",
                validation=validation,
            )
        layer_rows[query.layer] = response

    return FlowResult(
        status="success",
        graph=assemble_flow_graph(config, layer_rows),
        validation=validation,
    )


__all__ = [
    "FLOW_DEPTH_WARNING",
    "FLOW_PATH_SEPARATOR",
    "FlowGraph",
    "FlowLayerQuery",
    "FlowQueryConfig",
    "FlowResult",
    "FlowStatus",
    "SankeyLink",
    "SankeyNode",
    "assemble_flow_graph",
    "build_flow_query",
    "clamp_depth",
    "execute_flow",
    "node_id",
    "transform_flow_result",
    "validate_flow_config",
]
