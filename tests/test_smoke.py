import json

import httpx
import pytest

from analysisbuilder import (
    AnalysisSession,
    AnalysisSettings,
    BindingKey,
    FlowStartingStep,
    Query,
    SemanticLayerClient,
    SimpleFilter,
    build_flow_query,
    execute_flow,
)


def _cube_api(request: httpx.Request) -> httpx.Response:
    # Minimal stand-in for the semantic layer: answers /load based on the query shape.
    query = json.loads(request.url.params["query"])
    if "flow" in query:
        layer = query["flow"]["layer"]
        event = "Purchase" if layer == 0 else "Checkout"
        return httpx.Response(200, json={"data": [{"Events.userId": "u1", "Events.name": event}]})
    return httpx.Response(200, json={"data": [{"Orders.status": "paid", "Orders.count": "3"}]})


def _client() -> SemanticLayerClient:
    return SemanticLayerClient(
        "https://cube.test/cubejs-api/v1",
        client=httpx.AsyncClient(transport=httpx.MockTransport(_cube_api)),
    )


@pytest.mark.asyncio
async def test_session_query_smoke():
    async with _client() as client:
        session = AnalysisSession(client, settings=AnalysisSettings(auto_execute=False))
        session.add_metric("Orders.count")
        session.add_breakdown("Orders.status")
        result = await session.refresh()

    assert result.status == "success"
    assert result.to_dataframe().to_dict("records") == [{"Orders.status": "paid", "Orders.count": "3"}]


@pytest.mark.asyncio
async def test_flow_smoke():
    config = build_flow_query(
        cube="Events",
        binding_key=BindingKey("Events.userId"),
        time_dimension="Events.timestamp",
        event_dimension="Events.name",
        starting_step=FlowStartingStep(name="Purchase", filters=[SimpleFilter("Events.name", "equals", "Purchase")]),
        steps_before=0,
        steps_after=1,
    )
    async with _client() as client:
        result = await execute_flow(config, client)

    assert result.status == "success"
    assert [node.id for node in result.graph.nodes] == ["start_Purchase", "after_1_Checkout"]


def test_query_is_hashable_smoke():
    assert len({Query(measures=["Orders.count"]), Query(measures=("Orders.count",))}) == 1
