import asyncio

from analysisbuilder import (
    BindingKey,
    FlowStartingStep,
    FunnelConfig,
    FunnelStep,
    Query,
    SemanticLayerClient,
    SimpleFilter,
    TimeDimension,
    build_flow_query,
    execute_flow,
    execute_funnel,
    execute_query,
)

API_URL = "http://localhost:4000/cubejs-api/v1"
TOKEN = None
DATE_RANGE = ("2024-01-01", "2024-01-31")


def event_step(step_id: str, event_name: str, time_to_convert: str | None = None) -> FunnelStep:
    return FunnelStep(
        id=step_id,
        name=event_name,
        query=Query(
            measures=["Events.count"],
            filters=[SimpleFilter("Events.name", "equals", event_name)],
            time_dimensions=[TimeDimension("Events.timestamp", granularity=None, date_range=DATE_RANGE)],
        ),
        time_to_convert=time_to_convert,
    )


async def main() -> None:
    async with SemanticLayerClient(API_URL, token=TOKEN) as client:
        page_views = await execute_query(
            Query(
                measures=["Events.count"],
                dimensions=["Events.platform"],
                time_dimensions=[TimeDimension("Events.timestamp", granularity="day", date_range=DATE_RANGE)],
                filters=[SimpleFilter("Events.name", "equals", "page_view")],
            ),
            client,
        )
        print(page_views.to_dataframe().tail())

        purchase_funnel = await execute_funnel(
            FunnelConfig(
                binding_key=BindingKey("Events.userId"),
                steps=[
                    event_step("view", "view_item"),
                    event_step("cart", "add_to_cart", "P1D"),
                    event_step("purchase", "purchase", "P7D"),
                ],
            ),
            client,
        )
        print(purchase_funnel.to_dataframe())

        flow = build_flow_query(
            cube="Events",
            binding_key=BindingKey("Events.userId"),
            time_dimension="Events.timestamp",
            event_dimension="Events.name",
            starting_step=FlowStartingStep("Purchase", [SimpleFilter("Events.name", "equals", "purchase")]),
            steps_before=2,
            steps_after=2,
        )
        if flow is not None:
            result = await execute_flow(flow, client)
            print(result.graph.to_dict())


if __name__ == "__main__":
    asyncio.run(main())
