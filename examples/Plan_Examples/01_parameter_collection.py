import asyncio
import logging
from pathlib import Path

from plan_runtime.session import SessionController
from plan_runtime.streaming.accumulator import ToolCallAccumulator, ToolCallFragment
from plan_runtime.streaming.sink import SessionStreams
from plan_runtime.tools.registry import ToolRegistry

logging.basicConfig(level=logging.INFO)

CONFIG = Path(__file__).with_name("tool-config.json")


def fetch_entity(entity: str, identifier: str = "", filters: dict | None = None) -> list:
    return [{"entity": entity, "filters": filters or {}, "id": identifier or "c-1"}]


registry = ToolRegistry()
registry.load_config(CONFIG, handlers={"fetch_entity": fetch_entity})

streams = SessionStreams()
controller = SessionController(registry, streams)


async def main() -> None:
    streams.connect("s-1")

    # A streamed tool call that only names the entity
    acc = ToolCallAccumulator()
    acc.add(ToolCallFragment(index=0, id="call_1", name="fetch_", type="function"))
    acc.add(ToolCallFragment(index=0, name="entity", arguments_chunk='{"entity": '))
    acc.add(ToolCallFragment(index=0, arguments_chunk='"Contact"}'))

    action = await controller.handle_tool_calls("s-1", acc.finalize())
    print(action.status.value, action.missing_parameters)

    await controller.handle_message("s-1", {
        "type": "update_parameter",
        "payload": {"actionId": action.id, "paramName": "filters", "value": {"status": "active"}},
    })
    print(action.status.value)

    await controller.handle_message("s-1", {"type": "execute", "payload": {"actionId": action.id}})
    print(action.status.value, action.result)

    for event in streams.drain("s-1"):
        print(event.type, "|", event.content["analysis"] if isinstance(event.content, dict) else event.content)


asyncio.run(main())
