import asyncio
import logging

from dotenv import load_dotenv

from plan_runtime.config import RuntimeSettings
from plan_runtime.engines.LLMEngines import OpenAIEngine
from plan_runtime.session import SessionController
from plan_runtime.streaming.sink import SessionStreams
from plan_runtime.tools.registry import ToolRegistry

load_dotenv()
logging.basicConfig(level=logging.INFO)

settings = RuntimeSettings.from_env()
engine = OpenAIEngine.from_settings(settings)

registry = ToolRegistry()
if settings.tool_config_path:
    registry.load_config(settings.tool_config_path)


def get_weather(city: str) -> dict:
    """Return the (fake) current weather for a city."""
    return {"city": city, "forecast": "sunny", "temp_c": 21}


def send_summary(to: str, text: str) -> str:
    """Send a one-line summary to a recipient."""
    return f"sent to {to}: {text}"


registry.register_callable(get_weather)
registry.register_callable(send_summary)

streams = SessionStreams()
controller = SessionController(registry, streams, engine=engine, settings=settings)


async def main() -> None:
    streams.connect("cli")
    outcome = await controller.converse("cli", [
        {"role": "system", "content": "Use tools. Reference earlier results with {{step:<call id>.<field>}}."},
        {"role": "user", "content": "Get the weather in Lisbon and send a summary to ops@example.com."},
    ])
    print("Outcome:", outcome)
    for event in streams.drain("cli"):
        print(event.type, event.content)
    streams.disconnect("cli")
    await controller.shutdown()


asyncio.run(main())
