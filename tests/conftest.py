import pytest

from plan_runtime.data.store import DependencyStore, StepResult
from plan_runtime.data.resolver import PlaceholderResolver
from plan_runtime.streaming.sink import SessionStreams
from plan_runtime.tools.registry import ToolRegistry


ENTITY_SCHEMA = {
    "type": "object",
    "properties": {
        "entity": {"type": "string", "description": "Entity type"},
        "filters": {"type": "object", "description": "Conditions"},
    },
    "required": ["entity", "filters"],
}


@pytest.fixture
def store():
    return DependencyStore()


@pytest.fixture
def resolver(store):
    return PlaceholderResolver(store)


@pytest.fixture
def streams():
    s = SessionStreams()
    s.connect("sess")
    return s


@pytest.fixture
def calls():
    """Records every (tool, arguments) pair seen by the registry tools."""
    return []


@pytest.fixture
def registry(calls):
    reg = ToolRegistry()

    def fetch(filter: str = "") -> dict:
        calls.append(("fetch", {"filter": filter}))
        return {"id": "c-1", "name": "Ada", "tags": ["vip", "beta"], "nested": {"city": "Paris"}}

    def notify(target: str, message: str = "") -> str:
        calls.append(("notify", {"target": target, "message": message}))
        return f"sent:{target}"

    def boom(reason: str = "bad") -> None:
        calls.append(("boom", {"reason": reason}))
        raise RuntimeError(reason)

    async def echo(value=None):
        calls.append(("echo", {"value": value}))
        return {"value": value}

    def fetch_entity(entity: str, filters: dict) -> list:
        calls.append(("fetch_entity", {"entity": entity, "filters": filters}))
        return [{"entity": entity, **filters}]

    reg.register_callable(fetch)
    reg.register_callable(notify)
    reg.register_callable(boom)
    reg.register_callable(echo)
    reg.register_callable(fetch_entity, input_schema=ENTITY_SCHEMA)
    return reg


def save_completed(store, plan_id, step_id, output):
    store.save_step_result(StepResult.begin(plan_id, step_id).complete(output))
