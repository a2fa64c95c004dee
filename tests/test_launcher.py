import pytest

from plan_runtime.actions.launcher import ActionLauncher, ActionStatus
from plan_runtime.core.Exceptions import (
    ActionNotFoundError,
    ActionStateError,
    ParameterNotFoundError,
)
from plan_runtime.streaming.sink import EventType
from plan_runtime.tools.registry import ToolRegistry


AB_SCHEMA = {
    "type": "object",
    "properties": {
        "a": {"type": "string"},
        "b": {"type": "integer"},
        "note": {"type": "string"},
    },
    "required": ["a", "b"],
}


@pytest.fixture
def ab_registry(calls):
    reg = ToolRegistry()

    def ab(a: str, b: int, note: str = "") -> str:
        calls.append(("ab", {"a": a, "b": b}))
        return f"{a}:{b}"

    def fail_ab(a: str, b: int) -> str:
        raise RuntimeError("downstream unavailable")

    reg.register_callable(ab, input_schema=AB_SCHEMA)
    reg.register_callable(fail_ab, input_schema=AB_SCHEMA)
    return reg


@pytest.fixture
def launcher(ab_registry, streams):
    return ActionLauncher(ab_registry, sink=streams)


def test_missing_required_starts_collecting(launcher, streams):
    action = launcher.propose("sess", "ab", {"a": "x"})
    assert action.status is ActionStatus.COLLECTING_PARAMETERS
    assert action.missing_parameters == ["b"]
    event = streams.drain("sess")[-1]
    assert event.type == EventType.PARAMETER_COLLECTION_REQUIRED
    assert event.content["actions"][0]["missingParameters"] == ["b"]
    assert "b" in event.content["analysis"]


def test_missing_parameters_follow_declared_order(launcher):
    action = launcher.propose("sess", "ab", {})
    assert action.missing_parameters == ["a", "b"]


@pytest.mark.parametrize("empty", [None, "", "   "])
def test_empty_values_count_as_missing(launcher, empty):
    action = launcher.propose("sess", "ab", {"a": empty, "b": 1})
    assert action.missing_parameters == ["a"]


def test_supplying_last_parameter_makes_ready(launcher, streams):
    action = launcher.propose("sess", "ab", {"a": "x"})
    launcher.update_parameter(action.id, "b", 2)
    assert action.status is ActionStatus.READY
    assert action.missing_parameters == []
    assert launcher.last_presented("sess") == action.id
    assert streams.drain("sess")[-1].type == EventType.ACTION_READY_FOR_CONFIRMATION


def test_type_invalid_value_keeps_collecting(launcher):
    action = launcher.propose("sess", "ab", {"a": "x"})
    launcher.update_parameter(action.id, "b", "two")
    assert action.status is ActionStatus.COLLECTING_PARAMETERS
    assert action.missing_parameters == ["b"]


def test_clearing_a_value_returns_to_collecting(launcher):
    action = launcher.propose("sess", "ab", {"a": "x", "b": 1})
    assert action.status is ActionStatus.READY
    launcher.update_parameter(action.id, "a", " ")
    assert action.status is ActionStatus.COLLECTING_PARAMETERS
    assert action.missing_parameters == ["a"]
    assert launcher.last_presented("sess") is None


def test_complete_call_is_ready_immediately(launcher, streams):
    action = launcher.propose("sess", "ab", {"a": "x", "b": 1}, description="do ab")
    assert action.status is ActionStatus.READY
    assert streams.drain("sess")[-1].type == EventType.ACTION_CONFIRMATION_REQUIRED


@pytest.mark.asyncio
async def test_execute_requires_last_presented_id(launcher, calls):
    first = launcher.propose("sess", "ab", {"a": "x", "b": 1})
    second = launcher.propose("sess", "ab", {"a": "y", "b": 2})

    assert await launcher.execute("sess", "nope") is None
    assert await launcher.execute("sess", first.id) is None
    assert first.status is ActionStatus.READY
    assert calls == []

    done = await launcher.execute("sess", second.id)
    assert done is second
    assert second.status is ActionStatus.COMPLETED
    assert second.result == "y:2"
    assert calls == [("ab", {"a": "y", "b": 2})]


@pytest.mark.asyncio
async def test_execute_failure_is_terminal(launcher, streams):
    action = launcher.propose("sess", "fail_ab", {"a": "x", "b": 1})
    await launcher.execute("sess", action.id)
    assert action.status is ActionStatus.FAILED
    assert "downstream unavailable" in action.error
    event = streams.drain("sess")[-1]
    assert event.type == EventType.ACTION_FAILED
    assert event.content["analysis"].startswith("Action 'fail_ab' failed:")
    assert event.is_final


@pytest.mark.asyncio
async def test_terminal_actions_reject_updates(launcher):
    action = launcher.propose("sess", "ab", {"a": "x", "b": 1})
    await launcher.execute("sess", action.id)
    with pytest.raises(ActionStateError):
        launcher.update_parameter(action.id, "a", "z")
    # executing twice is a no-op
    assert await launcher.execute("sess", action.id) is None


def test_unknown_action_and_parameter(launcher):
    action = launcher.propose("sess", "ab", {"a": "x"})
    with pytest.raises(ActionNotFoundError):
        launcher.update_parameter("missing", "a", 1)
    with pytest.raises(ParameterNotFoundError):
        launcher.update_parameter(action.id, "zzz", 1)


def test_complete_outside_executing_raises(launcher):
    action = launcher.propose("sess", "ab", {"a": "x", "b": 1})
    with pytest.raises(ActionStateError):
        launcher.complete(action, "result")


def test_entity_filters_collection_flow(registry, streams):
    launcher = ActionLauncher(registry, sink=streams)
    action = launcher.propose("sess", "fetch_entity", {"entity": "Contact"})
    assert action.status is ActionStatus.COLLECTING_PARAMETERS
    assert action.missing_parameters == ["filters"]

    launcher.update_parameter(action.id, "filters", {"status": "active"})
    assert action.status is ActionStatus.READY
    assert action.arguments == {"entity": "Contact", "filters": {"status": "active"}}


def test_fetch_without_scope_synthesizes_filters(streams):
    reg = ToolRegistry()
    reg.register_callable(
        lambda entity, identifier="", filters=None: [],
        name="fetch_records",
        input_schema={
            "type": "object",
            "properties": {
                "entity": {"type": "string"},
                "identifier": {"type": "string"},
            },
            "required": ["entity"],
        },
    )
    launcher = ActionLauncher(reg, sink=streams)

    action = launcher.propose("sess", "fetch_records", {"entity": "Account"})
    assert action.status is ActionStatus.COLLECTING_PARAMETERS
    assert action.missing_parameters == ["filters"]
    assert action.parameter("filters") is not None
    assert "filters" in action.parameter("filters").description

    launcher.update_parameter(action.id, "filters", {"industry": "Energy"})
    assert action.status is ActionStatus.READY

    scoped = launcher.propose("sess", "fetch_records", {"entity": "Account", "identifier": "all"})
    assert scoped.status is ActionStatus.READY


def test_discard_session(launcher):
    launcher.propose("sess", "ab", {"a": "x", "b": 1})
    launcher.propose("other", "ab", {})
    assert launcher.discard_session("sess") == 1
    assert launcher.actions_for("sess") == []
    assert launcher.last_presented("sess") is None
    assert len(launcher.actions_for("other")) == 1


SEARCH_SCHEMA = {
    "type": "object",
    "$defs": {
        "Filter": {
            "type": "object",
            "properties": {"status": {"type": "string"}},
        },
    },
    "properties": {
        "entity": {"type": "string"},
        "where": {"$ref": "#/$defs/Filter"},
    },
    "required": ["entity", "where"],
}


@pytest.fixture
def search_registry():
    reg = ToolRegistry()
    reg.register_callable(lambda entity, where: [], name="search_entity", input_schema=SEARCH_SCHEMA)
    dangling = {
        "type": "object",
        "properties": {"where": {"$ref": "#/$defs/Missing"}},
        "required": ["where"],
    }
    reg.register_callable(lambda where: [], name="search_dangling", input_schema=dangling)
    return reg


def test_referenced_property_schemas_are_resolved(search_registry, streams):
    launcher = ActionLauncher(search_registry, sink=streams)

    ok = launcher.propose("sess", "search_entity", {"entity": "Lead", "where": {"status": "open"}})
    assert ok.status is ActionStatus.READY

    bad = launcher.propose("sess", "search_entity", {"entity": "Lead", "where": "open"})
    assert bad.status is ActionStatus.COLLECTING_PARAMETERS
    assert bad.missing_parameters == ["where"]

    launcher.update_parameter(bad.id, "where", {"status": "won"})
    assert bad.status is ActionStatus.READY


@pytest.mark.asyncio
async def test_unresolvable_reference_does_not_break_analysis(search_registry, streams):
    launcher = ActionLauncher(search_registry, sink=streams)
    action = launcher.propose("sess", "search_dangling", {"where": {"status": "open"}})
    assert action.status is ActionStatus.READY

    done = await launcher.execute("sess", action.id)
    assert done.status is ActionStatus.FAILED
    assert "unresolvable schema reference" in done.error
