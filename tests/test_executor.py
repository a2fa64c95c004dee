import asyncio

import pytest

from plan_runtime.core.Exceptions import PlanExecutionError, PlanValidationError
from plan_runtime.data.store import StepStatus
from plan_runtime.plans.executor import PlanExecutor
from plan_runtime.plans.models import (
    ExecutionMode,
    FailurePolicy,
    Plan,
    PlanStep,
    Run,
    RunStatus,
    StepState,
)
from plan_runtime.streaming.sink import EventType


def _run(steps, **kwargs):
    return Run(plan=Plan.from_dict({"steps": steps, "session_id": "sess", **kwargs}))


@pytest.mark.asyncio
async def test_fallback_end_to_end(store, registry, calls):
    run = _run([
        {"id": "s1", "tool": "fetch", "args": {"filter": "active"}},
        {"id": "s2", "tool": "notify", "args": {"target": "{{step:s1.contactEmail|fallback(none@none)}}"}},
    ])
    await PlanExecutor(store, registry).execute(run)

    assert run.status is RunStatus.COMPLETED
    assert calls == [
        ("fetch", {"filter": "active"}),
        ("notify", {"target": "none@none", "message": ""}),
    ]
    assert run.results["s2"].raw_output == "sent:none@none"


@pytest.mark.asyncio
async def test_later_step_sees_earlier_result(store, registry, calls):
    run = _run([
        {"id": "1", "tool": "fetch"},
        {"id": "2", "tool": "notify", "args": {"target": "{{step:1.id}}", "message": "{{step:1.nested.city}}"}},
    ])
    await PlanExecutor(store, registry).execute(run)
    assert calls[1] == ("notify", {"target": "c-1", "message": "Paris"})
    assert store.get_step_result(run.plan_id, "1").status is StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_forward_reference_resolves_to_fallback(store, registry, calls):
    run = _run([
        {"id": "a", "tool": "notify", "args": {"target": "{{step:b.id|fallback(early)}}"}},
        {"id": "b", "tool": "fetch"},
    ])
    await PlanExecutor(store, registry).execute(run)
    assert calls[0] == ("notify", {"target": "early", "message": ""})


@pytest.mark.asyncio
async def test_steps_run_strictly_in_order(store):
    order = []
    release = asyncio.Event()

    class SlowInvoker:
        async def invoke(self, tool_name, arguments):
            order.append(("start", tool_name, dict(arguments)))
            if tool_name == "first":
                await release.wait()
            order.append(("end", tool_name))
            return {"id": tool_name}

    run = _run([
        {"id": "1", "tool": "first"},
        {"id": "2", "tool": "second", "args": {"ref": "{{step:1.id}}"}},
    ])
    task = asyncio.create_task(PlanExecutor(store, SlowInvoker()).execute(run))
    for _ in range(5):
        await asyncio.sleep(0)
    assert order == [("start", "first", {})]
    assert store.get_step_result(run.plan_id, "1").status is StepStatus.RUNNING

    release.set()
    await task
    assert order == [
        ("start", "first", {}),
        ("end", "first"),
        ("start", "second", {"ref": "first"}),
        ("end", "second"),
    ]


@pytest.mark.asyncio
async def test_fail_fast_stops_at_first_failure(store, registry, calls, streams):
    run = _run([
        {"id": "s1", "tool": "fetch"},
        {"id": "s2", "tool": "boom", "args": {"reason": "nope"}},
        {"id": "s3", "tool": "notify", "args": {"target": "x"}},
    ])
    executor = PlanExecutor(store, registry, streams, failure_policy=FailurePolicy.FAIL_FAST)
    await executor.execute(run)

    assert run.status is RunStatus.FAILED
    assert [c[0] for c in calls] == ["fetch", "boom"]
    assert run.plan.step("s3").status is StepState.SKIPPED
    assert run.results["s2"].status is StepStatus.FAILED
    assert "nope" in run.results["s2"].error

    events = streams.drain("sess")
    errors = [e for e in events if e.type == EventType.ERROR]
    assert len(errors) == 1
    assert errors[0].content.startswith("Action 'boom' failed:")
    assert events[-1].type == EventType.RUN_UPDATED
    assert events[-1].content["status"] == "failed"
    assert events[-1].is_final


@pytest.mark.asyncio
async def test_best_effort_continues_and_reports_partial(store, registry, calls):
    run = _run([
        {"id": "s1", "tool": "boom"},
        {"id": "s2", "tool": "notify", "args": {"target": "{{step:s1.x|fallback(nobody)}}"}},
    ])
    await PlanExecutor(store, registry, failure_policy=FailurePolicy.BEST_EFFORT).execute(run)
    assert run.status is RunStatus.PARTIALLY_FAILED
    assert calls[-1] == ("notify", {"target": "nobody", "message": ""})


@pytest.mark.asyncio
async def test_best_effort_all_failed_is_failed(store, registry):
    run = _run([{"id": "s1", "tool": "boom"}, {"id": "s2", "tool": "boom"}])
    await PlanExecutor(store, registry, failure_policy="best_effort").execute(run)
    assert run.status is RunStatus.FAILED


@pytest.mark.asyncio
async def test_unknown_tool_fails_the_step(store, registry):
    run = _run([{"id": "s1", "tool": "does_not_exist"}])
    await PlanExecutor(store, registry).execute(run)
    assert run.status is RunStatus.FAILED
    assert "does_not_exist" in run.results["s1"].error


@pytest.mark.asyncio
async def test_timeout_counts_as_failure(store):
    class Hanging:
        async def invoke(self, tool_name, arguments):
            raise asyncio.TimeoutError()

    run = _run([{"id": "s1", "tool": "slow"}])
    await PlanExecutor(store, Hanging()).execute(run)
    assert run.status is RunStatus.FAILED
    assert run.results["s1"].status is StepStatus.FAILED


@pytest.mark.asyncio
async def test_completed_steps_are_skipped(store, registry, calls):
    run = _run([
        {"id": "s1", "tool": "fetch", "status": "completed"},
        {"id": "s2", "tool": "notify", "args": {"target": "t"}},
    ])
    await PlanExecutor(store, registry).execute(run)
    assert [c[0] for c in calls] == ["notify"]
    assert run.status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_output_tag_extract_and_plan_tags(store, registry, calls):
    run = _run(
        [
            {"id": "s1", "tool": "fetch", "output_tag": "contact", "extract": {"who": "name", "tag": "tags.0"}},
            {"id": "s2", "tool": "notify", "args": {
                "target": "{{plan:contact|extract(\"who\")}}",
                "message": "{{plan:greeting}} {{plan:contact.who|fallback(?)}}",
            }},
        ],
        tags={"greeting": "hi"},
    )
    await PlanExecutor(store, registry).execute(run)
    assert run.results["s1"].extracted == {"who": "Ada", "tag": "vip"}
    assert store.get_plan_data(run.plan_id, "contact") == {"who": "Ada", "tag": "vip"}
    assert calls[-1] == ("notify", {"target": "Ada", "message": "hi ?"})


@pytest.mark.asyncio
async def test_preserve_types_passes_native_values(store, registry, calls):
    run = _run([
        {"id": "s1", "tool": "fetch"},
        {"id": "s2", "tool": "echo", "args": {"value": "{{step:s1.tags}}"}},
    ])
    await PlanExecutor(store, registry, preserve_types=True).execute(run)
    assert calls[-1] == ("echo", {"value": ["vip", "beta"]})


@pytest.mark.asyncio
async def test_run_executes_only_once(store, registry):
    run = _run([{"id": "s1", "tool": "fetch"}])
    executor = PlanExecutor(store, registry)
    await executor.execute(run)
    with pytest.raises(PlanExecutionError):
        await executor.execute(run)


@pytest.mark.asyncio
async def test_empty_plan_completes(store, registry):
    run = _run([])
    await PlanExecutor(store, registry).execute(run)
    assert run.status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancellation_marks_run_cancelled(store):
    started = asyncio.Event()

    class Forever:
        async def invoke(self, tool_name, arguments):
            started.set()
            await asyncio.Event().wait()

    run = _run([{"id": "s1", "tool": "hang"}, {"id": "s2", "tool": "hang"}])
    task = asyncio.create_task(PlanExecutor(store, Forever()).execute(run))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert run.status is RunStatus.CANCELLED
    assert run.results["s1"].status is StepStatus.FAILED
    assert run.plan.step("s2").status is StepState.SKIPPED


@pytest.mark.asyncio
async def test_graph_mode_runs_independent_steps_together(store):
    active = []
    peak = []

    class Tracking:
        async def invoke(self, tool_name, arguments):
            active.append(tool_name)
            peak.append(len(active))
            await asyncio.sleep(0.01)
            active.remove(tool_name)
            return {"v": tool_name, "args": dict(arguments)}

    run = _run([
        {"id": "a", "tool": "ta"},
        {"id": "b", "tool": "tb"},
        {"id": "c", "tool": "tc", "args": {"x": "{{step:a.v}}+{{step:b.v}}"}},
    ])
    executor = PlanExecutor(store, Tracking(), execution_mode=ExecutionMode.GRAPH)
    await executor.execute(run)
    assert run.status is RunStatus.COMPLETED
    assert max(peak) == 2
    assert run.results["c"].raw_output["args"] == {"x": "ta+tb"}


@pytest.mark.asyncio
async def test_graph_mode_rejects_cycles(store, registry):
    run = _run([
        {"id": "a", "tool": "notify", "args": {"target": "{{step:b.x}}"}},
        {"id": "b", "tool": "notify", "args": {"target": "{{step:a.x}}"}},
    ])
    executor = PlanExecutor(store, registry, execution_mode="graph")
    with pytest.raises(PlanValidationError):
        await executor.execute(run)
    assert run.status is RunStatus.CREATED


def test_plan_parsing_aliases_and_validation():
    plan = Plan.from_dict([
        {"toolName": "fetch", "arguments": '{"filter": "x"}'},
        {"id": "n", "tool_name": "notify", "args": {"target": "t"}, "intent": "tell"},
    ])
    assert [s.id for s in plan.steps] == ["step1", "n"]
    assert plan.steps[0].arguments == {"filter": "x"}
    assert plan.steps[1].intent == "tell"

    with pytest.raises(PlanValidationError):
        Plan.from_dict([{"id": "x", "tool": "a"}, {"id": "x", "tool": "b"}])
    with pytest.raises(PlanValidationError):
        Plan.from_dict([{"id": "x"}])
    with pytest.raises(PlanValidationError):
        PlanStep.from_dict({"tool": "a", "args": "{broken"})
