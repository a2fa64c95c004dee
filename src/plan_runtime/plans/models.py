from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.Exceptions import PlanValidationError
from ..data.store import StepResult

__all__ = [
    "FailurePolicy",
    "ExecutionMode",
    "RunStatus",
    "StepState",
    "PlanStep",
    "Plan",
    "Run",
]


class FailurePolicy(str, Enum):
    """What a failed step does to the rest of the plan."""
    FAIL_FAST = "fail_fast"
    BEST_EFFORT = "best_effort"


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    GRAPH = "graph"


class RunStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.CREATED, RunStatus.RUNNING)


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


def _first(d: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in d and d[key] is not None:
            return d[key]
    return default


@dataclass(slots=True)
class PlanStep:
    id: str
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    intent: str = ""
    status: StepState = StepState.PENDING
    output_tag: Optional[str] = None
    extract: Optional[Dict[str, str]] = None

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], position: int = 0) -> "PlanStep":
        """Accepts ``tool``/``toolName``/``tool_name`` and ``args``/``arguments``.

        String arguments are parsed as JSON (tool-call style payloads).
        """
        if not isinstance(d, Mapping):
            raise PlanValidationError(f"step {position} must be a mapping, got {type(d).__name__}")
        tool = _first(d, "tool_name", "toolName", "tool")
        if not isinstance(tool, str) or not tool.strip():
            raise PlanValidationError(f"step {position} has no tool name")
        args = _first(d, "arguments", "args", default={})
        if isinstance(args, str):
            try:
                args = json.loads(args) if args.strip() else {}
            except json.JSONDecodeError as exc:
                raise PlanValidationError(f"step {position} arguments are not valid JSON: {exc.msg}") from exc
        if not isinstance(args, Mapping):
            raise PlanValidationError(f"step {position} arguments must be an object")
        status = _first(d, "status", default=StepState.PENDING.value)
        try:
            state = StepState(status)
        except ValueError:
            state = StepState.PENDING
        extract = _first(d, "extract")
        return cls(
            id=str(_first(d, "id", "step_id", "stepId", default=f"step{position + 1}")),
            tool_name=tool.strip(),
            arguments=dict(args),
            intent=str(_first(d, "intent", "description", default="")),
            status=state,
            output_tag=_first(d, "output_tag", "outputTag"),
            extract=dict(extract) if isinstance(extract, Mapping) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "intent": self.intent,
            "tool_name": self.tool_name,
            "arguments": dict(self.arguments),
            "status": self.status.value,
        }
        if self.output_tag:
            d["output_tag"] = self.output_tag
        if self.extract:
            d["extract"] = dict(self.extract)
        return d


@dataclass(slots=True)
class Plan:
    steps: List[PlanStep]
    plan_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user_input: str = ""
    session_id: str = ""
    user_id: Optional[str] = None
    tags: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise PlanValidationError(f"duplicate step id {step.id!r} in plan {self.plan_id}")
            seen.add(step.id)

    def step(self, step_id: str) -> PlanStep:
        for s in self.steps:
            if s.id == step_id:
                return s
        raise KeyError(step_id)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any] | List[Any], **overrides: Any) -> "Plan":
        """Build a plan from ``{"steps": [...]}`` or a bare list of steps."""
        if isinstance(d, list):
            d = {"steps": d}
        if not isinstance(d, Mapping):
            raise PlanValidationError("plan must be a mapping or a list of steps")
        raw_steps = d.get("steps")
        if not isinstance(raw_steps, list):
            raise PlanValidationError("plan.steps must be a list")
        kwargs: Dict[str, Any] = {
            "steps": [PlanStep.from_dict(s, i) for i, s in enumerate(raw_steps)],
            "user_input": str(_first(d, "user_input", "userInput", default="")),
            "session_id": str(_first(d, "session_id", "sessionId", default="")),
            "user_id": _first(d, "user_id", "userId"),
            "tags": dict(_first(d, "tags", default={})),
        }
        plan_id = _first(d, "plan_id", "planId", "id")
        if plan_id is not None:
            kwargs["plan_id"] = str(plan_id)
        kwargs.update(overrides)
        return cls(**kwargs)

    @classmethod
    def from_tool_calls(cls, calls: Iterable[Any], **kwargs: Any) -> "Plan":
        """One step per reconstructed tool call; step ids are the call ids."""
        steps = [
            PlanStep(id=call.id, tool_name=call.name, arguments=dict(call.arguments))
            for call in calls
        ]
        return cls(steps=steps, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "user_input": self.user_input,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "tags": dict(self.tags),
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(slots=True)
class Run:
    """One execution of a plan; its id is the dependency-store scope."""
    plan: Plan
    status: RunStatus = RunStatus.CREATED
    results: Dict[str, StepResult] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    last_activity: float = field(default_factory=time.monotonic)
    error: Optional[str] = None

    @property
    def run_id(self) -> str:
        return self.plan.plan_id

    @property
    def plan_id(self) -> str:
        return self.plan.plan_id

    @property
    def session_id(self) -> str:
        return self.plan.session_id

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def summary(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "status": self.status.value,
            "steps": [
                {"id": s.id, "toolName": s.tool_name, "status": s.status.value}
                for s in self.plan.steps
            ],
            "error": self.error,
        }
