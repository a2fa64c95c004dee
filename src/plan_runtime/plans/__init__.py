from .models import ExecutionMode, FailurePolicy, Plan, PlanStep, Run, RunStatus, StepState
from .graph import PlanGraph
from .executor import PlanExecutor
from .runs import RunRegistry

__all__ = [
    "ExecutionMode",
    "FailurePolicy",
    "Plan",
    "PlanStep",
    "Run",
    "RunStatus",
    "StepState",
    "PlanGraph",
    "PlanExecutor",
    "RunRegistry",
]
