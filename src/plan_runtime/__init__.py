from importlib.metadata import PackageNotFoundError, version

try:  # populated when installed or when a wheel is built
    __version__ = version("plan-runtime")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

from .core.sentinels import NO_VAL
from .data.store import DependencyStore, StepResult, StepStatus
from .data.resolver import PlaceholderResolver
from .streaming.accumulator import ToolCallAccumulator, ToolCallFragment
from .actions.launcher import Action, ActionLauncher, ActionStatus
from .plans.models import ExecutionMode, FailurePolicy, Plan, PlanStep, Run, RunStatus
from .plans.executor import PlanExecutor
from .tools.registry import ToolRegistry
from .config import RuntimeSettings

__all__ = [
    "NO_VAL",
    "DependencyStore",
    "StepResult",
    "StepStatus",
    "PlaceholderResolver",
    "ToolCallAccumulator",
    "ToolCallFragment",
    "Action",
    "ActionLauncher",
    "ActionStatus",
    "ExecutionMode",
    "FailurePolicy",
    "Plan",
    "PlanStep",
    "Run",
    "RunStatus",
    "PlanExecutor",
    "ToolRegistry",
    "RuntimeSettings",
]
