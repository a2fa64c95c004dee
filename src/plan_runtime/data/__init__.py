from .store import DependencyStore, PlanScope, StepResult, StepStatus
from .resolver import PlaceholderResolver, get_value_by_path, find_step_references

__all__ = [
    "DependencyStore",
    "PlanScope",
    "StepResult",
    "StepStatus",
    "PlaceholderResolver",
    "get_value_by_path",
    "find_step_references",
]
