# ───────────────────────────────────────────────────────────────────────────────
# Exceptions
# ───────────────────────────────────────────────────────────────────────────────
from __future__ import annotations

from typing import Optional


class LLMEngineError(RuntimeError):
    """Raised when an LLM engine fails to open or consume a completion stream."""


class ConfigError(ValueError):
    """Raised when runtime settings or a tool config file are invalid."""


class ToolError(Exception):
    """Base exception for Tool-related errors."""


class ToolDefinitionError(ToolError):
    """Raised when a tool cannot be built from its callable or schema."""


class ToolInvocationError(ToolError):
    """Raised when a tool rejects its arguments or fails while running."""


class ToolRegistrationError(ToolError):
    """Raised when registering tools fails due to collisions or bad inputs."""


class ToolCallParseError(ValueError):
    """Raised (or reported) when a reconstructed tool call has unparseable arguments."""

    def __init__(self, message: str, call_id: str = "", raw_arguments: Optional[str] = None) -> None:
        super().__init__(message)
        self.call_id = call_id
        self.raw_arguments = raw_arguments


class ActionError(RuntimeError):
    """Base class for action lifecycle errors."""


class ActionNotFoundError(ActionError, KeyError):
    """Raised when a control message targets an unknown action id."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class ActionStateError(ActionError):
    """Raised when a transition is not allowed from the action's current status."""


class ParameterNotFoundError(ActionError):
    """Raised when updating a parameter the action does not declare."""


class PlanError(Exception):
    """Base class for plan-related errors."""


class PlanValidationError(PlanError, ValueError):
    """Raised when a plan payload is malformed (duplicate ids, missing tool, cycles)."""


class PlanExecutionError(PlanError, RuntimeError):
    """Raised when a run cannot be executed at all (e.g. already finished)."""


class StepStateError(PlanError, RuntimeError):
    """Raised when a StepResult transition is attempted from a terminal status."""
