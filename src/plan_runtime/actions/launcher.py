"""Per-action parameter collection and confirmation state machine.

Lifecycle::

    pending_analysis ─┬─> ready ──execute──> executing ─┬─> completed
                      └─> collecting_parameters ─┘       └─> failed
                              ^   │ update_parameter
                              └───┘

Every transition is pushed to the session's event sink so a client can render
the current prompt or confirmation request.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol

import jsonschema
from referencing.exceptions import Unresolvable

from ..core.Exceptions import (
    ActionNotFoundError,
    ActionStateError,
    ParameterNotFoundError,
)
from ..core.Parameters import ParameterDefinition, parameters_from_schema
from ..core.Prompts import (
    CONFIRMATION_PROMPT,
    FILTERS_SUGGESTION,
    PARAMETER_COLLECTION_PROMPT,
    PARAMETER_DETAIL_LINE,
    STEP_FAILED_MESSAGE,
)
from ..core.sentinels import NO_VAL
from ..streaming.sink import EventSink, EventType, StreamEvent

logger = logging.getLogger(__name__)

__all__ = ["ActionStatus", "Action", "ActionLauncher", "SchemaProvider", "ToolInvoker"]


class ActionStatus(str, Enum):
    PENDING_ANALYSIS = "pending_analysis"
    COLLECTING_PARAMETERS = "collecting_parameters"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionStatus.COMPLETED, ActionStatus.FAILED)


class SchemaProvider(Protocol):
    def get_input_schema(self, name: str) -> Optional[Dict[str, Any]]: ...

    def find_conditionally_missing(self, name: str, args: Mapping[str, Any]) -> List[str]: ...


class ToolInvoker(Protocol):
    async def invoke(self, tool_name: str, arguments: Mapping[str, Any]) -> Any: ...


_SYNTHESIZED_DESCRIPTIONS = {"filters": FILTERS_SUGGESTION}


@dataclass(slots=True)
class Action:
    id: str
    tool_name: str
    session_id: str
    description: str = ""
    parameters: List[ParameterDefinition] = field(default_factory=list)
    missing_parameters: List[str] = field(default_factory=list)
    status: ActionStatus = ActionStatus.PENDING_ANALYSIS
    message_id: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    extra_arguments: Dict[str, Any] = field(default_factory=dict)

    def parameter(self, name: str) -> Optional[ParameterDefinition]:
        for p in self.parameters:
            if p.name == name:
                return p
        return None

    @property
    def arguments(self) -> Dict[str, Any]:
        """Collected values, including ones the schema does not declare."""
        args = dict(self.extra_arguments)
        for p in self.parameters:
            if p.current_value is not NO_VAL:
                args[p.name] = p.current_value
        return args

    @property
    def next_missing(self) -> Optional[str]:
        return self.missing_parameters[0] if self.missing_parameters else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "toolName": self.tool_name,
            "description": self.description,
            "parameters": [p.to_dict() for p in self.parameters],
            "missingParameters": list(self.missing_parameters),
            "status": self.status.value,
            "arguments": self.arguments,
            "result": self.result,
            "error": self.error,
        }


class ActionLauncher:
    """Owns the actions of every session and drives their transitions.

    Parameters
    ----------
    schemas:
        Parameter schema provider (a :class:`~plan_runtime.tools.ToolRegistry`).
    invoker:
        Tool-invocation collaborator; defaults to ``schemas`` when it can invoke.
    sink:
        Session output sink for transition events. Optional.
    """

    def __init__(
        self,
        schemas: SchemaProvider,
        invoker: Optional[ToolInvoker] = None,
        sink: Optional[EventSink] = None,
    ) -> None:
        self._schemas = schemas
        self._invoker = invoker if invoker is not None else schemas
        self._sink = sink
        self._actions: Dict[str, Action] = {}
        self._last_ready: Dict[str, str] = {}

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def get(self, action_id: str) -> Action:
        action = self._actions.get(action_id)
        if action is None:
            raise ActionNotFoundError(f"Action {action_id} not found")
        return action

    def actions_for(self, session_id: str) -> List[Action]:
        return [a for a in self._actions.values() if a.session_id == session_id]

    def last_presented(self, session_id: str) -> Optional[str]:
        return self._last_ready.get(session_id)

    # ------------------------------------------------------------------ #
    # pending_analysis -> ready | collecting_parameters
    # ------------------------------------------------------------------ #
    def propose(
        self,
        session_id: str,
        tool_name: str,
        arguments: Optional[Mapping[str, Any]] = None,
        *,
        action_id: Optional[str] = None,
        description: str = "",
        message_id: Optional[str] = None,
    ) -> Action:
        """Register a proposed tool call and analyse it immediately."""
        arguments = dict(arguments or {})
        schema = self._schemas.get_input_schema(tool_name) or {"type": "object", "properties": {}}
        parameters = parameters_from_schema(schema, arguments)
        declared = {p.name for p in parameters}

        action = Action(
            id=action_id or uuid.uuid4().hex,
            tool_name=tool_name,
            session_id=session_id,
            description=description,
            parameters=parameters,
            message_id=message_id,
            extra_arguments={k: v for k, v in arguments.items() if k not in declared},
        )
        self._actions[action.id] = action
        logger.info("ActionLauncher: proposed %s (%s) for session %s", action.id, tool_name, session_id)
        self._analyze(action)
        return action

    def _type_valid(self, action: Action, param: ParameterDefinition) -> bool:
        schema = self._schemas.get_input_schema(action.tool_name) or {}
        prop = (schema.get("properties") or {}).get(param.name)
        if not isinstance(prop, Mapping):
            return True
        # Validate against the whole schema so local $refs ($defs, definitions) resolve.
        try:
            errors = jsonschema.Draft7Validator(schema).iter_errors({param.name: param.current_value})
            return not any(list(e.absolute_path)[:1] == [param.name] for e in errors)
        except (jsonschema.SchemaError, Unresolvable) as exc:
            logger.warning(
                "ActionLauncher: cannot check %s.%s against its schema: %s",
                action.tool_name, param.name, exc,
            )
            return True

    def _evaluate(self, action: Action) -> List[str]:
        missing = [
            p.name for p in action.parameters
            if p.required and (not p.is_satisfied or not self._type_valid(action, p))
        ]
        for name in self._schemas.find_conditionally_missing(action.tool_name, action.arguments):
            if name in missing:
                continue
            missing.append(name)
            if action.parameter(name) is None:
                action.parameters.append(ParameterDefinition(
                    name=name,
                    description=_SYNTHESIZED_DESCRIPTIONS.get(name, ""),
                    required=False,
                    type="object" if name == "filters" else "any",
                ))
        return missing

    def _analyze(self, action: Action) -> None:
        action.missing_parameters = self._evaluate(action)
        if action.missing_parameters:
            self._set_status(action, ActionStatus.COLLECTING_PARAMETERS)
            logger.debug("ActionLauncher: %s missing %s", action.id, action.missing_parameters)
            self._emit(action, EventType.PARAMETER_COLLECTION_REQUIRED, self._collection_prompt(action))
        else:
            self._present_ready(action, EventType.ACTION_CONFIRMATION_REQUIRED)

    # ------------------------------------------------------------------ #
    # collecting_parameters / ready -> update_parameter
    # ------------------------------------------------------------------ #
    def update_parameter(self, action_id: str, param_name: str, value: Any) -> Action:
        action = self.get(action_id)
        if action.status not in (ActionStatus.COLLECTING_PARAMETERS, ActionStatus.READY):
            raise ActionStateError(
                f"cannot update parameters of action {action_id} in status {action.status.value}"
            )
        for i, p in enumerate(action.parameters):
            if p.name == param_name:
                action.parameters[i] = p.with_value(value)
                break
        else:
            raise ParameterNotFoundError(
                f"action {action_id} ({action.tool_name}) has no parameter {param_name!r}"
            )

        logger.info("ActionLauncher: %s parameter %r updated", action_id, param_name)
        action.missing_parameters = self._evaluate(action)
        if action.missing_parameters:
            if action.status is ActionStatus.READY:
                self._last_ready.pop(action.session_id, None)
            self._set_status(action, ActionStatus.COLLECTING_PARAMETERS)
            self._emit(action, EventType.PARAMETER_COLLECTION_REQUIRED, self._collection_prompt(action))
        else:
            self._present_ready(action, EventType.ACTION_READY_FOR_CONFIRMATION)
        return action

    # ------------------------------------------------------------------ #
    # ready -> executing -> completed | failed
    # ------------------------------------------------------------------ #
    async def execute(self, session_id: str, action_id: str) -> Optional[Action]:
        """Run the last-presented ready action of ``session_id``.

        Any other id is a no-op and returns None.
        """
        if self._last_ready.get(session_id) != action_id:
            logger.debug(
                "ActionLauncher: execute(%s) ignored; last presented is %s",
                action_id, self._last_ready.get(session_id),
            )
            return None
        action = self.get(action_id)
        if action.status is not ActionStatus.READY:
            return None

        del self._last_ready[session_id]
        self._set_status(action, ActionStatus.EXECUTING)
        self._emit(action, EventType.ACTION_EXECUTING, f"Running {action.tool_name}...")
        try:
            result = await self._invoker.invoke(action.tool_name, action.arguments)
        except asyncio.CancelledError:
            self.fail(action, "cancelled")
            raise
        except Exception as exc:
            self.fail(action, str(exc))
            return action
        self.complete(action, result)
        return action

    def complete(self, action: Action, result: Any) -> Action:
        self._require(action, ActionStatus.EXECUTING)
        action.result = result
        self._set_status(action, ActionStatus.COMPLETED)
        self._emit(action, EventType.ACTION_COMPLETED, action.result, is_final=True)
        return action

    def fail(self, action: Action, error: str) -> Action:
        self._require(action, ActionStatus.EXECUTING)
        action.error = str(error)
        self._set_status(action, ActionStatus.FAILED)
        message = STEP_FAILED_MESSAGE.format(TOOL_NAME=action.tool_name, ERROR=action.error)
        logger.error("ActionLauncher: %s", message)
        self._emit(action, EventType.ACTION_FAILED, message, is_final=True)
        return action

    def discard_session(self, session_id: str) -> int:
        ids = [a.id for a in self.actions_for(session_id)]
        for action_id in ids:
            del self._actions[action_id]
        self._last_ready.pop(session_id, None)
        return len(ids)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _require(self, action: Action, status: ActionStatus) -> None:
        if action.status is not status:
            raise ActionStateError(
                f"action {action.id} is {action.status.value}, expected {status.value}"
            )

    def _set_status(self, action: Action, status: ActionStatus) -> None:
        if action.status is not status:
            logger.info("ActionLauncher: %s %s -> %s", action.id, action.status.value, status.value)
        action.status = status

    def _present_ready(self, action: Action, event_type: str) -> None:
        self._set_status(action, ActionStatus.READY)
        self._last_ready[action.session_id] = action.id
        self._emit(action, event_type, self._confirmation_prompt(action))

    def _collection_prompt(self, action: Action) -> str:
        details = []
        for name in action.missing_parameters:
            p = action.parameter(name)
            details.append(PARAMETER_DETAIL_LINE.format(
                NAME=name,
                TYPE=p.type if p else "any",
                DESCRIPTION=(p.description if p else "") or "no description",
            ))
        return PARAMETER_COLLECTION_PROMPT.format(
            TOOL_NAME=action.tool_name,
            MISSING=", ".join(action.missing_parameters),
            DETAILS="\n".join(details),
        )

    def _confirmation_prompt(self, action: Action) -> str:
        lines = [f"- {k}: {v!r}" for k, v in action.arguments.items()] or ["- (no arguments)"]
        return CONFIRMATION_PROMPT.format(TOOL_NAME=action.tool_name, ARGUMENTS="\n".join(lines))

    def _emit(self, action: Action, event_type: str, analysis: Any, *, is_final: bool = False) -> None:
        if self._sink is None:
            return
        self._sink.emit(StreamEvent(
            type=event_type,
            session_id=action.session_id,
            content={"actions": [action.to_dict()], "analysis": analysis, "messageId": action.message_id},
            message_id=action.message_id or uuid.uuid4().hex,
            is_final=is_final,
        ))
