"""Per-session orchestration: completion stream → actions or plans → events."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from .actions.launcher import Action, ActionLauncher
from .config import RuntimeSettings
from .core.Exceptions import ActionError, PlanError
from .data.store import DependencyStore
from .engines.LLMEngines import LLMEngine, collect_tool_calls
from .plans.executor import PlanExecutor
from .plans.models import Plan, Run
from .plans.runs import RunRegistry
from .streaming.accumulator import AccumulationResult
from .streaming.sink import EventSink, EventType, SessionStreams, StreamEvent
from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

__all__ = ["SessionController"]

_EXECUTE_TYPES = {"execute", "execute_action"}


def _pick(d: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in d:
            return d[key]
    return None


class SessionController:
    """Wires the engine, action launcher, executor and run registry together.

    A single reconstructed tool call becomes an :class:`Action` that goes
    through parameter collection and confirmation. Several calls from one
    completion become a :class:`Plan` executed as a run.
    """

    def __init__(
        self,
        tools: ToolRegistry,
        sink: EventSink,
        *,
        engine: Optional[LLMEngine] = None,
        settings: Optional[RuntimeSettings] = None,
        store: Optional[DependencyStore] = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        self.tools = tools
        if self.settings.tool_timeout_seconds is not None and tools.timeout_seconds is None:
            tools.timeout_seconds = self.settings.tool_timeout_seconds
        self.sink = sink
        self.engine = engine
        self.store = store or DependencyStore()
        self.launcher = ActionLauncher(tools, tools, sink)
        self.executor = PlanExecutor.from_settings(self.settings, self.store, tools, sink)
        self.runs = RunRegistry(
            self.executor, self.store, idle_timeout_seconds=self.settings.idle_timeout_seconds
        )
        if isinstance(sink, SessionStreams):
            sink.on_close(self._on_disconnect)

    # ------------------------------------------------------------------ #
    # Client control messages
    # ------------------------------------------------------------------ #
    async def handle_message(self, session_id: str, message: Mapping[str, Any]) -> Optional[Action]:
        """Apply ``update_parameter`` / ``execute`` control messages.

        Action errors (unknown id, wrong state, unknown parameter) are reported
        to the session as ``error`` events rather than raised.
        """
        msg_type = str(message.get("type", "")).lower()
        payload = message.get("payload")
        if not isinstance(payload, Mapping):
            payload = message
        try:
            if msg_type == "update_parameter":
                return self.launcher.update_parameter(
                    str(_pick(payload, "actionId", "action_id")),
                    str(_pick(payload, "paramName", "param_name")),
                    payload.get("value"),
                )
            if msg_type in _EXECUTE_TYPES:
                return await self.launcher.execute(session_id, str(_pick(payload, "actionId", "action_id")))
        except ActionError as exc:
            logger.warning("SessionController: %s rejected: %s", msg_type, exc)
            self._error(session_id, str(exc))
            return None
        self._error(session_id, f"Unknown message type: {msg_type or '<missing>'}")
        return None

    # ------------------------------------------------------------------ #
    # Tool calls
    # ------------------------------------------------------------------ #
    async def handle_tool_calls(
        self,
        session_id: str,
        calls: AccumulationResult,
        *,
        user_input: str = "",
        user_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Union[Action, Run, None]:
        for err in calls.errors:
            self.sink.emit(StreamEvent(
                type=EventType.TOOL_CALL_ERROR,
                session_id=session_id,
                content={"toolCallId": err.call_id, "error": str(err)},
            ))
        if not calls.calls:
            return None
        if len(calls.calls) == 1:
            call = calls.calls[0]
            return self.launcher.propose(
                session_id, call.name, call.arguments, action_id=call.id, message_id=message_id
            )
        try:
            plan = Plan.from_tool_calls(
                calls.calls, user_input=user_input, session_id=session_id, user_id=user_id
            )
            self.runs.start_sweeper()
            return await self.runs.run_plan(plan)
        except PlanError as exc:
            logger.error("SessionController: plan rejected: %s", exc)
            self._error(session_id, str(exc))
            return None

    async def converse(
        self,
        session_id: str,
        messages: List[Dict[str, Any]],
        *,
        user_id: Optional[str] = None,
    ) -> Union[Action, Run, None]:
        """Stream one completion, relay its text and act on its tool calls."""
        if self.engine is None:
            raise RuntimeError("SessionController.converse requires an engine")
        outcome = await collect_tool_calls(self.engine.stream(messages, self.tools.openai_tools()))
        if outcome.text:
            self.sink.emit(StreamEvent(
                type=EventType.CONVERSATIONAL_TEXT, session_id=session_id, content=outcome.text
            ))
        user_input = next(
            (m.get("content") or "" for m in reversed(messages) if m.get("role") == "user"), ""
        )
        return await self.handle_tool_calls(
            session_id, outcome.tool_calls, user_input=user_input, user_id=user_id
        )

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #
    async def close(self, session_id: str) -> None:
        closed = await self.runs.close_session(session_id)
        discarded = self.launcher.discard_session(session_id)
        logger.info(
            "SessionController: session %s closed (%d run(s), %d action(s))",
            session_id, closed, discarded,
        )

    async def shutdown(self) -> None:
        """Stop the idle sweeper and close every session that still has runs."""
        await self.runs.stop_sweeper()
        for session_id in self.runs.session_ids():
            await self.close(session_id)

    def _on_disconnect(self, session_id: str) -> None:
        self.launcher.discard_session(session_id)
        self.runs.schedule_close(session_id)

    def _error(self, session_id: str, message: str) -> None:
        self.sink.emit(StreamEvent(type=EventType.ERROR, session_id=session_id, content=message, is_final=True))
