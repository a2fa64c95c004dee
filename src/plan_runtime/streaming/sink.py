"""Session output channel: events pushed to clients, keyed by session id."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

__all__ = ["StreamEvent", "EventSink", "SessionStreams", "EventType"]


class EventType:
    """Event type names written to the session stream."""
    PARAMETER_COLLECTION_REQUIRED = "parameter_collection_required"
    ACTION_CONFIRMATION_REQUIRED = "action_confirmation_required"
    ACTION_READY_FOR_CONFIRMATION = "action_ready_for_confirmation"
    ACTION_EXECUTING = "action_executing"
    ACTION_COMPLETED = "action_completed"
    ACTION_FAILED = "action_failed"
    RUN_UPDATED = "run_updated"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    TOOL_CALL_ERROR = "tool_call_error"
    CONVERSATIONAL_TEXT = "conversational_text"
    ERROR = "error"


@dataclass(slots=True)
class StreamEvent:
    type: str
    session_id: str
    content: Any = None
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    is_final: bool = False
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "sessionId": self.session_id,
            "content": self.content,
            "messageId": self.message_id,
            "isFinal": self.is_final,
        }


@runtime_checkable
class EventSink(Protocol):
    def emit(self, event: StreamEvent) -> bool:
        """Deliver ``event``; return False when it was dropped."""
        ...


class SessionStreams:
    """In-process :class:`EventSink` with one queue per connected session.

    Events for sessions that are not connected are dropped (logged), never
    raised. Close listeners run when a session disconnects so that owners of
    per-session work (runs, store scopes) can release it.
    """

    def __init__(self, max_queue_size: int = 0) -> None:
        self._queues: Dict[str, asyncio.Queue] = {}
        self._close_listeners: List[Callable[[str], Any]] = []
        self._max_queue_size = int(max_queue_size)

    # ------------------------------------------------------------------ #
    # Connections
    # ------------------------------------------------------------------ #
    def connect(self, session_id: str) -> asyncio.Queue:
        if session_id in self._queues:
            logger.warning("SessionStreams: replacing existing connection for %s", session_id)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._queues[session_id] = queue
        logger.info("SessionStreams: session %s connected", session_id)
        return queue

    def disconnect(self, session_id: str) -> bool:
        removed = self._queues.pop(session_id, None) is not None
        if not removed:
            return False
        logger.info("SessionStreams: session %s disconnected", session_id)
        for listener in list(self._close_listeners):
            listener(session_id)
        return True

    def is_connected(self, session_id: str) -> bool:
        return session_id in self._queues

    def on_close(self, listener: Callable[[str], Any]) -> None:
        self._close_listeners.append(listener)

    # ------------------------------------------------------------------ #
    # EventSink
    # ------------------------------------------------------------------ #
    def emit(self, event: StreamEvent) -> bool:
        queue = self._queues.get(event.session_id)
        if queue is None:
            logger.warning(
                "SessionStreams: dropping %s for unconnected session %s",
                event.type, event.session_id,
            )
            return False
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "SessionStreams: queue full for %s; dropping %s", event.session_id, event.type
            )
            return False
        return True

    def drain(self, session_id: str) -> List[StreamEvent]:
        """Pop every queued event for ``session_id`` without waiting."""
        queue = self._queues.get(session_id)
        events: List[StreamEvent] = []
        if queue is None:
            return events
        while True:
            try:
                events.append(queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    async def next_event(self, session_id: str, timeout: Optional[float] = None) -> StreamEvent:
        queue = self._queues.get(session_id)
        if queue is None:
            raise KeyError(f"session {session_id!r} is not connected")
        return await asyncio.wait_for(queue.get(), timeout)
