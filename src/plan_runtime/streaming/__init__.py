from .accumulator import (
    AccumulationResult,
    PartialToolCall,
    ToolCall,
    ToolCallAccumulator,
    ToolCallFragment,
    fold_fragment,
    fragments_from_delta,
    reconstruct_tool_calls,
)
from .sink import EventSink, EventType, SessionStreams, StreamEvent

__all__ = [
    "AccumulationResult",
    "PartialToolCall",
    "ToolCall",
    "ToolCallAccumulator",
    "ToolCallFragment",
    "fold_fragment",
    "fragments_from_delta",
    "reconstruct_tool_calls",
    "EventSink",
    "EventType",
    "SessionStreams",
    "StreamEvent",
]
