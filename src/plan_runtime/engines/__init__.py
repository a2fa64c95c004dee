from .LLMEngines import (
    CompletionDelta,
    CompletionOutcome,
    LLMEngine,
    OpenAIEngine,
    ScriptedEngine,
    collect_tool_calls,
)

__all__ = [
    "CompletionDelta",
    "CompletionOutcome",
    "LLMEngine",
    "OpenAIEngine",
    "ScriptedEngine",
    "collect_tool_calls",
]
