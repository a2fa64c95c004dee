"""Reassembly of streamed tool-call fragments.

A token-streaming completion service delivers each tool call in pieces, every
piece tagged with the positional ``index`` of the call it belongs to. The
fold here merges those pieces into complete records:

- first sight of an index allocates blank records up to and including it,
- ``name`` and ``arguments`` chunks are concatenated,
- ``id`` and ``type`` are set once and never overwritten,
- finalisation parses each record's arguments as JSON, isolating failures.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..core.Exceptions import ToolCallParseError

logger = logging.getLogger(__name__)

__all__ = [
    "ToolCallFragment",
    "PartialToolCall",
    "ToolCall",
    "AccumulationResult",
    "ToolCallAccumulator",
    "fold_fragment",
    "fragments_from_delta",
    "reconstruct_tool_calls",
]


@dataclass(frozen=True, slots=True)
class ToolCallFragment:
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments_chunk: Optional[str] = None
    type: Optional[str] = None


@dataclass(frozen=True, slots=True)
class PartialToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""
    type: str = ""

    @property
    def is_blank(self) -> bool:
        return not (self.id or self.name or self.arguments or self.type)


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]
    type: str = "function"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments), "type": self.type}


@dataclass(slots=True)
class AccumulationResult:
    calls: List[ToolCall] = field(default_factory=list)
    errors: List[ToolCallParseError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# ───────────────────────────────────────────────────────────────────────────────
# Pure fold
# ───────────────────────────────────────────────────────────────────────────────
def fold_fragment(
    records: Tuple[PartialToolCall, ...],
    fragment: ToolCallFragment,
) -> Tuple[PartialToolCall, ...]:
    """Return ``records`` with ``fragment`` merged in. Does not mutate its inputs."""
    index = int(fragment.index)
    if index < 0:
        raise ValueError(f"tool call fragment index must be >= 0, got {index}")

    if len(records) <= index:
        records = records + tuple(PartialToolCall() for _ in range(index + 1 - len(records)))

    current = records[index]
    merged = replace(
        current,
        id=current.id or (fragment.id or ""),
        type=current.type or (fragment.type or ""),
        name=current.name + (fragment.name or ""),
        arguments=current.arguments + (fragment.arguments_chunk or ""),
    )
    return records[:index] + (merged,) + records[index + 1:]


def _finalize_record(record: PartialToolCall) -> ToolCall:
    call_id = record.id or f"call_{uuid.uuid4().hex}"
    raw = record.arguments.strip()
    try:
        arguments = json.loads(raw) if raw else {}
    except json.JSONDecodeError as exc:
        raise ToolCallParseError(
            f"tool call {call_id!r} ({record.name}) has malformed arguments: {exc.msg}",
            call_id=call_id,
            raw_arguments=record.arguments,
        ) from exc
    if not isinstance(arguments, dict):
        raise ToolCallParseError(
            f"tool call {call_id!r} ({record.name}) arguments must be a JSON object, "
            f"got {type(arguments).__name__}",
            call_id=call_id,
            raw_arguments=record.arguments,
        )
    return ToolCall(id=call_id, name=record.name, arguments=arguments, type=record.type or "function")


def reconstruct_tool_calls(records: Iterable[PartialToolCall]) -> AccumulationResult:
    """Finalize accumulated records; a bad record never blocks the others."""
    result = AccumulationResult()
    for position, record in enumerate(records):
        if not record.name:
            if not record.is_blank:
                logger.debug("ToolCallAccumulator: skipping nameless record at %d", position)
            continue
        try:
            result.calls.append(_finalize_record(record))
        except ToolCallParseError as err:
            logger.warning("ToolCallAccumulator: %s", err)
            result.errors.append(err)
    return result


# ───────────────────────────────────────────────────────────────────────────────
# Delta adapters
# ───────────────────────────────────────────────────────────────────────────────
def _get(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def fragments_from_delta(tool_calls_delta: Any) -> List[ToolCallFragment]:
    """Convert OpenAI-style ``delta.tool_calls`` entries into fragments.

    Accepts SDK objects (``ChoiceDeltaToolCall``) and plain dicts alike.
    """
    fragments: List[ToolCallFragment] = []
    for position, item in enumerate(tool_calls_delta or []):
        index = _get(item, "index")
        function = _get(item, "function")
        fragments.append(ToolCallFragment(
            index=position if index is None else int(index),
            id=_get(item, "id"),
            name=_get(function, "name"),
            arguments_chunk=_get(function, "arguments"),
            type=_get(item, "type"),
        ))
    return fragments


# ───────────────────────────────────────────────────────────────────────────────
# Stateful wrapper (one per stream)
# ───────────────────────────────────────────────────────────────────────────────
class ToolCallAccumulator:
    """Owns the records of a single completion stream."""

    def __init__(self) -> None:
        self._records: Tuple[PartialToolCall, ...] = ()

    @property
    def records(self) -> Tuple[PartialToolCall, ...]:
        return self._records

    def add(self, fragment: ToolCallFragment) -> None:
        self._records = fold_fragment(self._records, fragment)

    def add_delta(self, tool_calls_delta: Any) -> None:
        for fragment in fragments_from_delta(tool_calls_delta):
            self.add(fragment)

    def finalize(self) -> AccumulationResult:
        result = reconstruct_tool_calls(self._records)
        logger.debug(
            "ToolCallAccumulator: %d call(s), %d error(s)", len(result.calls), len(result.errors)
        )
        return result

    def reset(self) -> None:
        self._records = ()

    def __len__(self) -> int:
        return len(self._records)
