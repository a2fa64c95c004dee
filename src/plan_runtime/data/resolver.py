"""Placeholder substitution over JSON-like values.

Two placeholder forms are recognised inside strings::

    {{step:<step_id>.<dotted.path>[|helper...]}}
    {{plan:<tag>[|helper...]}}

Helpers are ``truncate(n)``, ``extract("field")`` and ``fallback(literal)``;
several may be chained with ``|``. A helper argument may contain braces
(``fallback({})``) but not the closing ``}}`` sequence. Unknown helpers are
ignored. Resolution never raises: a placeholder that cannot be satisfied is
replaced by its fallback literal when one is given, and left untouched
otherwise.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from ..core.sentinels import NO_VAL
from .store import DependencyStore, StepStatus

logger = logging.getLogger(__name__)

__all__ = [
    "PlaceholderResolver",
    "PLACEHOLDER_PATTERN",
    "get_value_by_path",
    "find_step_references",
    "to_text",
]

PLACEHOLDER_PATTERN = re.compile(
    r"\{\{(?:"
    r"step:(?P<step>[^.}|]+)\.(?P<path>[^}|]+)"
    r"|plan:(?P<tag>[^}|]+)"
    r")(?:\|(?P<helpers>(?:[^}(]|\((?:[^)}]|\}(?!\}))*\))*))?\}\}"
)

_INDEX_SUFFIX = re.compile(r"\[(\d+)\]")
_TRUNCATE = re.compile(r"^truncate\(\s*(\d+)\s*\)$")
_EXTRACT = re.compile(r"^extract\(\s*(?P<q>[\"']?)(?P<field>.*?)(?P=q)\s*\)$")
_FALLBACK = re.compile(r"^fallback\((.*)\)$", re.DOTALL)

TRUNCATION_MARKER = "..."


# ───────────────────────────────────────────────────────────────────────────────
# Helpers (module-level, pure)
# ───────────────────────────────────────────────────────────────────────────────
def _split_path(path: str) -> List[str]:
    keys: List[str] = []
    for segment in path.strip().split("."):
        head = _INDEX_SUFFIX.split(segment, maxsplit=1)[0]
        if head:
            keys.append(head)
        keys.extend(_INDEX_SUFFIX.findall(segment))
    return keys


def get_value_by_path(obj: Any, path: str) -> Any:
    """Sequential key lookup along a dotted path.

    Mappings are indexed by key, lists and tuples by integer segments
    (``items.0.name`` or ``items[0].name``). Any miss returns ``NO_VAL``.
    """
    value = obj
    for key in _split_path(path):
        if isinstance(value, Mapping):
            if key not in value:
                return NO_VAL
            value = value[key]
        elif isinstance(value, (list, tuple)):
            if not key.isdigit() or int(key) >= len(value):
                return NO_VAL
            value = value[int(key)]
        else:
            return NO_VAL
    return value


def _split_helpers(raw: Optional[str]) -> List[str]:
    """Split a helper chain on ``|`` outside parentheses."""
    if not raw:
        return []
    parts: List[str] = []
    depth = 0
    current: List[str] = []
    for ch in raw:
        if ch == "(":
            depth += 1
        elif ch == ")" and depth:
            depth -= 1
        if ch == "|" and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    parts.append("".join(current).strip())
    return [p for p in parts if p]


def _unquote(literal: str) -> str:
    if len(literal) >= 2 and literal[0] == literal[-1] and literal[0] in "\"'":
        return literal[1:-1]
    return literal


def _fallback_of(helpers: Sequence[str]) -> Any:
    for helper in helpers:
        m = _FALLBACK.match(helper)
        if m:
            return _unquote(m.group(1).strip())
    return NO_VAL


def _apply_helpers(value: Any, helpers: Sequence[str]) -> Any:
    for helper in helpers:
        m = _TRUNCATE.match(helper)
        if m:
            limit = int(m.group(1))
            if isinstance(value, str) and len(value) > limit:
                value = value[:limit] + TRUNCATION_MARKER
            continue
        m = _EXTRACT.match(helper)
        if m:
            field = m.group("field")
            if isinstance(value, Mapping) and field in value:
                value = value[field]
            continue
        if _FALLBACK.match(helper):
            continue
        logger.debug("PlaceholderResolver: ignoring unknown helper %r", helper)
    return value


def to_text(value: Any) -> str:
    """Natural string form of a resolved value inside a template."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str, separators=(",", ":"))
    return str(value)


def find_step_references(obj: Any) -> set[str]:
    """Collect every step id referenced by a placeholder anywhere in ``obj``."""
    found: set[str] = set()

    def walk(x: Any) -> None:
        if isinstance(x, str):
            for m in PLACEHOLDER_PATTERN.finditer(x):
                if m.group("step") is not None:
                    found.add(m.group("step").strip())
        elif isinstance(x, Mapping):
            for v in x.values():
                walk(v)
        elif isinstance(x, (list, tuple)):
            for v in x:
                walk(v)

    walk(obj)
    return found


# ───────────────────────────────────────────────────────────────────────────────
# Resolver
# ───────────────────────────────────────────────────────────────────────────────
class PlaceholderResolver:
    """Substitutes placeholders using a :class:`DependencyStore`.

    Parameters
    ----------
    store:
        Source of step results and plan tags.
    preserve_types:
        When True, a string that is exactly one placeholder resolving to a
        defined value yields the value itself (dict, list, int, ...) instead of
        its text form.
    """

    def __init__(self, store: DependencyStore, *, preserve_types: bool = False) -> None:
        self._store = store
        self._preserve_types = bool(preserve_types)

    @property
    def store(self) -> DependencyStore:
        return self._store

    def resolve(self, plan_id: str, value: Any) -> Any:
        if isinstance(value, str):
            return self._resolve_string(plan_id, value)
        if isinstance(value, Mapping):
            return {k: self.resolve(plan_id, v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(plan_id, v) for v in value]
        if isinstance(value, tuple):
            return tuple(self.resolve(plan_id, v) for v in value)
        return value

    # ------------------------------------------------------------------ #
    # String handling
    # ------------------------------------------------------------------ #
    def _lookup(self, plan_id: str, match: re.Match) -> Any:
        step_id = match.group("step")
        if step_id is not None:
            result = self._store.get_step_result(plan_id, step_id.strip())
            if result is None or result.status is not StepStatus.COMPLETED:
                return NO_VAL
            return get_value_by_path(result.raw_output, match.group("path"))
        return self._store.get_plan_data(plan_id, match.group("tag").strip())

    def _substitute(self, plan_id: str, match: re.Match) -> Tuple[Any, bool]:
        """Return ``(replacement, resolved)`` for a single placeholder match."""
        helpers = _split_helpers(match.group("helpers"))
        value = self._lookup(plan_id, match)
        if value is not NO_VAL:
            return _apply_helpers(value, helpers), True
        fallback = _fallback_of(helpers)
        if fallback is not NO_VAL:
            return fallback, True
        logger.debug("PlaceholderResolver: %s unresolved in plan %s", match.group(0), plan_id)
        return match.group(0), False

    def _resolve_string(self, plan_id: str, text: str) -> Any:
        if "{{" not in text:
            return text

        if self._preserve_types:
            whole = PLACEHOLDER_PATTERN.fullmatch(text.strip())
            if whole is not None:
                replacement, resolved = self._substitute(plan_id, whole)
                return replacement if resolved else text

        # Each match is taken from the original text; substituted values are
        # written to the output only and never scanned again.
        out: List[str] = []
        cursor = 0
        for match in PLACEHOLDER_PATTERN.finditer(text):
            out.append(text[cursor:match.start()])
            replacement, _ = self._substitute(plan_id, match)
            out.append(to_text(replacement))
            cursor = match.end()
        out.append(text[cursor:])
        return "".join(out)
