"""Tool registry: parameter-schema provider and tool-invocation collaborator."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import jsonschema

from ..core.Exceptions import ConfigError, ToolInvocationError, ToolRegistrationError
from ..core.Parameters import is_missing_value
from .base import Tool

logger = logging.getLogger(__name__)

__all__ = [
    "ToolRegistry",
    "TOOL_CONFIG_SCHEMA",
    "ConditionalRule",
    "fetch_scope_rule",
    "hinted_parameters_rule",
]

# (tool, arguments) -> names of parameters to ask for
ConditionalRule = Callable[[Tool, Mapping[str, Any]], List[str]]

TOOL_CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["tools"],
    "properties": {
        "tools": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "description"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "description": {"type": "string"},
                    "category": {"type": "string"},
                    "display_name": {"type": "string"},
                    "parameters": {
                        "type": "object",
                        "properties": {
                            "type": {"const": "object"},
                            "properties": {"type": "object"},
                            "required": {"type": "array", "items": {"type": "string"}},
                        },
                    },
                },
            },
        },
    },
}

_FETCH_IDENTIFIER_KEYS = ("identifier", "id", "record_id")
_ALL_MARKERS = {"all", "*"}


# ───────────────────────────────────────────────────────────────────────────────
# Conditional rules
# ───────────────────────────────────────────────────────────────────────────────
def fetch_scope_rule(tool: Tool, args: Mapping[str, Any]) -> List[str]:
    """A fetch with no identifier, no filters and no ``all`` marker is under-specified."""
    operation = str(args.get("operation", "") or "").lower()
    if not (tool.name.lower().startswith("fetch") or operation == "fetch"):
        return []
    for key in _FETCH_IDENTIFIER_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip().lower() in _ALL_MARKERS:
            return []
        if not is_missing_value(value):
            return []
    if args.get("all") is True or str(args.get("all", "")).lower() == "true":
        return []
    filters = args.get("filters")
    if not is_missing_value(filters) and filters != {} and filters != []:
        return []
    return ["filters"]


def hinted_parameters_rule(tool: Tool, args: Mapping[str, Any]) -> List[str]:
    """Optional properties carrying a ``prompt`` or ``hint`` are asked for when absent."""
    schema = tool.input_schema
    required = set(schema.get("required") or [])
    out: List[str] = []
    for name, meta in (schema.get("properties") or {}).items():
        if name in required or not isinstance(meta, Mapping):
            continue
        if (meta.get("prompt") or meta.get("hint")) and is_missing_value(args.get(name)):
            out.append(name)
    return out


DEFAULT_RULES: tuple[ConditionalRule, ...] = (fetch_scope_rule, hinted_parameters_rule)


def _unbound(name: str) -> Callable[..., Any]:
    def _missing_implementation(**_: Any) -> Any:
        raise ToolInvocationError(f"tool {name!r} has no implementation bound")
    return _missing_implementation


# ───────────────────────────────────────────────────────────────────────────────
# Registry
# ───────────────────────────────────────────────────────────────────────────────
class ToolRegistry:
    """Name → :class:`Tool` map with schema queries and async invocation.

    Parameters
    ----------
    tools:
        Initial tools to register.
    rules:
        Conditional-missing rules; defaults to :data:`DEFAULT_RULES`.
    timeout_seconds:
        Optional per-invocation timeout. A timed out call raises
        :class:`ToolInvocationError` like any other failure.
    """

    def __init__(
        self,
        tools: Optional[Iterable[Tool]] = None,
        *,
        rules: Optional[Sequence[ConditionalRule]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._tools: Dict[str, Tool] = {}
        self._rules: List[ConditionalRule] = list(DEFAULT_RULES if rules is None else rules)
        self._timeout_seconds = timeout_seconds
        for tool in tools or ():
            self.register(tool)

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #
    def register(self, tool: Tool, *, replace: bool = False) -> Tool:
        if not isinstance(tool, Tool):
            raise ToolRegistrationError(f"expected a Tool, got {type(tool)!r}")
        if tool.name in self._tools and not replace:
            raise ToolRegistrationError(f"tool {tool.name!r} is already registered")
        self._tools[tool.name] = tool
        logger.debug("ToolRegistry: registered %s", tool.full_name)
        return tool

    def register_callable(self, function: Callable[..., Any], **kwargs: Any) -> Tool:
        return self.register(Tool(function, **kwargs))

    def bind(self, name: str, function: Callable[..., Any]) -> Tool:
        """Attach an implementation to a tool loaded from config, keeping its schema."""
        existing = self.get(name)
        tool = Tool(
            function,
            name=existing.name,
            description=existing.description,
            input_schema=existing.input_schema,
            category=existing.category,
            display_name=existing.display_name,
            namespace=existing.namespace,
        )
        return self.register(tool, replace=True)

    @property
    def timeout_seconds(self) -> Optional[float]:
        return self._timeout_seconds

    @timeout_seconds.setter
    def timeout_seconds(self, value: Optional[float]) -> None:
        if value is not None and value <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {value!r}")
        self._timeout_seconds = value

    def add_rule(self, rule: ConditionalRule) -> None:
        self._rules.append(rule)

    def load_config(
        self,
        source: Union[str, Path, Mapping[str, Any]],
        handlers: Optional[Mapping[str, Callable[..., Any]]] = None,
    ) -> List[Tool]:
        """Register every tool declared in a JSON tool config.

        ``source`` is a path to the JSON file or an already-parsed mapping.
        Tools without a handler are registered with their schema only; invoking
        them raises until :meth:`bind` supplies an implementation.
        """
        if isinstance(source, Mapping):
            data = source
            origin = "<mapping>"
        else:
            origin = str(source)
            try:
                with open(source, "r", encoding="utf-8") as fh:
                    data = json.load(fh)
            except OSError as exc:
                raise ConfigError(f"cannot read tool config {origin!r}: {exc}") from exc
            except json.JSONDecodeError as exc:
                raise ConfigError(f"tool config {origin!r} is not valid JSON: {exc}") from exc

        try:
            jsonschema.validate(data, TOOL_CONFIG_SCHEMA)
        except jsonschema.ValidationError as exc:
            where = "/".join(str(p) for p in exc.absolute_path)
            raise ConfigError(f"tool config {origin!r} invalid at '{where}': {exc.message}") from exc

        handlers = handlers or {}
        loaded: List[Tool] = []
        for entry in data["tools"]:
            name = entry["name"]
            schema = dict(entry.get("parameters") or {"type": "object", "properties": {}})
            schema.setdefault("type", "object")
            tool = Tool(
                handlers.get(name) or _unbound(name),
                name=name,
                description=entry.get("description") or "",
                input_schema=schema,
                category=entry.get("category") or "General",
                display_name=entry.get("display_name"),
                namespace="config",
            )
            loaded.append(self.register(tool, replace=True))
        logger.info("ToolRegistry: loaded %d tool(s) from %s", len(loaded), origin)
        return loaded

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def get(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolInvocationError(f"unknown tool {name!r}") from None

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def by_category(self, category: str) -> List[Tool]:
        return [t for t in self._tools.values() if t.category == category]

    def get_input_schema(self, name: str) -> Optional[Dict[str, Any]]:
        tool = self._tools.get(name)
        return tool.input_schema if tool is not None else None

    def find_missing_required(self, name: str, args: Mapping[str, Any]) -> List[str]:
        schema = self.get_input_schema(name) or {}
        return [p for p in (schema.get("required") or []) if is_missing_value(args.get(p))]

    def find_conditionally_missing(self, name: str, args: Mapping[str, Any]) -> List[str]:
        tool = self._tools.get(name)
        if tool is None:
            return []
        out: List[str] = []
        for rule in self._rules:
            for param in rule(tool, args):
                if param not in out:
                    out.append(param)
        return out

    def openai_tools(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        selected = self._tools.values() if names is None else (self.get(n) for n in names)
        return [t.to_openai_tool() for t in selected]

    # ------------------------------------------------------------------ #
    # Invocation
    # ------------------------------------------------------------------ #
    async def invoke(self, tool_name: str, arguments: Mapping[str, Any]) -> Any:
        tool = self.get(tool_name)
        logger.debug("ToolRegistry: invoking %s", tool_name)
        if self._timeout_seconds is None:
            return await tool.invoke(arguments)
        try:
            return await asyncio.wait_for(tool.invoke(arguments), self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ToolInvocationError(
                f"{tool_name}: timed out after {self._timeout_seconds:.1f}s"
            ) from exc

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
