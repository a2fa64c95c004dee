from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections import OrderedDict
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    get_args,
    get_origin,
)

import jsonschema
from referencing.exceptions import Unresolvable

from ..core.Exceptions import ToolDefinitionError, ToolInvocationError
from ..core.Parameters import ParameterDefinition, parameters_from_schema

logger = logging.getLogger(__name__)

__all__ = ["Tool", "schema_from_callable"]

_JSON_TYPES: Dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
    tuple: "array",
    type(None): "null",
}


def _annotation_to_schema(ann: Any) -> Dict[str, Any]:
    """Map a Python annotation onto a (loose) JSON schema fragment."""
    if ann is inspect.Parameter.empty or ann is Any or isinstance(ann, str):
        return {}
    origin = get_origin(ann)
    if origin is not None:
        if origin in (list, tuple, dict):
            return {"type": _JSON_TYPES[origin]}
        args = [a for a in get_args(ann) if a is not type(None)]
        if len(args) == 1:
            return _annotation_to_schema(args[0])
        return {}
    if ann in _JSON_TYPES:
        return {"type": _JSON_TYPES[ann]}
    return {}


def schema_from_callable(function: Callable[..., Any]) -> Dict[str, Any]:
    """Build an ``object`` JSON schema from a callable's signature.

    Parameters without defaults are required. ``*args``/``**kwargs`` are
    skipped (``**kwargs`` makes the schema open to extra properties).
    """
    try:
        sig = inspect.signature(function)
    except (TypeError, ValueError) as exc:
        raise ToolDefinitionError(f"cannot inspect signature of {function!r}") from exc

    properties: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    required: List[str] = []
    open_ended = False
    for name, param in sig.parameters.items():
        if param.kind is inspect.Parameter.VAR_KEYWORD:
            open_ended = True
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.POSITIONAL_ONLY):
            continue
        prop = _annotation_to_schema(param.annotation)
        if param.default is inspect.Parameter.empty:
            required.append(name)
        else:
            prop = {**prop, "default": param.default}
        properties[name] = prop

    schema: Dict[str, Any] = {"type": "object", "properties": dict(properties)}
    if required:
        schema["required"] = required
    if not open_ended:
        schema["additionalProperties"] = False
    return schema


# ───────────────────────────────────────────────────────────────────────────────
# Tool primitive
# ───────────────────────────────────────────────────────────────────────────────
class Tool:
    """Dict-first wrapper around a sync or async callable.

    Invocation follows the template::

        invoke(inputs) -> validate(inputs) -> to_kwargs(inputs) -> execute(kwargs)

    Sync callables run in the loop's default thread executor so a slow tool
    never blocks other runs. The JSON ``input_schema`` is either supplied
    (tool config, MCP server) or derived from the callable's signature.
    """

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #
    def __init__(
        self,
        function: Callable[..., Any],
        name: Optional[str] = None,
        description: Optional[str] = None,
        input_schema: Optional[Mapping[str, Any]] = None,
        *,
        category: Optional[str] = None,
        display_name: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> None:
        if not callable(function):
            raise ToolDefinitionError(f"Tool function must be callable, got {type(function)!r}")

        self._function: Callable[..., Any] = function
        self._namespace: str = namespace or "default"

        inferred_name = name or getattr(function, "__name__", "") or ""
        if not inferred_name.strip():
            raise ToolDefinitionError("Tool name must be a non-empty string")
        self._name = inferred_name.strip()
        self._description = (
            (description or getattr(function, "__doc__", "") or "undescribed").strip() or "undescribed"
        )
        self._category = category
        self._display_name = display_name or self._name

        schema = dict(input_schema) if input_schema is not None else self._build_input_schema()
        try:
            jsonschema.Draft7Validator.check_schema(schema)
        except jsonschema.SchemaError as exc:
            raise ToolDefinitionError(f"{self._name}: invalid input schema: {exc.message}") from exc
        self._input_schema: Dict[str, Any] = schema
        self._validator = jsonschema.Draft7Validator(schema)

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #
    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def category(self) -> Optional[str]:
        return self._category

    @property
    def display_name(self) -> str:
        return self._display_name

    @property
    def function(self) -> Callable[..., Any]:
        return self._function

    @property
    def full_name(self) -> str:
        """Fully-qualified tool name of the form ``Type.namespace.name``."""
        return f"{type(self).__name__}.{self._namespace}.{self._name}"

    @property
    def input_schema(self) -> Dict[str, Any]:
        return dict(self._input_schema)

    @property
    def required_parameters(self) -> List[str]:
        return list(self._input_schema.get("required") or [])

    @property
    def parameters(self) -> List[ParameterDefinition]:
        return parameters_from_schema(self._input_schema)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def validation_errors(self, inputs: Mapping[str, Any]) -> List[str]:
        """Human-readable schema violations for ``inputs`` (empty when valid)."""
        errors = sorted(self._validator.iter_errors(dict(inputs)), key=lambda e: list(e.path))
        out = []
        for err in errors:
            where = ".".join(str(p) for p in err.path)
            out.append(f"{where}: {err.message}" if where else err.message)
        return out

    async def invoke(self, inputs: Mapping[str, Any]) -> Any:
        """Validate and run the tool with a dict-like mapping of inputs.

        Subclasses customise :meth:`to_kwargs` and :meth:`execute`, never this
        method.
        """
        if not isinstance(inputs, Mapping):
            raise ToolInvocationError(f"{self._name}: inputs must be a mapping")
        try:
            problems = self.validation_errors(inputs)
        except Unresolvable as exc:
            raise ToolInvocationError(f"{self._name}: unresolvable schema reference: {exc}") from exc
        if problems:
            raise ToolInvocationError(f"{self._name}: invalid arguments: {'; '.join(problems)}")
        kwargs = self.to_kwargs(inputs)
        try:
            return await self.execute(kwargs)
        except ToolInvocationError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise ToolInvocationError(f"{self._name}: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Hooks
    # ------------------------------------------------------------------ #
    def _build_input_schema(self) -> Dict[str, Any]:
        return schema_from_callable(self._function)

    def to_kwargs(self, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        return dict(inputs)

    async def execute(self, kwargs: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self._function):
            return await self._function(**kwargs)
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, functools.partial(self._function, **kwargs))
        if inspect.isawaitable(result):
            result = await result
        return result

    # ------------------------------------------------------------------ #
    # Serialization
    # ------------------------------------------------------------------ #
    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self._name,
            "description": self._description,
            "category": self._category,
            "display_name": self._display_name,
            "parameters": self.input_schema,
        }

    def to_openai_tool(self) -> Dict[str, Any]:
        """Function-calling descriptor for chat completions."""
        return {
            "type": "function",
            "function": {
                "name": self._name,
                "description": self._description,
                "parameters": self.input_schema,
            },
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.full_name}>"
