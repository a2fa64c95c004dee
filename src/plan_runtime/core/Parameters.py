"""Parameter definitions for proposed tool calls.

This module provides:
- ParameterDefinition: one declared parameter of a tool, plus its collected value
- parameters_from_schema: build the ordered definition list from a JSON schema
- is_missing_value: the presence test used for readiness checks
"""

from __future__ import annotations

from typing import Any, List, Mapping

from .sentinels import NO_VAL
from .Exceptions import ToolDefinitionError


def is_missing_value(value: Any) -> bool:
    """Return True when ``value`` does not count as supplied.

    Undefined (``NO_VAL``), ``None`` and strings that are empty after trimming
    are all missing. Everything else, including ``0``, ``False`` and empty
    containers, is present.
    """
    if value is NO_VAL or value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


class ParameterDefinition(dict):
    """Declared parameter of a tool together with its collected value.

    Behaves like a read-only mapping (JSON-serializable as-is) with attribute
    access. The collected value is the only mutable part and is changed through
    :meth:`with_value`, which returns a new instance.

    Keys:
      - name: str
      - description: str
      - required: bool
      - type: str (JSON schema type name, ``"any"`` when unspecified)
      - current_value: present only when a value has been collected
    """

    __slots__ = ("_name", "_description", "_required", "_type", "_current_value")

    def __init__(
        self,
        name: str,
        description: str = "",
        required: bool = False,
        type: str = "any",
        current_value: Any = NO_VAL,
    ) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ToolDefinitionError("ParameterDefinition.name must be a non-empty string")
        dict.__init__(self, name=name, description=description, required=bool(required), type=type)
        if current_value is not NO_VAL:
            dict.__setitem__(self, "current_value", current_value)
        self._name = name
        self._description = description
        self._required = bool(required)
        self._type = type
        self._current_value = current_value

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def required(self) -> bool:
        return self._required

    @property
    def type(self) -> str:
        return self._type

    @property
    def current_value(self) -> Any:
        return self._current_value

    @property
    def is_satisfied(self) -> bool:
        return not is_missing_value(self._current_value)

    def __setitem__(self, key, value):  # pragma: no cover - trivial immutability
        raise TypeError("ParameterDefinition is immutable; use with_value()")

    def __delitem__(self, key):  # pragma: no cover - trivial immutability
        raise TypeError("ParameterDefinition is immutable")

    def with_value(self, value: Any) -> "ParameterDefinition":
        return ParameterDefinition(
            name=self._name,
            description=self._description,
            required=self._required,
            type=self._type,
            current_value=value,
        )

    def to_dict(self) -> dict:
        d = {
            "name": self._name,
            "description": self._description,
            "required": self._required,
            "type": self._type,
        }
        if self._current_value is not NO_VAL:
            d["current_value"] = self._current_value
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ParameterDefinition":
        if not isinstance(d, Mapping):
            raise TypeError("ParameterDefinition.from_dict expects a mapping")
        return cls(
            name=d.get("name", ""),
            description=str(d.get("description", "") or ""),
            required=bool(d.get("required", False)),
            type=str(d.get("type", "any") or "any"),
            current_value=d.get("current_value", NO_VAL),
        )


def _json_schema_type_to_str(schema: Mapping[str, Any]) -> str:
    """Collapse a JSON schema fragment into a single readable type name."""
    t = schema.get("type")
    if isinstance(t, str):
        return t
    if isinstance(t, (list, tuple)):
        names = [str(x) for x in t if x != "null"]
        return " | ".join(names) if names else "null"
    if "enum" in schema:
        return "enum"
    if "anyOf" in schema or "oneOf" in schema:
        return "union"
    return "any"


def parameters_from_schema(
    input_schema: Mapping[str, Any] | None,
    values: Mapping[str, Any] | None = None,
) -> List[ParameterDefinition]:
    """Build the ordered parameter list for a tool's JSON input schema.

    Properties keep their declared order. ``values`` seeds ``current_value``
    for any property it names; names outside the schema are ignored here.
    """
    if not isinstance(input_schema, Mapping):
        return []
    props = input_schema.get("properties") or {}
    if not isinstance(props, Mapping):
        props = {}
    required = input_schema.get("required") or []
    if not isinstance(required, (list, tuple)):
        required = []
    values = values or {}

    out: List[ParameterDefinition] = []
    for raw_name, raw_meta in props.items():
        meta = raw_meta if isinstance(raw_meta, Mapping) else {}
        name = str(raw_name)
        out.append(ParameterDefinition(
            name=name,
            description=str(meta.get("description", "") or ""),
            required=name in required,
            type=_json_schema_type_to_str(meta),
            current_value=values.get(name, NO_VAL),
        ))
    return out


__all__ = ["ParameterDefinition", "parameters_from_schema", "is_missing_value"]
