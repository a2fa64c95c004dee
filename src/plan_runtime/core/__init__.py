from .Parameters import ParameterDefinition, parameters_from_schema, is_missing_value
from .sentinels import NO_VAL

__all__ = [
    "ParameterDefinition",
    "parameters_from_schema",
    "is_missing_value",
    "NO_VAL",
]
