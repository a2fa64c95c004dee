from __future__ import annotations

from typing import Any


class _NoValSentinel:
    """Shared sentinel for a value that could not be found (NO_VAL).

    Distinct from ``None``: a step output may legitimately hold ``None``,
    while ``NO_VAL`` means the lookup itself came up empty. Use ``is NO_VAL``.
    """
    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return "NO_VAL"

    def __bool__(self) -> bool:
        return False


NO_VAL: Any = _NoValSentinel()

__all__ = ["NO_VAL"]
