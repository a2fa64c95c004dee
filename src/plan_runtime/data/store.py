"""Plan-scoped storage for step results and plan tags."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..core.Exceptions import StepStateError
from ..core.sentinels import NO_VAL

logger = logging.getLogger(__name__)

__all__ = ["StepStatus", "StepResult", "DependencyStore", "PlanScope"]


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not StepStatus.RUNNING


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome record of one step within one plan run.

    Created with :meth:`begin` in ``running`` status and moved exactly once to
    a terminal status with :meth:`complete` or :meth:`fail`. Each transition
    returns a new object; terminal results cannot transition again.
    """

    plan_id: str
    step_id: str
    status: StepStatus = StepStatus.RUNNING
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    raw_output: Any = None
    summary: Optional[str] = None
    extracted: Dict[str, Any] = field(default_factory=dict)
    attachments: List[Any] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def begin(cls, plan_id: str, step_id: str) -> "StepResult":
        return cls(plan_id=str(plan_id), step_id=str(step_id))

    def _finish(self, status: StepStatus, **changes: Any) -> "StepResult":
        if self.status.is_terminal:
            raise StepStateError(
                f"step {self.step_id!r} of plan {self.plan_id!r} is already {self.status.value}"
            )
        return replace(self, status=status, ended_at=time.time(), **changes)

    def complete(
        self,
        raw_output: Any,
        *,
        summary: Optional[str] = None,
        extracted: Optional[Mapping[str, Any]] = None,
        attachments: Optional[List[Any]] = None,
        logs: Optional[List[str]] = None,
    ) -> "StepResult":
        return self._finish(
            StepStatus.COMPLETED,
            raw_output=raw_output,
            summary=summary,
            extracted=dict(extracted or {}),
            attachments=list(attachments or []),
            logs=list(logs or []),
        )

    def fail(self, error: str, *, logs: Optional[List[str]] = None) -> "StepResult":
        return self._finish(StepStatus.FAILED, error=str(error), logs=list(logs or []))

    @property
    def duration(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "step_id": self.step_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "raw_output": self.raw_output,
            "summary": self.summary,
            "extracted": dict(self.extracted),
            "attachments": list(self.attachments),
            "logs": list(self.logs),
            "error": self.error,
        }


@dataclass(slots=True)
class _Scope:
    steps: Dict[str, StepResult] = field(default_factory=dict)
    tags: Dict[str, Any] = field(default_factory=dict)
    touched_at: float = field(default_factory=time.monotonic)


class DependencyStore:
    """In-memory two-level registry: plan id → (step results, plan tags).

    Scopes are created lazily on first write and released with
    :meth:`drop_scope` or :meth:`evict_idle`. Reads never create scopes.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._scopes: Dict[str, _Scope] = {}
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Step results
    # ------------------------------------------------------------------ #
    def save_step_result(self, result: StepResult) -> None:
        scope = self._ensure(result.plan_id)
        scope.steps[result.step_id] = result
        logger.debug(
            "DependencyStore: plan %s step %s -> %s",
            result.plan_id, result.step_id, result.status.value,
        )

    def get_step_result(self, plan_id: str, step_id: str) -> Optional[StepResult]:
        scope = self._scopes.get(plan_id)
        if scope is None:
            return None
        return scope.steps.get(step_id)

    # ------------------------------------------------------------------ #
    # Plan tags
    # ------------------------------------------------------------------ #
    def save_plan_data(self, plan_id: str, tag: str, value: Any) -> None:
        self._ensure(plan_id).tags[tag] = value
        logger.debug("DependencyStore: plan %s tag %r saved", plan_id, tag)

    def get_plan_data(self, plan_id: str, tag: str) -> Any:
        """Return the tag's value, or ``NO_VAL`` when it was never saved."""
        scope = self._scopes.get(plan_id)
        if scope is None:
            return NO_VAL
        return scope.tags.get(tag, NO_VAL)

    # ------------------------------------------------------------------ #
    # Scope lifecycle
    # ------------------------------------------------------------------ #
    def has_scope(self, plan_id: str) -> bool:
        return plan_id in self._scopes

    def plan_ids(self) -> List[str]:
        return list(self._scopes)

    def touch(self, plan_id: str) -> None:
        scope = self._scopes.get(plan_id)
        if scope is not None:
            scope.touched_at = self._clock()

    def drop_scope(self, plan_id: str) -> bool:
        dropped = self._scopes.pop(plan_id, None) is not None
        if dropped:
            logger.debug("DependencyStore: dropped scope %s", plan_id)
        return dropped

    def evict_idle(self, max_idle_seconds: float, keep: Iterable[str] = ()) -> List[str]:
        """Drop every scope untouched for longer than ``max_idle_seconds``, except ``keep``."""
        now = self._clock()
        keep = set(keep)
        stale = [
            plan_id for plan_id, scope in self._scopes.items()
            if plan_id not in keep and now - scope.touched_at > max_idle_seconds
        ]
        for plan_id in stale:
            del self._scopes[plan_id]
        if stale:
            logger.info("DependencyStore: evicted %d idle scope(s)", len(stale))
        return stale

    def scope(self, plan_id: str) -> "PlanScope":
        return PlanScope(self, plan_id)

    def _ensure(self, plan_id: str) -> _Scope:
        scope = self._scopes.get(plan_id)
        if scope is None:
            scope = self._scopes[plan_id] = _Scope(touched_at=self._clock())
        else:
            scope.touched_at = self._clock()
        return scope

    def __len__(self) -> int:
        return len(self._scopes)


class PlanScope:
    """View of a :class:`DependencyStore` bound to one plan id.

    Handed to the executor and resolver so neither works against ambient
    global state.
    """

    __slots__ = ("_store", "_plan_id")

    def __init__(self, store: DependencyStore, plan_id: str) -> None:
        self._store = store
        self._plan_id = plan_id

    @property
    def plan_id(self) -> str:
        return self._plan_id

    @property
    def store(self) -> DependencyStore:
        return self._store

    def save_step_result(self, result: StepResult) -> None:
        if result.plan_id != self._plan_id:
            raise ValueError(
                f"StepResult for plan {result.plan_id!r} saved into scope {self._plan_id!r}"
            )
        self._store.save_step_result(result)

    def get_step_result(self, step_id: str) -> Optional[StepResult]:
        return self._store.get_step_result(self._plan_id, step_id)

    def save_plan_data(self, tag: str, value: Any) -> None:
        self._store.save_plan_data(self._plan_id, tag, value)

    def get_plan_data(self, tag: str) -> Any:
        return self._store.get_plan_data(self._plan_id, tag)

    def release(self) -> bool:
        return self._store.drop_scope(self._plan_id)
