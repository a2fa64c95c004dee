"""Explicit step dependency graph for parallel plan execution.

Steps are nodes (indexed by position); every ``{{step:<id>...}}`` placeholder
in a step's arguments is an edge from the referenced step. Scheduling is by
in-degree: each wave holds every step whose dependencies have all finished.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Set, Tuple

from ..core.Exceptions import PlanValidationError
from ..data.resolver import find_step_references
from .models import Plan

logger = logging.getLogger(__name__)

__all__ = ["PlanGraph"]


@dataclass(slots=True)
class PlanGraph:
    node_ids: List[str]
    edges: List[Tuple[int, int]] = field(default_factory=list)

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanGraph":
        index: Dict[str, int] = {step.id: i for i, step in enumerate(plan.steps)}
        edges: List[Tuple[int, int]] = []
        for i, step in enumerate(plan.steps):
            for ref in sorted(find_step_references(step.arguments)):
                src = index.get(ref)
                if src is None:
                    # Unknown step: resolves to fallback/unresolved text at run time.
                    logger.debug("PlanGraph: step %s references unknown step %s", step.id, ref)
                    continue
                if src == i:
                    raise PlanValidationError(f"step {step.id!r} references itself")
                edges.append((src, i))
        return cls(node_ids=[s.id for s in plan.steps], edges=edges)

    def dependencies(self, node: int) -> Set[int]:
        return {src for src, dst in self.edges if dst == node}

    def waves(self) -> List[List[int]]:
        """Kahn layering; raises :class:`PlanValidationError` on a cycle."""
        n = len(self.node_ids)
        indegree = [0] * n
        children: List[List[int]] = [[] for _ in range(n)]
        for src, dst in set(self.edges):
            indegree[dst] += 1
            children[src].append(dst)

        layer = [i for i in range(n) if indegree[i] == 0]
        out: List[List[int]] = []
        seen = 0
        while layer:
            out.append(layer)
            seen += len(layer)
            nxt: List[int] = []
            for node in layer:
                for child in children[node]:
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        nxt.append(child)
            layer = sorted(nxt)
        if seen != n:
            stuck = [self.node_ids[i] for i in range(n) if indegree[i] > 0]
            raise PlanValidationError(f"Circular dependency detected in plan between steps {stuck}")
        return out
