from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set

from ..core.Exceptions import PlanExecutionError
from ..data.store import DependencyStore
from .executor import PlanExecutor
from .models import Plan, Run

logger = logging.getLogger(__name__)

__all__ = ["RunRegistry"]


class RunRegistry:
    """Tracks live runs, their tasks and their dependency-store scopes.

    A run's scope is released when its session closes (in-flight steps are
    cancelled first) or when the run has been idle past ``idle_timeout_seconds``.
    Idle eviction runs on every :meth:`create` and, once :meth:`start_sweeper`
    is called, periodically in the background.
    """

    def __init__(
        self,
        executor: PlanExecutor,
        store: DependencyStore,
        *,
        idle_timeout_seconds: float = 1800.0,
        sweep_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._executor = executor
        self._store = store
        self._idle_timeout_seconds = float(idle_timeout_seconds)
        self._sweep_interval_seconds = float(
            sweep_interval_seconds
            if sweep_interval_seconds is not None
            else min(max(self._idle_timeout_seconds / 4, 1.0), 60.0)
        )
        self._clock = clock
        self._sweeper: Optional[asyncio.Task] = None
        self._runs: Dict[str, Run] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ #
    # Creation / execution
    # ------------------------------------------------------------------ #
    def create(self, plan: Plan) -> Run:
        if plan.plan_id in self._runs:
            raise PlanExecutionError(f"a run for plan {plan.plan_id} already exists")
        self.sweep()
        run = Run(plan=plan)
        self._runs[run.run_id] = run
        logger.info("RunRegistry: created run %s (%d step(s))", run.run_id, len(plan.steps))
        return run

    def start(self, run: Run) -> asyncio.Task:
        """Schedule ``run`` on the running loop and return its task."""
        task = asyncio.get_running_loop().create_task(self._executor.execute(run))
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda _t, run_id=run.run_id: self._tasks.pop(run_id, None))
        return task

    async def run_plan(self, plan: Plan) -> Run:
        run = self.create(plan)
        return await self.start(run)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def get(self, run_id: str) -> Optional[Run]:
        return self._runs.get(run_id)

    def runs_for(self, session_id: str) -> List[Run]:
        return [r for r in self._runs.values() if r.session_id == session_id]

    def session_ids(self) -> List[str]:
        return list(dict.fromkeys(r.session_id for r in self._runs.values()))

    def __len__(self) -> int:
        return len(self._runs)

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #
    async def release(self, run_id: str) -> bool:
        """Cancel the run's task if still running and drop its scope."""
        run = self._runs.pop(run_id, None)
        if run is None:
            return False
        task = self._tasks.pop(run_id, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._store.drop_scope(run_id)
        logger.info("RunRegistry: released run %s (%s)", run_id, run.status.value)
        return True

    async def close_session(self, session_id: str) -> int:
        ids = [r.run_id for r in self.runs_for(session_id)]
        for run_id in ids:
            await self.release(run_id)
        return len(ids)

    def schedule_close(self, session_id: str) -> None:
        """Sync hook (e.g. a disconnect listener) that closes a session in the background."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self.close_session(session_id))
            return
        task = loop.create_task(self.close_session(session_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def evict_idle(self, now: Optional[float] = None) -> List[str]:
        """Release finished runs idle longer than the timeout, then stale scopes."""
        return self.sweep(now)

    def sweep(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        stale = [
            r.run_id for r in self._runs.values()
            if r.status.is_terminal and now - r.last_activity > self._idle_timeout_seconds
        ]
        # Terminal runs have no live task, so they are dropped without awaiting.
        for run_id in stale:
            run = self._runs.pop(run_id)
            self._tasks.pop(run_id, None)
            self._store.drop_scope(run_id)
            logger.info("RunRegistry: evicted idle run %s (%s)", run_id, run.status.value)
        self._store.evict_idle(self._idle_timeout_seconds, keep=self._runs)
        return stale

    # ------------------------------------------------------------------ #
    # Background sweeper
    # ------------------------------------------------------------------ #
    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def start_sweeper(self) -> asyncio.Task:
        """Start (once) the periodic idle sweep on the running loop."""
        if not self.sweeping:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.debug("RunRegistry: sweeper started (every %.1fs)", self._sweep_interval_seconds)
        return self._sweeper

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            try:
                self.sweep()
            except Exception:
                logger.exception("RunRegistry: idle sweep failed")
