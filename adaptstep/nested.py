"""Nested orchestrators for coupled problems with two time scales.

A coarse outer integration can treat a complete fine-scale integration over
its step ``[t, t + dt]`` as its "nonlinear solve".  Each call builds a fresh
inner :class:`~adaptstep.orchestrator.StepOrchestrator`, so a rejected outer
attempt simply discards the inner run and a retry starts from the restored
outer state again.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np

from .history import HistoryBuffer
from .orchestrator import RunResult, StepOrchestrator

logger = logging.getLogger(__name__)

InnerFactory = Callable[[np.ndarray, float, float], StepOrchestrator]


class NestedStepSolver:
    """Time discretization and nonlinear solver backed by an inner orchestrator.

    ``factory(state, t0, t1)`` must return an orchestrator whose history is
    seeded with ``state`` at ``t0`` and whose end time is ``t1``.  Pass the
    same instance as ``time_disc`` and ``solver`` of the outer orchestrator.
    """

    def __init__(self, factory: InnerFactory) -> None:
        self.factory = factory
        self._t0: Optional[float] = None
        self._dt: Optional[float] = None
        self.last_result: Optional[RunResult] = None
        self.inner_runs = 0

    def prepare(self, history: HistoryBuffer, dt: float) -> None:
        self._t0 = history.time(0)
        self._dt = float(dt)

    def apply(self, state: np.ndarray) -> bool:
        if self._t0 is None or self._dt is None:
            raise RuntimeError("prepare() must be called before apply()")
        t0 = self._t0
        t1 = t0 + self._dt
        inner = self.factory(np.array(state, copy=True), t0, t1)
        self.inner_runs += 1
        result = inner.run_until(t1)
        self.last_result = result
        if not result.completed:
            logger.info("Inner integration over [%g, %g] aborted: %s", t0, t1, result.reason)
            return False
        if inner.state.shape != state.shape:
            logger.info("Inner integration changed the state size; rejecting outer step")
            return False
        np.copyto(state, inner.state)
        return True


__all__ = ["NestedStepSolver", "InnerFactory"]
