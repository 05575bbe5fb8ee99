"""Step orchestrator for adaptive implicit time integration.

The orchestrator owns the simulation clock and drives the external
collaborators one iteration at a time::

    prepare step -> nonlinear solve -> error check -> accept / retry

Architecture Overview
---------------------
1. **Orchestrator (this module)**
   - Simulation clock and termination
   - Rollback from history after a rejected attempt
   - Periodic output and progress reporting

2. **Controllers**
   - :class:`~adaptstep.levels.StepLevelTracker`: halving/doubling of dt
   - :class:`~adaptstep.spatial.SpatialAdaptivityController`: time vs. space
     retries, refinement and hysteresis guarded coarsening

3. **Collaborators** (:mod:`adaptstep.interfaces`)
   - time discretization, nonlinear solver, error estimator, output sink

Recoverable rejections never leave this module; they are logged and
recorded in the per-iteration trace.  Fatal conditions (step below
``dt_min``, element ceiling) stop the loop with the clock and the latest
history snapshot still describing the last accepted state.
"""
from __future__ import annotations

import enum
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .errors import BelowMinimumStepError, ElementCeilingExceededError, NumericalError
from .history import HistoryBuffer
from .interfaces import ErrorEstimator, NonlinearSolver, OutputSink, TimeDiscretization
from .levels import StepLevelTracker, resolve_start_level
from .runtime.progress import ProgressReporter
from .schema import Config
from .spatial import AdaptivityIndicators, RetryKind, SpatialAdaptivityController

logger = logging.getLogger(__name__)

# ===========================================================================
# Constants
# ===========================================================================
END_TIME_TOLERANCE = 1.0e-3
PLOT_TIME_TOLERANCE = 1.0e-5
MAX_ITERATIONS = 50_000_000


class StepOutcome(str, enum.Enum):
    """Result of a single orchestrator iteration."""

    RUNNING = "running"
    ACCEPTED = "accepted"
    REJECTED_NONLINEAR = "rejected_nonlinear"
    REJECTED_ERROR = "rejected_error"
    REFINED = "refined"
    COARSENED = "coarsened"
    ABORTED = "aborted"
    COMPLETED = "completed"


class RejectReason(str, enum.Enum):
    NONLINEAR_SOLVE_FAILURE = "nonlinear_solve_failure"
    ERROR_ESTIMATOR_EXCEEDED = "error_estimator_exceeded"


# ===========================================================================
# Data Classes for State Management
# ===========================================================================

@dataclass
class SimulationClock:
    """Simulated time and step size.

    Attributes
    ----------
    time : float
        Elapsed simulated time of the last accepted state.
    dt : float
        Step size of the next attempt.
    end_time : float
        Target time; reached when ``end_time - time <= 1e-3 * dt``.
    dt_min : float
        Smallest admissible step.
    dt_max : float or None
        Optional ceiling applied to every proposed step.
    """
    time: float
    dt: float
    end_time: float
    dt_min: float = 0.0
    dt_max: Optional[float] = None

    def reached_end(self) -> bool:
        return self.end_time - self.time <= END_TIME_TOLERANCE * self.dt

    def propose(self, dt: float) -> float:
        if self.dt_max is not None:
            dt = min(dt, self.dt_max)
        self.dt = dt
        return dt


@dataclass
class StepRecord:
    """Trace entry for one orchestrator iteration."""
    iteration: int
    time: float
    dt: float
    level: int
    outcome: str
    num_elements: Optional[int] = None
    time_score: Optional[float] = None
    space_score: Optional[float] = None


@dataclass
class RunResult:
    """Summary of a finished (completed or aborted) run."""
    status: StepOutcome
    time: float
    dt: float
    level: int
    iterations: int
    accepted_steps: int
    rejected_steps: int
    refinements: int = 0
    coarsenings: int = 0
    reason: Optional[str] = None
    records: List[StepRecord] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status is StepOutcome.COMPLETED

    @property
    def aborted(self) -> bool:
        return self.status is StepOutcome.ABORTED

    def trace_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(rec) for rec in self.records])

    def to_summary(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "time": self.time,
            "dt": self.dt,
            "level": self.level,
            "iterations": self.iterations,
            "accepted_steps": self.accepted_steps,
            "rejected_steps": self.rejected_steps,
            "refinements": self.refinements,
            "coarsenings": self.coarsenings,
            "reason": self.reason,
        }


# ===========================================================================
# Orchestrator
# ===========================================================================

class StepOrchestrator:
    """Drive an implicit time integration with adaptive step (and mesh) control."""

    def __init__(
        self,
        time_disc: TimeDiscretization,
        solver: NonlinearSolver,
        history: HistoryBuffer,
        tracker: StepLevelTracker,
        clock: SimulationClock,
        *,
        spatial: Optional[SpatialAdaptivityController] = None,
        sink: Optional[OutputSink] = None,
        plot_interval: Optional[float] = None,
        route_solver_failures: bool = False,
        progress: Optional[ProgressReporter] = None,
        keep_records: bool = True,
        raise_on_abort: bool = False,
    ) -> None:
        if len(history) == 0:
            raise ValueError("history must be seeded with the initial condition")
        self.time_disc = time_disc
        self.solver = solver
        self.history = history
        self.tracker = tracker
        self.clock = clock
        self.spatial = spatial
        self.sink = sink
        self.plot_interval = plot_interval
        self.route_solver_failures = bool(route_solver_failures)
        self.progress = progress
        self.keep_records = keep_records
        self.raise_on_abort = raise_on_abort
        self.state: np.ndarray = history.latest().copy()
        self.status = StepOutcome.RUNNING
        self.reason: Optional[str] = None
        self.error: Optional[NumericalError] = None
        self.iterations = 0
        self.accepted_steps = 0
        self.rejected_steps = 0
        self.records: List[StepRecord] = []
        self._new_time = True
        self._initial_emitted = False
        self.clock.propose(self.tracker.dt)

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        *,
        time_disc: TimeDiscretization,
        solver: NonlinearSolver,
        initial_state: np.ndarray,
        estimator: Optional[ErrorEstimator] = None,
        sink: Optional[OutputSink] = None,
        **kwargs: Any,
    ) -> "StepOrchestrator":
        """Assemble tracker, history, clock and adaptivity from ``cfg``."""

        t = cfg.time
        start_lv, _ = resolve_start_level(t.dt, t.dt_start)
        dt_min = t.resolved_dt_min()
        tracker = StepLevelTracker(
            t.dt,
            start_level=start_lv,
            dt_min=dt_min,
            cb_interval=t.cb_interval,
            level_up_delay=t.level_up_delay,
        )
        history = HistoryBuffer(t.history_capacity)
        history.push(initial_state, t.start_time)
        clock = SimulationClock(
            time=t.start_time,
            dt=tracker.dt,
            end_time=t.end_time,
            dt_min=dt_min,
            dt_max=t.dt_max,
        )
        spatial = None
        a = cfg.adaptivity
        if estimator is not None and a.enabled:
            indicators = AdaptivityIndicators(
                time_score_init=a.time_score_init,
                space_score_init=a.space_score_init,
            )
            spatial = SpatialAdaptivityController(
                estimator,
                indicators,
                tolerance=a.tolerance,
                max_elements=a.max_elements,
                coarsen_fraction=a.coarsen_fraction,
                hysteresis_factor=a.hysteresis_factor,
                tolerance_reduction=a.tolerance_reduction,
                max_tolerance_reductions=a.max_tolerance_reductions,
            )
        kwargs.setdefault(
            "progress",
            ProgressReporter(
                t.start_time,
                t.end_time,
                refresh_seconds=cfg.io.progress.refresh_seconds,
                enabled=cfg.io.progress.enable,
            ),
        )
        return cls(
            time_disc,
            solver,
            history,
            tracker,
            clock,
            spatial=spatial,
            sink=sink,
            plot_interval=t.resolved_plot_interval(),
            route_solver_failures=a.route_solver_failures,
            **kwargs,
        )

    # -----------------------------------------------------------------------
    # Single iteration
    # -----------------------------------------------------------------------

    def step(self) -> StepOutcome:
        """Run one iteration of the state machine and return its outcome."""

        if self.status in (StepOutcome.ABORTED, StepOutcome.COMPLETED):
            return self.status
        clock = self.clock
        if clock.reached_end():
            self.status = StepOutcome.COMPLETED
            return self.status
        if self.iterations >= MAX_ITERATIONS:
            limit = NumericalError(f"iteration limit {MAX_ITERATIONS} reached at t={clock.time:g}")
            return self._record(self._abort(limit))
        self.iterations += 1
        if self._new_time:
            logger.info("++++++ POINT IN TIME %gs BEGIN ++++++", clock.time + clock.dt)
            self._new_time = False
            if self.spatial is not None:
                self.spatial.begin_time_instant()

        self.time_disc.prepare(self.history, clock.dt)
        if not self.solver.apply(self.state):
            logger.info("Nonlinear solver failed at point in time %g with time step %g", clock.time, clock.dt)
            outcome = self._reject(RejectReason.NONLINEAR_SOLVE_FAILURE)
            return self._record(outcome)

        spatial = self.spatial
        if spatial is not None:
            marked = spatial.mark_for_refinement()
            if marked > 0:
                logger.info("Error estimator is above required error (%d elements marked).", marked)
                outcome = self._reject(RejectReason.ERROR_ESTIMATOR_EXCEEDED, marked=marked)
                return self._record(outcome)
            if spatial.try_coarsen():
                self._restore_after_topology_change()
                logger.info("Error estimator is below required error. Retrying with coarsened grid...")
                return self._record(StepOutcome.COARSENED)
            spatial.on_step_completed()
        return self._record(self._accept())

    # -----------------------------------------------------------------------
    # Drivers
    # -----------------------------------------------------------------------

    def run_until(self, end_time: float) -> RunResult:
        """Advance until ``end_time`` (or a fatal condition) and return the result."""

        self.clock.end_time = float(end_time)
        if self.status is StepOutcome.COMPLETED:
            self.status = StepOutcome.RUNNING
        if not self._initial_emitted:
            self._initial_emitted = True
            on_boundary, index = self._on_plot_boundary(self.clock.time)
            if self.sink is not None and on_boundary:
                self.sink.emit(self.state, index, self.clock.time)
        while self.step() not in (StepOutcome.COMPLETED, StepOutcome.ABORTED):
            pass
        if self.progress is not None:
            self.progress.finish(self.accepted_steps, self.clock.time, self.clock.dt)
        if self.status is StepOutcome.COMPLETED:
            logger.info(
                "Run completed at t=%g after %d accepted and %d rejected steps",
                self.clock.time,
                self.accepted_steps,
                self.rejected_steps,
            )
        return self.result()

    def run(self) -> RunResult:
        return self.run_until(self.clock.end_time)

    def result(self) -> RunResult:
        spatial = self.spatial
        return RunResult(
            status=self.status,
            time=self.clock.time,
            dt=self.clock.dt,
            level=self.tracker.level,
            iterations=self.iterations,
            accepted_steps=self.accepted_steps,
            rejected_steps=self.rejected_steps,
            refinements=spatial.refinements if spatial is not None else 0,
            coarsenings=spatial.coarsenings if spatial is not None else 0,
            reason=self.reason,
            records=list(self.records),
        )

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    def _reject(self, reason: RejectReason, *, marked: Optional[int] = None) -> StepOutcome:
        spatial = self.spatial
        by_estimator = reason is RejectReason.ERROR_ESTIMATOR_EXCEEDED
        if spatial is not None and (by_estimator or self.route_solver_failures):
            if spatial.choose_retry() is RetryKind.SPATIAL:
                try:
                    refined = spatial.refine(self.clock.time, marked=marked if by_estimator else None)
                except ElementCeilingExceededError as exc:
                    self.state = self.history.restore_into(self.state)
                    return self._abort(exc)
                if refined:
                    self._restore_after_topology_change()
                    logger.info("Retrying with refined grid...")
                    self.rejected_steps += 1
                    return StepOutcome.REFINED
            spatial.discard_for_temporal_retry()
        elif spatial is not None:
            spatial.estimator.clear_marks()
            spatial.estimator.invalidate_error()
        return self._halve(reason)

    def _halve(self, reason: RejectReason) -> StepOutcome:
        self.state = self.history.restore_into(self.state)
        self.rejected_steps += 1
        attempted = self.clock.dt
        try:
            new_dt = self.tracker.on_reject(self.clock.time)
            # under a dt_max cap the tracker step can still be above the attempted one
            while new_dt >= attempted:
                new_dt = self.tracker.on_reject(self.clock.time)
        except BelowMinimumStepError as exc:
            return self._abort(exc)
        self.clock.propose(new_dt)
        logger.info("Retrying with half the time step (dt=%g, level=%d)", self.clock.dt, self.tracker.level)
        if reason is RejectReason.NONLINEAR_SOLVE_FAILURE:
            return StepOutcome.REJECTED_NONLINEAR
        return StepOutcome.REJECTED_ERROR

    def _accept(self) -> StepOutcome:
        clock = self.clock
        time = self.history.time(0) + clock.dt
        clock.time = time
        self._new_time = True
        doublings = self.tracker.on_accept(time)
        if doublings:
            clock.propose(self.tracker.dt)
            if self.spatial is not None:
                self.spatial.indicators.on_doubling(doublings)
        self.history.push_discard_oldest(self.state, time)
        self.accepted_steps += 1
        if self.sink is not None:
            on_boundary, index = self._on_plot_boundary(time)
            if on_boundary:
                self.sink.emit(self.state, index, time)
        if self.progress is not None:
            self.progress.update(self.accepted_steps, time, clock.dt)
        logger.info("++++++ POINT IN TIME %gs END ++++++++", time)
        return StepOutcome.ACCEPTED

    def _restore_after_topology_change(self) -> None:
        estimator = self.spatial.estimator  # type: ignore[union-attr]
        self.history.remap(estimator.transfer)
        self.state = self.history.restore_into(self.state)

    def _abort(self, exc: NumericalError) -> StepOutcome:
        self.status = StepOutcome.ABORTED
        self.reason = str(exc)
        self.error = exc
        logger.warning("Aborting run: %s. Last valid point in time %g.", exc, self.clock.time)
        if self.raise_on_abort:
            raise exc
        return StepOutcome.ABORTED

    def _on_plot_boundary(self, time: float) -> tuple[bool, int]:
        if self.plot_interval is None or self.plot_interval <= 0.0:
            return False, 0
        ratio = time / self.plot_interval
        index = int(math.floor(ratio + 0.5))
        return abs(ratio - index) < PLOT_TIME_TOLERANCE, index

    def _record(self, outcome: StepOutcome) -> StepOutcome:
        if self.keep_records:
            spatial = self.spatial
            self.records.append(
                StepRecord(
                    iteration=self.iterations,
                    time=self.clock.time,
                    dt=self.clock.dt,
                    level=self.tracker.level,
                    outcome=outcome.value,
                    num_elements=int(spatial.estimator.num_elements()) if spatial is not None else None,
                    time_score=spatial.indicators.time_score if spatial is not None else None,
                    space_score=spatial.indicators.space_score if spatial is not None else None,
                )
            )
        return outcome


__all__ = [
    "END_TIME_TOLERANCE",
    "PLOT_TIME_TOLERANCE",
    "MAX_ITERATIONS",
    "StepOutcome",
    "RejectReason",
    "SimulationClock",
    "StepRecord",
    "RunResult",
    "StepOrchestrator",
]
