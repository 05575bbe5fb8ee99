from __future__ import annotations

from typing import Optional

import numpy as np
import pytest

from adaptstep import orchestrator
from adaptstep.errors import BelowMinimumStepError, NumericalError
from adaptstep.history import HistoryBuffer
from adaptstep.levels import StepLevelTracker, resolve_start_level
from adaptstep.orchestrator import SimulationClock, StepOrchestrator, StepOutcome
from adaptstep.schema import Adaptivity, Config, TimeStepping
from adaptstep.spatial import AdaptivityIndicators, SpatialAdaptivityController
from tests.fixtures.collaborators import (
    RecordingSink,
    RecordingTimeDisc,
    ScriptedEstimator,
    ScriptedSolver,
)


def _build(
    *,
    dt: float = 0.01,
    dt_start: Optional[float] = None,
    end_time: float = 0.1,
    dt_min: Optional[float] = None,
    dt_max: Optional[float] = None,
    cb_interval: int = 10,
    level_up_delay: float = 0.0,
    outcomes=(),
    fail_above: Optional[float] = None,
    estimator: Optional[ScriptedEstimator] = None,
    indicators: Optional[AdaptivityIndicators] = None,
    max_elements: int = 10_000,
    sink=None,
    plot_interval: Optional[float] = None,
    **kwargs,
) -> StepOrchestrator:
    time_disc = RecordingTimeDisc()
    solver = ScriptedSolver(time_disc, outcomes, fail_above=fail_above)
    start_lv, _ = resolve_start_level(dt, dt_start)
    dt_min = dt / 2**15 if dt_min is None else dt_min
    tracker = StepLevelTracker(
        dt,
        start_level=start_lv,
        dt_min=dt_min,
        cb_interval=cb_interval,
        level_up_delay=level_up_delay,
    )
    history = HistoryBuffer()
    history.push(np.zeros(3), 0.0)
    clock = SimulationClock(time=0.0, dt=tracker.dt, end_time=end_time, dt_min=dt_min, dt_max=dt_max)
    spatial = None
    if estimator is not None:
        spatial = SpatialAdaptivityController(
            estimator,
            indicators or AdaptivityIndicators(),
            tolerance=1.0e-3,
            max_elements=max_elements,
        )
    return StepOrchestrator(
        time_disc,
        solver,
        history,
        tracker,
        clock,
        spatial=spatial,
        sink=sink,
        plot_interval=plot_interval,
        **kwargs,
    )


def test_scenario_failure_then_twenty_successes_doubles_once():
    orch = _build(dt=0.01, dt_start=0.0025, end_time=1.0, outcomes=[False])
    assert orch.tracker.level == 2
    assert orch.clock.dt == pytest.approx(0.0025)

    assert orch.step() is StepOutcome.REJECTED_NONLINEAR
    assert orch.clock.dt == pytest.approx(0.00125)
    assert orch.tracker.level == 3
    assert orch.clock.time == 0.0
    assert np.allclose(orch.state, 0.0)

    for _ in range(19):
        assert orch.step() is StepOutcome.ACCEPTED
        assert orch.tracker.level == 3
    assert orch.step() is StepOutcome.ACCEPTED
    assert orch.tracker.level == 2
    assert orch.clock.dt == pytest.approx(0.0025)
    assert orch.tracker.counter(2) == 10
    assert orch.clock.time == pytest.approx(20 * 0.00125)
    assert np.allclose(orch.state, orch.clock.time)


def test_time_is_monotonic_across_rejections():
    outcomes = [True, False, True, True, False, False, True] + [True] * 5 + [False]
    orch = _build(dt=0.02, end_time=0.4, cb_interval=2, outcomes=outcomes)
    result = orch.run()
    assert result.completed
    times = [rec.time for rec in result.records]
    assert all(b >= a for a, b in zip(times, times[1:]))
    accepted = [rec.time for rec in result.records if rec.outcome == StepOutcome.ACCEPTED.value]
    assert all(b > a for a, b in zip(accepted, accepted[1:]))
    assert abs(result.time - 0.4) <= 1.0e-3 * result.dt
    assert np.allclose(orch.history.latest(), result.time)
    assert result.rejected_steps == 4


def test_abort_when_halving_drops_below_minimum():
    orch = _build(dt=0.01, dt_min=0.01 / 8, fail_above=0.0)
    result = orch.run()
    assert result.aborted
    assert result.status is StepOutcome.ABORTED
    assert result.time == 0.0
    assert result.level == 3
    assert result.dt == pytest.approx(0.00125)
    assert result.rejected_steps == 4
    assert "below minimum" in result.reason
    assert isinstance(orch.error, BelowMinimumStepError)
    assert np.allclose(orch.state, 0.0)
    # further iterations do nothing
    assert orch.step() is StepOutcome.ABORTED


def test_no_abort_while_halved_step_stays_above_minimum():
    orch = _build(dt=0.01, dt_min=0.01 / 8, fail_above=0.003, end_time=0.05, cb_interval=1)
    result = orch.run()
    assert result.completed
    assert result.time == pytest.approx(0.05)
    assert all(rec.dt >= 0.01 / 8 for rec in result.records)


def test_raise_on_abort_propagates_fatal_error():
    orch = _build(dt=0.01, dt_min=0.004, fail_above=0.0, raise_on_abort=True)
    with pytest.raises(BelowMinimumStepError):
        orch.run()
    assert orch.status is StepOutcome.ABORTED
    assert orch.clock.time == 0.0


def test_error_violation_with_larger_time_score_retries_in_time():
    est = ScriptedEstimator(100, refine_marks=[0, 0, 0, 0, 0, 5])
    ind = AdaptivityIndicators(time_score=1.0, space_score=0.5)
    orch = _build(dt=0.1, end_time=1.0, estimator=est, indicators=ind)
    for _ in range(5):
        assert orch.step() is StepOutcome.ACCEPTED
    assert orch.clock.time == pytest.approx(0.5)

    assert orch.step() is StepOutcome.REJECTED_ERROR
    assert orch.clock.time == pytest.approx(0.5)
    assert orch.clock.dt == pytest.approx(0.05)
    assert est.refine_calls == 0
    assert est.elements == 100
    assert ind.time_score == 0.5
    assert np.allclose(orch.state, 0.5)


def test_error_violation_with_larger_space_score_refines_and_retries_same_instant():
    est = ScriptedEstimator(100, refine_marks=[4])
    ind = AdaptivityIndicators(time_score=0.5, space_score=1.0)
    orch = _build(dt=0.1, end_time=1.0, estimator=est, indicators=ind)
    assert orch.step() is StepOutcome.REFINED
    assert orch.clock.time == 0.0
    assert orch.clock.dt == pytest.approx(0.1)
    assert est.elements == 200
    assert ind.space_score == pytest.approx(0.5)
    assert np.allclose(orch.state, 0.0)
    assert orch.step() is StepOutcome.ACCEPTED
    assert orch.clock.time == pytest.approx(0.1)


def test_uninitialised_scores_refine_in_space_first():
    est = ScriptedEstimator(100, refine_marks=[4])
    orch = _build(dt=0.1, end_time=1.0, estimator=est)
    assert orch.step() is StepOutcome.REFINED
    assert orch.step() is StepOutcome.ACCEPTED
    assert orch.spatial.indicators.time_score == 1.0
    assert orch.spatial.indicators.space_score == 4.0


def test_invalid_error_estimate_forces_temporal_retry():
    est = ScriptedEstimator(100, refine_marks=[4])
    est.valid = False
    ind = AdaptivityIndicators(time_score=0.5, space_score=1.0)
    orch = _build(dt=0.1, end_time=1.0, estimator=est, indicators=ind)
    assert orch.step() is StepOutcome.REJECTED_ERROR
    assert est.refine_calls == 0
    assert orch.clock.dt == pytest.approx(0.05)


def test_element_ceiling_aborts_with_consistent_state():
    est = ScriptedEstimator(500, refine_marks=[0, 3])
    ind = AdaptivityIndicators(time_score=0.5, space_score=1.0)
    orch = _build(dt=0.1, end_time=1.0, estimator=est, indicators=ind, max_elements=400)
    assert orch.step() is StepOutcome.ACCEPTED
    assert orch.step() is StepOutcome.ABORTED
    result = orch.result()
    assert result.aborted
    assert "too many" in result.reason or "exceed" in result.reason
    assert result.time == pytest.approx(0.1)
    assert np.allclose(orch.state, 0.1)
    assert est.refine_calls == 0


def test_coarsening_retries_same_instant_with_hysteresis():
    est = ScriptedEstimator(100, coarsen_marks=[50, 45])
    orch = _build(dt=0.1, end_time=1.0, estimator=est)
    assert orch.step() is StepOutcome.COARSENED
    assert orch.clock.time == 0.0
    assert est.elements == 75
    assert orch.spatial.previous_marked_count == 50
    # 45 is not below 0.8 * 50: the step is accepted on the coarse grid
    assert orch.step() is StepOutcome.ACCEPTED
    assert est.elements == 75
    assert orch.clock.time == pytest.approx(0.1)
    assert orch.spatial.previous_marked_count == -1
    assert orch.result().coarsenings == 1


def test_doubling_doubles_time_score():
    est = ScriptedEstimator(100)
    orch = _build(dt=0.02, dt_start=0.01, end_time=1.0, cb_interval=1, estimator=est)
    assert orch.step() is StepOutcome.ACCEPTED
    assert orch.spatial.indicators.time_score == 1.0
    assert orch.step() is StepOutcome.ACCEPTED
    assert orch.tracker.level == 0
    assert orch.spatial.indicators.time_score == 2.0
    assert orch.clock.dt == pytest.approx(0.02)


def test_solver_failures_follow_indicators_when_routed():
    est = ScriptedEstimator(100, refine_marks=[3])
    ind = AdaptivityIndicators(time_score=0.5, space_score=1.0)
    orch = _build(
        dt=0.1,
        end_time=1.0,
        outcomes=[False],
        estimator=est,
        indicators=ind,
        route_solver_failures=True,
    )
    assert orch.step() is StepOutcome.REFINED
    assert orch.clock.dt == pytest.approx(0.1)
    assert est.refine_calls == 1


def test_solver_failures_halve_step_when_not_routed():
    est = ScriptedEstimator(100, refine_marks=[3])
    ind = AdaptivityIndicators(time_score=0.5, space_score=1.0)
    orch = _build(dt=0.1, end_time=1.0, outcomes=[False], estimator=est, indicators=ind)
    assert orch.step() is StepOutcome.REJECTED_NONLINEAR
    assert orch.clock.dt == pytest.approx(0.05)
    assert est.refine_calls == 0
    assert ind.time_score == 0.5


def test_output_only_at_plot_boundaries():
    sink = RecordingSink()
    orch = _build(dt=0.25, end_time=2.0, outcomes=[True, False], sink=sink, plot_interval=0.5)
    result = orch.run()
    assert result.completed
    indices = [event[0] for event in sink.events]
    times = [event[1] for event in sink.events]
    assert indices == [0, 1, 2, 3, 4]
    assert times == pytest.approx([0.0, 0.5, 1.0, 1.5, 2.0])
    for _, time, state in sink.events:
        assert np.allclose(state, time)


def test_dt_max_caps_proposed_step():
    orch = _build(dt=0.01, dt_max=0.004, end_time=0.02)
    assert orch.clock.dt == pytest.approx(0.004)
    result = orch.run()
    assert result.completed
    assert result.accepted_steps == 5


def test_rejection_under_dt_max_shrinks_attempted_step():
    orch = _build(dt=0.01, dt_max=0.003, outcomes=[False, True])
    assert orch.step() is StepOutcome.REJECTED_NONLINEAR
    assert orch.step() is StepOutcome.ACCEPTED
    attempted = [dt for _, dt in orch.time_disc.calls]
    assert attempted == pytest.approx([0.003, 0.0025])
    assert attempted[1] < attempted[0]
    assert orch.tracker.level == 2
    assert orch.clock.time == pytest.approx(0.0025)


def test_minimum_step_is_checked_against_attempted_step_under_dt_max():
    orch = _build(dt=0.01, dt_max=0.003, dt_min=0.002, fail_above=0.0)
    result = orch.run()
    assert result.aborted
    assert result.rejected_steps == 2
    assert result.dt == pytest.approx(0.0025)
    assert [dt for _, dt in orch.time_disc.calls] == pytest.approx([0.003, 0.0025])


def test_iteration_limit_aborts_run(monkeypatch):
    monkeypatch.setattr(orchestrator, "MAX_ITERATIONS", 3)
    orch = _build(dt=0.1, end_time=1.0)
    result = orch.run()
    assert result.aborted
    assert result.accepted_steps == 3
    assert result.time == pytest.approx(0.3)
    assert "iteration limit" in result.reason
    assert isinstance(orch.error, NumericalError)
    assert result.records[-1].outcome == StepOutcome.ABORTED.value


def test_completed_run_can_be_extended():
    orch = _build(dt=0.1, end_time=0.3)
    first = orch.run()
    assert first.completed
    assert first.accepted_steps == 3
    second = orch.run_until(0.5)
    assert second.completed
    assert second.accepted_steps == 5
    assert second.time == pytest.approx(0.5)


def test_run_result_summary_and_trace():
    orch = _build(dt=0.1, end_time=0.2, outcomes=[False])
    result = orch.run()
    summary = result.to_summary()
    assert summary["status"] == "completed"
    assert summary["accepted_steps"] == result.accepted_steps
    frame = result.trace_frame()
    assert list(frame["outcome"])[0] == "rejected_nonlinear"
    assert {"iteration", "time", "dt", "level"} <= set(frame.columns)


def test_from_config_resolves_levels_and_defaults():
    cfg = Config(time=TimeStepping(dt=0.01, dt_start=0.0025, end_time=0.05))
    time_disc = RecordingTimeDisc()
    orch = StepOrchestrator.from_config(
        cfg,
        time_disc=time_disc,
        solver=ScriptedSolver(time_disc),
        initial_state=np.zeros(2),
        estimator=ScriptedEstimator(),
    )
    assert orch.tracker.level == 2
    assert orch.clock.dt == pytest.approx(0.0025)
    assert orch.tracker.dt_min == pytest.approx(0.01 / 2**15)
    assert orch.spatial is None
    assert orch.plot_interval == pytest.approx(0.01)
    assert orch.run().completed


def test_from_config_builds_spatial_controller_when_enabled():
    cfg = Config(
        time=TimeStepping(dt=0.1, end_time=0.5),
        adaptivity=Adaptivity(enabled=True, tolerance=0.5, max_elements=50, time_score_init=2.0),
    )
    time_disc = RecordingTimeDisc()
    orch = StepOrchestrator.from_config(
        cfg,
        time_disc=time_disc,
        solver=ScriptedSolver(time_disc),
        initial_state=np.zeros(2),
        estimator=ScriptedEstimator(),
    )
    assert orch.spatial is not None
    assert orch.spatial.max_elements == 50
    assert orch.spatial.indicators.time_score_init == 2.0
