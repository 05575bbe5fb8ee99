"""Interfaces of the collaborators driven by the step orchestrator.

The orchestrator never assembles or solves anything itself.  It talks to a
time discretization, a nonlinear solver and, optionally, an error estimator
with mesh refiner and an output sink.  The protocols below document the
exact surface that is used; any object providing these methods can be
plugged in (see :mod:`adaptstep.problems.fisher_kpp` for a reference set).
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:  # pragma: no cover
    from .history import HistoryBuffer


@runtime_checkable
class TimeDiscretization(Protocol):
    """Sets up one implicit step from the retained history."""

    def prepare(self, history: "HistoryBuffer", dt: float) -> None:
        ...


@runtime_checkable
class NonlinearSolver(Protocol):
    """Solves the discrete system in place.

    ``apply`` must return ``False`` on failure and must be idempotent when
    called again with an unchanged ``state``.
    """

    def apply(self, state: np.ndarray) -> bool:
        ...


@runtime_checkable
class ErrorEstimator(Protocol):
    """Residual error estimator combined with a mesh refiner."""

    def mark_for_refinement(self, tolerance: float) -> int:
        ...

    def mark_for_coarsening(self) -> int:
        ...

    def clear_marks(self) -> None:
        ...

    def refine(self) -> None:
        ...

    def coarsen(self) -> None:
        ...

    def num_elements(self) -> int:
        ...

    def invalidate_error(self) -> None:
        ...

    def is_error_valid(self) -> bool:
        ...

    def transfer(self, values: np.ndarray) -> np.ndarray:
        """Return ``values`` interpolated onto the current mesh."""
        ...


@runtime_checkable
class OutputSink(Protocol):
    """Receives the state at plot-interval boundaries."""

    def emit(self, state: np.ndarray, step_index: int, time: float) -> None:
        ...


__all__ = [
    "TimeDiscretization",
    "NonlinearSolver",
    "ErrorEstimator",
    "OutputSink",
]
