"""Custom exceptions for the :mod:`adaptstep` package."""
from __future__ import annotations


class AdaptStepError(Exception):
    """Base exception for adaptive time-stepping errors."""


class ConfigurationError(AdaptStepError, ValueError):
    """Invalid configuration file or parameter combination."""


class NumericalError(AdaptStepError, RuntimeError):
    """Fatal numerical condition that terminates a run."""


class BelowMinimumStepError(NumericalError):
    """Halving the time step would drop it below ``dt_min``."""

    def __init__(self, dt: float, dt_min: float, time: float | None = None) -> None:
        self.dt = dt
        self.dt_min = dt_min
        self.time = time
        where = f" at t={time:g}" if time is not None else ""
        super().__init__(f"time step {dt:g} below minimum {dt_min:g}{where}")


class ElementCeilingExceededError(NumericalError):
    """Spatial refinement requested on a mesh that is already too large."""

    def __init__(self, num_elements: int, max_elements: int, time: float | None = None) -> None:
        self.num_elements = num_elements
        self.max_elements = max_elements
        self.time = time
        where = f" at t={time:g}" if time is not None else ""
        super().__init__(
            f"adaptive refinement failed: {num_elements} elements exceed ceiling {max_elements}{where}"
        )


class InvalidRankAccessError(AdaptStepError, IndexError):
    """History rank outside the retained window."""


__all__ = [
    "AdaptStepError",
    "ConfigurationError",
    "NumericalError",
    "BelowMinimumStepError",
    "ElementCeilingExceededError",
    "InvalidRankAccessError",
]
