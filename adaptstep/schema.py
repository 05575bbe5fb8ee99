"""Configuration schema for adaptive time-stepping runs.

This module defines Pydantic models that mirror the structure of the YAML
configuration files used by :mod:`adaptstep.run`.  The ``time`` and
``adaptivity`` blocks configure the controller itself; ``problem`` holds the
parameters of the bundled reference problem and ``io`` the output options.
"""
from __future__ import annotations

import math
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ConfigurationError

DT_MIN_DEFAULT_HALVINGS = 15


class TimeStepping(BaseModel):
    """Step-size control parameters."""

    dt: float = Field(..., gt=0.0, description="Nominal (largest) time step.")
    dt_start: Optional[float] = Field(
        None,
        gt=0.0,
        description="Initial time step; must be dt * 2**-n, otherwise the nearest smaller admissible value is taken.",
    )
    dt_min: Optional[float] = Field(
        None,
        gt=0.0,
        description="Smallest admissible step; defaults to dt / 2**15.",
    )
    dt_max: Optional[float] = Field(None, gt=0.0, description="Optional ceiling on the proposed step.")
    end_time: float = Field(..., gt=0.0, description="Simulated end time.")
    start_time: float = Field(0.0, ge=0.0, description="Simulated start time.")
    cb_interval: int = Field(
        10,
        ge=1,
        description="Half the number of consecutive successes required before doubling the step.",
    )
    level_up_delay: float = Field(
        0.0,
        ge=0.0,
        description="No doubling below the start level before this simulated time.",
    )
    plot_interval: Optional[float] = Field(None, gt=0.0, description="Output interval; defaults to dt.")
    history_capacity: int = Field(1, ge=1, description="Number of retained solution snapshots.")

    @field_validator("dt", "end_time")
    def _check_finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ConfigurationError("time.dt and time.end_time must be finite")
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> "TimeStepping":
        model = self
        if model.dt_start is not None and model.dt_start > model.dt:
            raise ConfigurationError(
                f"time.dt_start ({model.dt_start}) must not exceed time.dt ({model.dt})"
            )
        if model.end_time <= model.start_time:
            raise ConfigurationError("time.end_time must be larger than time.start_time")
        dt_min = model.resolved_dt_min()
        start = model.dt_start if model.dt_start is not None else model.dt
        if start < dt_min:
            raise ConfigurationError(f"initial time step ({start}) is below time.dt_min ({dt_min})")
        if model.dt_max is not None and model.dt_max < dt_min:
            raise ConfigurationError(f"time.dt_max ({model.dt_max}) is below time.dt_min ({dt_min})")
        return model

    def resolved_dt_min(self) -> float:
        if self.dt_min is not None:
            return float(self.dt_min)
        return float(self.dt) / 2.0**DT_MIN_DEFAULT_HALVINGS

    def resolved_plot_interval(self) -> float:
        return float(self.plot_interval) if self.plot_interval is not None else float(self.dt)


class Adaptivity(BaseModel):
    """Spatial adaptivity coupled to the time-step control."""

    enabled: bool = Field(False, description="Couple step control with mesh refinement/coarsening.")
    tolerance: float = Field(1.0e-3, gt=0.0, description="Nominal refinement tolerance of the estimator.")
    max_elements: int = Field(100_000, gt=0, description="Abort instead of refining beyond this element count.")
    coarsen_fraction: float = Field(
        0.2,
        gt=0.0,
        le=1.0,
        description="Coarsen only if at least this fraction of the elements are candidates.",
    )
    hysteresis_factor: float = Field(
        0.8,
        gt=0.0,
        le=1.0,
        description="A repeated coarsening set must be smaller than this factor times the previous one.",
    )
    tolerance_reduction: float = Field(
        0.1,
        gt=0.0,
        lt=1.0,
        description="Factor applied to the tolerance while no element gets marked for refinement.",
    )
    max_tolerance_reductions: int = Field(20, ge=0)
    time_score_init: float = Field(1.0, gt=0.0, description="Temporal indicator after the first completed step.")
    space_score_init: float = Field(4.0, gt=0.0, description="Spatial indicator after the first completed step.")
    route_solver_failures: bool = Field(
        False,
        description="Let nonlinear-solve failures choose between time and space like estimator violations.",
    )


class FisherKPP(BaseModel):
    """Reference 1D reaction-diffusion problem u_t = D u_xx + r u (1 - u)."""

    length: float = Field(100.0, gt=0.0)
    n_elements: int = Field(64, ge=2)
    diffusivity: float = Field(1.0, gt=0.0)
    growth_rate: float = Field(1.0, gt=0.0)
    theta: float = Field(1.0, ge=0.5, le=1.0, description="1.0 implicit Euler, 0.5 Crank-Nicolson.")
    front_position: float = Field(10.0, ge=0.0)
    front_width: float = Field(1.0, gt=0.0)
    newton_tol: float = Field(1.0e-10, gt=0.0)
    newton_max_iter: int = Field(8, ge=1)
    max_refinement_level: int = Field(6, ge=0)
    coarsen_ratio: float = Field(
        0.1,
        gt=0.0,
        lt=1.0,
        description="Elements whose indicator is below this fraction of the tolerance are coarsening candidates.",
    )


class Progress(BaseModel):
    enable: bool = False
    refresh_seconds: float = Field(1.0, gt=0.0)


class IO(BaseModel):
    outdir: Path = Field(Path("out"), description="Output directory.")
    quiet: bool = False
    progress: Progress = Progress()
    series_format: Literal["parquet", "csv"] = "parquet"


class Config(BaseModel):
    """Top-level configuration."""

    time: TimeStepping
    adaptivity: Adaptivity = Adaptivity()
    problem: FisherKPP = FisherKPP()
    io: IO = IO()


__all__ = [
    "TimeStepping",
    "Adaptivity",
    "FisherKPP",
    "Progress",
    "IO",
    "Config",
    "DT_MIN_DEFAULT_HALVINGS",
]
