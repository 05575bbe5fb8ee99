"""Step-halving depth and the check-back counters that undo it.

The tracker implements the step-doubling bookkeeping of the implicit
integrator.  Every rejection halves the step and descends one level; every
acceptance increments the success counter of the current level.  Once a
level has collected ``2 * cb_interval`` successes the step doubles, half of
the counter is carried to the coarser level and the carry may cascade
further, exactly like incrementing a mixed-radix number.
"""
from __future__ import annotations

import logging
import math
import warnings
from typing import Dict, Tuple

from .errors import BelowMinimumStepError, ConfigurationError
from .warnings import ConfigurationWarning

logger = logging.getLogger(__name__)

START_DT_RTOL = 1.0e-5


def resolve_start_level(dt: float, dt_start: float | None) -> Tuple[int, float]:
    """Return ``(start_lv, dt_start_effective)`` for a nominal step ``dt``.

    The start step must have the form ``dt * 2**-n``.  Other values are
    replaced by the nearest smaller admissible step and a
    :class:`~adaptstep.warnings.ConfigurationWarning` is emitted.
    """

    dt_val = float(dt)
    if not math.isfinite(dt_val) or dt_val <= 0.0:
        raise ConfigurationError("dt must be positive and finite")
    if dt_start is None:
        return 0, dt_val
    start_val = float(dt_start)
    if not math.isfinite(start_val) or start_val <= 0.0:
        raise ConfigurationError("dt_start must be positive and finite")
    if start_val > dt_val:
        raise ConfigurationError(f"dt_start ({start_val:g}) must not exceed dt ({dt_val:g})")
    ratio = math.log2(dt_val / start_val)
    start_lv = int(math.ceil(ratio))
    # log2 of an exact power of two may come back a hair above the integer
    if abs(ratio - round(ratio)) < 1.0e-12:
        start_lv = int(round(ratio))
    effective = dt_val / 2.0**start_lv
    if abs(effective - start_val) / start_val > START_DT_RTOL:
        warnings.warn(
            f"dt_start={start_val:g} is not admissible; taking {effective:g} instead.",
            ConfigurationWarning,
            stacklevel=2,
        )
    return start_lv, effective


class StepLevelTracker:
    """Owns the step level ``lv`` and the per-level success counters."""

    def __init__(
        self,
        nominal_dt: float,
        *,
        start_level: int = 0,
        dt_min: float = 0.0,
        cb_interval: int = 10,
        level_up_delay: float = 0.0,
    ) -> None:
        if nominal_dt <= 0.0 or not math.isfinite(nominal_dt):
            raise ConfigurationError("nominal_dt must be positive and finite")
        if start_level < 0:
            raise ConfigurationError("start_level must be non-negative")
        if cb_interval < 1:
            raise ConfigurationError("cb_interval must be at least 1")
        self.nominal_dt = float(nominal_dt)
        self.start_level = int(start_level)
        self.dt_min = float(dt_min)
        self.cb_interval = int(cb_interval)
        self.level_up_delay = float(level_up_delay)
        self.level = self.start_level
        self._counters: Dict[int, int] = {lv: 0 for lv in range(self.start_level + 1)}
        if self.dt < self.dt_min:
            raise ConfigurationError(
                f"starting time step {self.dt:g} is below dt_min {self.dt_min:g}"
            )

    @property
    def dt(self) -> float:
        return self.nominal_dt / 2.0**self.level

    def counter(self, level: int | None = None) -> int:
        lv = self.level if level is None else int(level)
        return self._counters.get(lv, 0)

    def on_reject(self, time: float | None = None) -> float:
        """Halve the step; raise :class:`BelowMinimumStepError` below ``dt_min``.

        The tracker is left untouched when the halved step is inadmissible.
        """

        proposed = self.dt / 2.0
        if proposed < self.dt_min:
            raise BelowMinimumStepError(proposed, self.dt_min, time)
        self.level += 1
        self._counters[self.level] = 0
        self._clear_above(self.level)
        return self.dt

    def on_accept(self, time: float) -> int:
        """Count one accepted step and double the step as often as allowed.

        Returns the number of doublings performed.
        """

        self._counters[self.level] = self._counters.get(self.level, 0) + 1
        radix = 2 * self.cb_interval
        doublings = 0
        while (
            self.level > 0
            and self._counters[self.level] % radix == 0
            and (time >= self.level_up_delay or self.level > self.start_level)
        ):
            carry = self._counters[self.level] // 2
            self._counters[self.level] = 0
            self.level -= 1
            self._counters[self.level] = self._counters.get(self.level, 0) + carry
            doublings += 1
            logger.info("Doubling time step due to continuing convergence; now: %g", self.dt)
        self._clear_above(self.level)
        return doublings

    def _clear_above(self, level: int) -> None:
        for lv in [key for key in self._counters if key > level]:
            del self._counters[lv]

    def snapshot_state(self) -> dict[str, object]:
        """Return a serialisable snapshot for checkpoints."""

        return {"level": int(self.level), "counters": {int(k): int(v) for k, v in self._counters.items()}}

    def restore_state(self, state: dict[str, object] | None) -> None:
        """Restore level and counters from :meth:`snapshot_state` output."""

        if not state:
            return
        level = int(state.get("level", self.level))  # type: ignore[arg-type]
        if level < 0:
            raise ValueError("level must be non-negative")
        counters_raw = state.get("counters") or {}
        counters = {int(k): int(v) for k, v in dict(counters_raw).items()}  # type: ignore[arg-type]
        if any(v < 0 for v in counters.values()):
            raise ValueError("success counters must be non-negative")
        self.level = level
        self._counters = {lv: counters.get(lv, 0) for lv in range(level + 1)}


__all__ = ["StepLevelTracker", "resolve_start_level", "START_DT_RTOL"]
