"""Lightweight terminal progress reporting."""

from __future__ import annotations

import math
import sys
import time

ETA_EWMA_ALPHA = 0.1
ETA_MIN_SAMPLES = 3


class ProgressReporter:
    """Terminal progress bar driven by simulated time.

    The number of steps of an adaptive run is not known in advance, so the
    bar tracks the fraction of simulated time covered and estimates the
    remaining wall time from a moving average of wall seconds per unit of
    simulated time.
    """

    def __init__(
        self,
        start_time: float,
        end_time: float,
        *,
        refresh_seconds: float = 1.0,
        enabled: bool = False,
    ) -> None:
        self.start_time = float(start_time)
        self.end_time = float(end_time)
        span = self.end_time - self.start_time
        self.enabled = bool(enabled and span > 0.0)
        self.span = max(span, 0.0)
        self.refresh_seconds = max(float(refresh_seconds), 0.1)
        self.start = time.monotonic()
        self.last = self.start
        self._finished = False
        self._isatty = sys.stdout.isatty()
        self._last_percent_int: int = -1
        self._rate_ewma: float | None = None
        self._rate_samples: int = 0
        self._last_wall: float | None = None
        self._last_sim: float | None = None

    def fraction(self, sim_time: float) -> float:
        if self.span <= 0.0:
            return 1.0
        return min(max((sim_time - self.start_time) / self.span, 0.0), 1.0)

    def update(self, step_no: int, sim_time: float, dt: float, *, force: bool = False) -> None:
        """Render the bar when the percent changes by 0.1% or when forced."""

        if not self.enabled or self._finished:
            return
        now = time.monotonic()
        self._update_rate(sim_time, now)
        frac = self.fraction(sim_time)
        is_last = frac >= 1.0
        percent_tenth = int(frac * 1000)
        if not force and not is_last and percent_tenth == self._last_percent_int:
            return
        if not force and not is_last and now - self.last < self.refresh_seconds:
            return
        self._last_percent_int = percent_tenth
        self.last = now
        bar_width = 28
        filled = int(bar_width * frac)
        bar = "#" * filled + "-" * (bar_width - filled)
        eta_seconds = float("nan")
        if self._rate_ewma is not None and self._rate_samples >= ETA_MIN_SAMPLES:
            eta_seconds = self._rate_ewma * max(self.end_time - sim_time, 0.0)
        line = (
            f"[{bar}] {frac * 100:5.1f}% step {step_no} "
            f"t={sim_time:.6g} dt={dt:.3g} {_format_eta(eta_seconds)}"
        )
        if self._isatty:
            sys.stdout.write(f"\r\033[2K{line}")
            if is_last:
                sys.stdout.write("\n")
        else:
            sys.stdout.write(f"{line}\n")
        if is_last:
            self._finished = True
        sys.stdout.flush()

    def finish(self, step_no: int, sim_time: float, dt: float) -> None:
        """Force a final render to end the line cleanly."""

        if not self.enabled or self._finished:
            return
        self.update(step_no, sim_time, dt, force=True)
        if self._isatty and not self._finished:
            sys.stdout.write("\n")
            sys.stdout.flush()
        self._finished = True

    def _update_rate(self, sim_time: float, now: float) -> None:
        """Update the wall-seconds-per-simulated-time EWMA."""

        if self._last_wall is not None and self._last_sim is not None:
            advanced = sim_time - self._last_sim
            if advanced > 0.0:
                rate = (now - self._last_wall) / advanced
                if math.isfinite(rate) and rate >= 0.0:
                    if self._rate_ewma is None:
                        self._rate_ewma = rate
                    else:
                        self._rate_ewma = ETA_EWMA_ALPHA * rate + (1.0 - ETA_EWMA_ALPHA) * self._rate_ewma
                    self._rate_samples += 1
        self._last_wall = now
        self._last_sim = sim_time


def _format_eta(seconds: float) -> str:
    if not math.isfinite(seconds) or seconds < 0.0:
        return "ETA ?"
    if seconds >= 3600.0:
        return f"ETA {seconds/3600.0:.1f}h"
    if seconds >= 60.0:
        return f"ETA {seconds/60.0:.1f}m"
    return f"ETA {seconds:.0f}s"


__all__ = ["ProgressReporter"]
