"""Coupling of time-step control with residual based mesh adaptivity.

When the error estimator flags elements after a converged solve, either the
step or the mesh is at fault.  :class:`AdaptivityIndicators` keeps two
relative scores that decide which one gets adjusted, and
:class:`SpatialAdaptivityController` applies refinement and hysteresis
guarded coarsening through the external estimator.
"""
from __future__ import annotations

import enum
import logging
import warnings
from dataclasses import dataclass

from .errors import ElementCeilingExceededError
from .interfaces import ErrorEstimator
from .warnings import NumericalWarning

logger = logging.getLogger(__name__)


class RetryKind(str, enum.Enum):
    TEMPORAL = "temporal"
    SPATIAL = "spatial"


@dataclass
class AdaptivityIndicators:
    """Relative refinement pressure in time and in space.

    Both scores start at zero and are initialised on the first completed
    step, so that the first rejection after start-up always refines in time.
    """

    time_score: float = 0.0
    space_score: float = 0.0
    time_score_init: float = 1.0
    space_score_init: float = 4.0

    @property
    def initialised(self) -> bool:
        return self.time_score != 0.0

    def initialise(self) -> None:
        if not self.initialised:
            self.time_score = float(self.time_score_init)
            self.space_score = float(self.space_score_init)

    def prefer_time(self, error_valid: bool = True) -> bool:
        return self.time_score > self.space_score or not error_valid

    def on_temporal_retry(self) -> None:
        self.time_score /= 2.0

    def on_doubling(self, count: int = 1) -> None:
        self.time_score *= 2.0**count

    def rescale_space(self, count_before: int, count_after: int) -> None:
        if count_after > 0 and count_before != count_after:
            self.space_score *= count_before / count_after


class SpatialAdaptivityController:
    """Refine/coarsen decisions on top of an :class:`ErrorEstimator`."""

    def __init__(
        self,
        estimator: ErrorEstimator,
        indicators: AdaptivityIndicators,
        *,
        tolerance: float,
        max_elements: int,
        coarsen_fraction: float = 0.2,
        hysteresis_factor: float = 0.8,
        tolerance_reduction: float = 0.1,
        max_tolerance_reductions: int = 20,
    ) -> None:
        self.estimator = estimator
        self.indicators = indicators
        self.tolerance = float(tolerance)
        self.max_elements = int(max_elements)
        self.coarsen_fraction = float(coarsen_fraction)
        self.hysteresis_factor = float(hysteresis_factor)
        self.tolerance_reduction = float(tolerance_reduction)
        self.max_tolerance_reductions = int(max_tolerance_reductions)
        self.previous_marked_count = -1
        self.refinements = 0
        self.coarsenings = 0

    def begin_time_instant(self) -> None:
        self.previous_marked_count = -1

    def mark_for_refinement(self) -> int:
        """Mark at the nominal tolerance; return the number of marked elements."""

        return int(self.estimator.mark_for_refinement(self.tolerance))

    def choose_retry(self) -> RetryKind:
        valid = bool(self.estimator.is_error_valid())
        logger.info(
            "refinement score (time/space): %g / %g",
            self.indicators.time_score,
            self.indicators.space_score,
        )
        if self.indicators.prefer_time(valid):
            return RetryKind.TEMPORAL
        return RetryKind.SPATIAL

    def discard_for_temporal_retry(self) -> None:
        """Drop marks and cached error before a temporal retry."""

        self.estimator.clear_marks()
        self.estimator.invalidate_error()
        self.indicators.on_temporal_retry()

    def refine(self, time: float | None = None, *, marked: int | None = None) -> bool:
        """Refine the marked elements.

        ``marked`` is the count from a preceding :meth:`mark_for_refinement`;
        ``None`` means nothing has been marked yet.  The tolerance is
        tightened until at least one element is marked.  Returns ``False``
        when no element could be marked at all.
        """

        count_before = int(self.estimator.num_elements())
        # the ceiling applies to the mesh about to be refined; a mesh at the
        # ceiling may still be refined once
        if count_before > self.max_elements:
            self.estimator.clear_marks()
            raise ElementCeilingExceededError(count_before, self.max_elements, time)
        if marked is None:
            marked = self.mark_for_refinement()
        factor = 1.0
        rounds = 0
        while marked == 0 and rounds < self.max_tolerance_reductions:
            factor *= self.tolerance_reduction
            rounds += 1
            marked = int(self.estimator.mark_for_refinement(self.tolerance * factor))
        if marked == 0:
            self.estimator.clear_marks()
            return False
        if factor < 1.0:
            warnings.warn(
                "Adaptive refinement tolerance has temporarily been reduced to "
                f"{self.tolerance * factor:g} in order to mark elements for refinement.",
                NumericalWarning,
                stacklevel=2,
            )
        self.estimator.refine()
        self.estimator.clear_marks()
        count_after = int(self.estimator.num_elements())
        self.indicators.rescale_space(count_before, count_after)
        self.estimator.invalidate_error()
        self.refinements += 1
        logger.info("Refined mesh: %d -> %d elements", count_before, count_after)
        return True

    def should_coarsen(self, candidates: int, num_elements: int) -> bool:
        """Hysteresis test for a coarsening candidate set."""

        if candidates <= 0:
            return False
        if candidates < num_elements * self.coarsen_fraction:
            return False
        previous = self.previous_marked_count
        return previous < 0 or candidates < self.hysteresis_factor * previous

    def try_coarsen(self) -> bool:
        """Coarsen when the hysteresis allows; return ``True`` if the mesh changed."""

        candidates = int(self.estimator.mark_for_coarsening())
        count_before = int(self.estimator.num_elements())
        if self.should_coarsen(candidates, count_before):
            self.estimator.coarsen()
            self.previous_marked_count = candidates
        count_after = int(self.estimator.num_elements())
        self.estimator.clear_marks()
        if count_after == count_before:
            return False
        self.indicators.rescale_space(count_before, count_after)
        self.estimator.invalidate_error()
        self.coarsenings += 1
        logger.info("Coarsened mesh: %d -> %d elements", count_before, count_after)
        return True

    def on_step_completed(self) -> None:
        self.indicators.initialise()
        self.previous_marked_count = -1


__all__ = ["AdaptivityIndicators", "RetryKind", "SpatialAdaptivityController"]
