"""Adaptive time-step and mesh-adaptivity control for implicit integrators."""
from .errors import AdaptStepError
from .history import HistoryBuffer
from .levels import StepLevelTracker, resolve_start_level
from .orchestrator import RunResult, SimulationClock, StepOrchestrator, StepOutcome
from .spatial import AdaptivityIndicators, SpatialAdaptivityController

__all__ = [
    "AdaptStepError",
    "HistoryBuffer",
    "StepLevelTracker",
    "resolve_start_level",
    "RunResult",
    "SimulationClock",
    "StepOrchestrator",
    "StepOutcome",
    "AdaptivityIndicators",
    "SpatialAdaptivityController",
]
