"""Runtime helpers used by the step orchestrator."""

from .progress import ProgressReporter

__all__ = ["ProgressReporter"]
