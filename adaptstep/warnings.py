"""Structured warning classes for the :mod:`adaptstep` package."""
from __future__ import annotations


class AdaptStepWarning(UserWarning):
    """Base warning class for adaptstep."""


class NumericalWarning(AdaptStepWarning):
    """Numerical parameter adjusted or accuracy warnings."""


class ConfigurationWarning(AdaptStepWarning):
    """Configuration value replaced by an admissible one."""


__all__ = [
    "AdaptStepWarning",
    "NumericalWarning",
    "ConfigurationWarning",
]
