"""Tolerances and step bounds for adaptive solvers."""

import math
from dataclasses import dataclass

from torchodenet.ordinary_differential_equation._exceptions import (
    InvalidConfiguration,
)


def _require_positive(name: str, value: float) -> None:
    if not (value > 0 and math.isfinite(value)):
        raise InvalidConfiguration(
            f"{name} must be positive and finite, got {value}"
        )


@dataclass(frozen=True)
class SolverConfig:
    """
    Tolerances and step size bounds of an adaptive solver.

    Attributes
    ----------
    abs_tol : float
        Absolute tolerance of the local error.
    rel_tol : float
        Relative tolerance of the local error.
    min_step : float
        Smallest step magnitude. A step rejected at this size is fatal.
    max_step : float
        Largest step magnitude.
    """

    abs_tol: float = 1e-3
    rel_tol: float = 1e-3
    min_step: float = 1e-10
    max_step: float = 100.0

    def __post_init__(self):
        _require_positive("abs_tol", self.abs_tol)
        _require_positive("rel_tol", self.rel_tol)
        _require_positive("min_step", self.min_step)
        if not self.min_step < self.max_step:
            raise InvalidConfiguration(
                f"min_step must be smaller than max_step. Swapped arguments? "
                f"min_step={self.min_step}, max_step={self.max_step}"
            )


@dataclass(frozen=True)
class StepConfig:
    """
    Step size control factors.

    The step is scaled by ``safety * error ** (-1 / order)``, bounded to
    ``[min_reduction, max_growth]``.
    """

    order: int = 5
    max_growth: float = 10.0
    min_reduction: float = 0.2
    safety: float = 0.9

    def __post_init__(self):
        if self.order < 1:
            raise InvalidConfiguration(
                f"order must be at least 1, got {self.order}"
            )
        _require_positive("max_growth", self.max_growth)
        _require_positive("min_reduction", self.min_reduction)
        _require_positive("safety", self.safety)
        if self.min_reduction > self.max_growth:
            raise InvalidConfiguration(
                f"min_reduction ({self.min_reduction}) exceeds "
                f"max_growth ({self.max_growth})"
            )
