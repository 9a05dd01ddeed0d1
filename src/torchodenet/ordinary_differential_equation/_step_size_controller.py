"""Adaptive step size control for embedded Runge-Kutta methods."""

import math
from typing import Callable, Optional

import torch
from torch import Tensor

from torchodenet.ordinary_differential_equation._solver_config import (
    SolverConfig,
    StepConfig,
)

_MIN_INITIAL_STEP = 1e-6


def _squared_norm(x: Tensor) -> float:
    # abs() for complex support
    return torch.sum(torch.abs(x) ** 2).item()


class StepSizeController:
    """
    Initial step estimate and step size update.

    Parameters
    ----------
    config : SolverConfig
        Tolerances and step bounds.
    step_config : StepConfig, optional
        Growth, reduction and safety factors and the method order.
    """

    def __init__(
        self,
        config: SolverConfig,
        step_config: Optional[StepConfig] = None,
    ):
        self.config = config
        self.step_config = step_config if step_config is not None else StepConfig()
        self._exponent = -1.0 / self.step_config.order

    def initial_step(
        self,
        evaluate: Callable[[Tensor, float], Tensor],
        t0: float,
        t1: float,
        y0: Tensor,
        f0: Tensor,
    ) -> float:
        """
        Estimate the first step from ``y0`` and ``f0 = f(y0, t0)``.

        Takes one trial Euler step and evaluates ``f`` once more to estimate
        the second derivative. The step is chosen so that
        ``h**order * max(||y'||, ||y''||) = 0.01`` in the scaled norm.

        Returns
        -------
        float
            Signed initial step, pointing from ``t0`` towards ``t1``.
        """
        direction = 1.0 if t1 >= t0 else -1.0
        scale = self.config.abs_tol + self.config.rel_tol * torch.abs(y0)

        y_on_scale2 = _squared_norm(y0 / scale)
        f_on_scale2 = _squared_norm(f0 / scale)
        if y_on_scale2 < 1e-10 or f_on_scale2 < 1e-10:
            h = _MIN_INITIAL_STEP
        else:
            h = 0.01 * math.sqrt(y_on_scale2 / f_on_scale2)
        if not math.isfinite(h):
            h = _MIN_INITIAL_STEP

        f1 = evaluate(y0 + (direction * h) * f0, t0 + direction * h)
        y_ddot_on_scale = math.sqrt(_squared_norm((f1 - f0) / scale)) / h

        max_inv = max(math.sqrt(f_on_scale2), y_ddot_on_scale)
        if max_inv < 1e-15 or not math.isfinite(max_inv):
            h1 = max(_MIN_INITIAL_STEP, 1e-3 * h)
        else:
            h1 = (0.01 / max_inv) ** (1.0 / self.step_config.order)

        h = min(100.0 * h, h1)
        # Avoid steps lost in the rounding of t0
        h = max(h, 1e-12 * abs(t0))
        h = self._bound_magnitude(h)
        return direction * h

    def next_step(self, h: float, error: float) -> float:
        """Scale the signed step ``h`` after a step with the given error ratio."""
        return math.copysign(self._bound_magnitude(abs(h) * self.factor(error)), h)

    def factor(self, error: float) -> float:
        sc = self.step_config
        if error == 0.0:
            return sc.max_growth
        if not math.isfinite(error):
            return sc.min_reduction
        factor = sc.safety * error**self._exponent
        return min(sc.max_growth, max(sc.min_reduction, factor))

    def _bound_magnitude(self, h: float) -> float:
        return min(self.config.max_step, max(self.config.min_step, h))
