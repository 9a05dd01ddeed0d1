"""Dense output for embedded Runge-Kutta steps.

This module provides:
- DenseOutputInterpolator: quartic polynomial fitted to one step
- InterpolatingStepListener: samples the solution at requested times while
  the integrator runs
"""

from typing import List, Optional, Sequence, Tuple

import torch
from torch import Tensor

from torchodenet.ordinary_differential_equation._butcher_tableau import (
    linear_combination,
)
from torchodenet.ordinary_differential_equation._step_listener import (
    StepListener,
    StepResult,
)

# Requested times this close to an integration endpoint take the endpoint state
_TIME_EPS = 1e-10


class DenseOutputInterpolator:
    """
    Fourth-order polynomial through one integration step.

    The polynomial ``p(x) = c0*x^4 + c1*x^3 + c2*x^2 + c3*x + c4`` with
    ``x = (t - t0) / (t1 - t0)`` matches the state at both ends and in the
    middle of the step and the derivative at both ends. The coefficients are
    closed-form combinations of these five values, so no linear solve is
    needed.

    The coefficients are overwritten by every call to :meth:`fit`.
    """

    def __init__(self):
        self.coefficients: Optional[Tuple[Tensor, ...]] = None

    def fit(
        self,
        y0: Tensor,
        y1: Tensor,
        y_mid: Tensor,
        f0: Tensor,
        f1: Tensor,
        dt: float,
    ) -> None:
        """
        Fit the polynomial.

        Parameters
        ----------
        y0, y1 : Tensor
            State at the start and end of the step.
        y_mid : Tensor
            State at the middle of the step.
        f0, f1 : Tensor
            Derivative at the start and end of the step.
        dt : float
            Signed step size ``t1 - t0``.
        """
        self.coefficients = (
            2 * dt * (f1 - f0) - 8 * (y0 + y1) + 16 * y_mid,
            dt * (5 * f0 - 3 * f1) + 18 * y0 + 14 * y1 - 32 * y_mid,
            dt * (f1 - 4 * f0) - 11 * y0 - 5 * y1 + 16 * y_mid,
            dt * f0,
            y0.clone(),
        )

    def fit_step(self, step: StepResult, c_mid: Sequence[float]) -> None:
        """Fit to an accepted step of a first-same-as-last method."""
        y_mid = step.y_start + step.h * linear_combination(c_mid, step.k)
        self.fit(step.y_start, step.y_end, y_mid, step.k[0], step.k[-1], step.h)

    def interpolate(self, t0: float, t1: float, t: float) -> Tensor:
        """
        Evaluate the polynomial at ``t``.

        ``t0`` and ``t1`` are the start and end of the fitted step in
        integration order, so ``t1 < t0`` for backward steps.

        Raises
        ------
        ValueError
            If ``t`` lies outside the step.
        """
        if self.coefficients is None:
            raise RuntimeError("interpolate() called before fit()")

        lo, hi = min(t0, t1), max(t0, t1)
        tol = 100 * torch.finfo(torch.float64).eps * max(abs(lo), abs(hi), 1.0)
        if t < lo - tol or t > hi + tol:
            raise ValueError(
                f"Query time {t} outside interpolation interval [{lo}, {hi}]"
            )

        x = (t - t0) / (t1 - t0)
        # Horner scheme
        y = self.coefficients[0]
        for coefficient in self.coefficients[1:]:
            y = y * x + coefficient
        return y


class InterpolatingStepListener(StepListener):
    """
    Collects the solution at requested times from a single integration.

    After each accepted step, every requested time inside the step is
    interpolated from a :class:`DenseOutputInterpolator` fitted to that step.
    Requested times equal to the start or end of the integration take the
    endpoint state directly. Costs no extra function evaluations.

    Parameters
    ----------
    times : sequence of float
        Requested times.
    c_mid : sequence of float
        Midpoint weights of the integrator's tableau.
    """

    def __init__(self, times: Sequence[float], c_mid: Sequence[float]):
        self.times = [float(t) for t in times]
        self.c_mid = tuple(c_mid)
        self.values: List[Optional[Tensor]] = [None] * len(self.times)
        self._interpolator = DenseOutputInterpolator()
        self._t_last = None
        self._y_last = None

    def begin(self, t_span, y0):
        self.values = [None] * len(self.times)
        self._t_last, self._y_last = t_span[0], y0
        self._fill_at(t_span[0], y0)

    def step(self, result):
        direction = 1.0 if result.h > 0 else -1.0
        pending = [
            i
            for i, t in enumerate(self.times)
            if self.values[i] is None
            and direction * (t - result.t_start) > 0
            and direction * (t - result.t_end) <= 0
        ]
        if pending:
            self._interpolator.fit_step(result, self.c_mid)
            for i in pending:
                self.values[i] = self._interpolator.interpolate(
                    result.t_start, result.t_end, self.times[i]
                )
        self._t_last, self._y_last = result.t_end, result.y_end

    def done(self):
        self._fill_at(self._t_last, self._y_last, overwrite=True)

    def _fill_at(self, t_end: float, y: Tensor, overwrite: bool = False):
        for i, t in enumerate(self.times):
            if abs(t - t_end) <= _TIME_EPS and (
                overwrite or self.values[i] is None
            ):
                self.values[i] = y.clone()
