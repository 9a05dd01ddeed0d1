"""Listeners notified about accepted integration steps."""

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from torch import Tensor


@dataclass
class StepResult:
    """
    An accepted step of an embedded Runge-Kutta integrator.

    Attributes
    ----------
    t_start, t_end : float
        Time at the start and end of the step, in integration order.
    y_start, y_end : Tensor
        State at ``t_start`` and ``t_end``.
    k : Tensor
        Stage derivatives, shape ``(n_stages, *state_shape)``.
    h : float
        Signed step size, ``t_end - t_start``.
    error : float
        Error ratio of the step, always below 1.
    """

    t_start: float
    t_end: float
    y_start: Tensor
    y_end: Tensor
    k: Tensor
    h: float
    error: float


class StepListener:
    """Base class for step listeners. All hooks default to no-ops."""

    def begin(self, t_span: Tuple[float, float], y0: Tensor) -> None:
        pass

    def step(self, result: StepResult) -> None:
        pass

    def done(self) -> None:
        pass


class StepCounter(StepListener):
    """
    Count accepted steps.

    Parameters
    ----------
    on_done : callable, optional
        Called with the step count of each finished integration.
    """

    def __init__(self, on_done: Optional[Callable[[int], None]] = None):
        self.on_done = on_done
        self.n_steps = 0
        self.total_steps = 0
        self.n_integrations = 0

    def begin(self, t_span, y0):
        self.n_steps = 0

    def step(self, result):
        self.n_steps += 1
        self.total_steps += 1

    def done(self):
        self.n_integrations += 1
        if self.on_done is not None:
            self.on_done(self.n_steps)

    @property
    def mean_steps(self) -> float:
        if self.n_integrations == 0:
            return 0.0
        return self.total_steps / self.n_integrations
