"""Generic adaptive embedded Runge-Kutta integrator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

import torch
from tensordict import TensorDict
from torch import Tensor, nn

from torchodenet.ordinary_differential_equation._butcher_tableau import (
    ButcherTableau,
    linear_combination,
)
from torchodenet.ordinary_differential_equation._derivative_function import (
    DerivativeFunction,
    as_derivative_function,
)
from torchodenet.ordinary_differential_equation._exceptions import (
    MaxStepsExceeded,
    ShapeMismatch,
    StepSizeUnderflow,
)
from torchodenet.ordinary_differential_equation._nan_guard import NanGuard
from torchodenet.ordinary_differential_equation._solver_config import (
    SolverConfig,
    StepConfig,
)
from torchodenet.ordinary_differential_equation._step_listener import (
    StepListener,
    StepResult,
)
from torchodenet.ordinary_differential_equation._step_size_controller import (
    StepSizeController,
)
from torchodenet.ordinary_differential_equation._tensordict_utils import (
    StateLayout,
    flatten_state,
)

Dynamics = Union[DerivativeFunction, nn.Module, Callable[[Tensor, Tensor], Tensor]]


class ErrorEstimator(ABC):
    """Computes the error ratio of a trial step. Ratios >= 1 are rejected."""

    @abstractmethod
    def estimate(self, k: Tensor, y0: Tensor, y1: Tensor, h: float) -> float:
        """
        Parameters
        ----------
        k : Tensor
            Stage derivatives, shape ``(n_stages, *state_shape)``.
        y0 : Tensor
            State at the start of the step.
        y1 : Tensor
            Candidate state at the end of the step.
        h : float
            Signed step size.
        """


@dataclass
class IntegrationStats:
    """Counters of the last integration."""

    n_steps: int = 0
    n_rejected: int = 0
    n_function_evals: int = 0
    last_step: Optional[float] = None


def _real_dtype(dtype: torch.dtype) -> torch.dtype:
    if dtype.is_complex:
        return torch.float64 if dtype == torch.complex128 else torch.float32
    return dtype


class EmbeddedRungeKuttaIntegrator:
    """
    Adaptive integrator driven by an embedded Butcher tableau.

    Parameters
    ----------
    tableau : ButcherTableau
        Coefficients of the method.
    error_estimator : ErrorEstimator
        Turns the stage derivatives of a trial step into an error ratio.
    config : SolverConfig, optional
        Tolerances and step bounds. Defaults to ``SolverConfig()``.
    step_config : StepConfig, optional
        Step size control factors and method order.
    nan_guard : bool
        If True, raise :class:`DivergedIntegration` as soon as a state, time
        or derivative is not finite. Off by default; non-finite values then
        propagate into the error estimate and shrink the step until
        :class:`StepSizeUnderflow`.
    max_steps : int, optional
        Maximum number of accepted steps per call.

    Notes
    -----
    The integrator keeps no state between calls other than its registered
    listeners and the statistics of the last call. Listeners receive every
    accepted step together with its stage derivatives. Because of these two,
    an instance is not thread-safe: use one integrator per thread. Listeners
    passed to :meth:`integrate` apply to that call only.
    """

    def __init__(
        self,
        tableau: ButcherTableau,
        error_estimator: ErrorEstimator,
        config: Optional[SolverConfig] = None,
        step_config: Optional[StepConfig] = None,
        nan_guard: bool = False,
        max_steps: Optional[int] = None,
    ):
        self.tableau = tableau
        self.error_estimator = error_estimator
        self.config = config if config is not None else SolverConfig()
        self.controller = StepSizeController(self.config, step_config)
        self.nan_guard = nan_guard
        self.max_steps = max_steps
        self.stats = IntegrationStats()
        self._listeners: List[StepListener] = []

    @property
    def order(self) -> int:
        return self.controller.step_config.order

    def add_listener(self, *listeners: StepListener) -> None:
        self._listeners.extend(listeners)

    def clear_listeners(self, *listeners: StepListener) -> None:
        """Remove the given listeners, or all listeners if none are given."""
        if not listeners:
            self._listeners.clear()
            return
        self._listeners = [
            listener
            for listener in self._listeners
            if not any(listener is other for other in listeners)
        ]

    def integrate(
        self,
        f: Dynamics,
        t_span: Tuple[Union[float, Tensor], Union[float, Tensor]],
        y0: Union[Tensor, TensorDict],
        listeners: Sequence[StepListener] = (),
    ) -> Union[Tensor, TensorDict]:
        """
        Integrate ``dy/dt = f(y, t)`` from ``t_span[0]`` to ``t_span[1]``.

        Parameters
        ----------
        f : DerivativeFunction, nn.Module or callable
            Dynamics. Modules and callables are called as ``f(t, y)``.
        t_span : tuple
            ``(t0, t1)``. Integrates backward in time if ``t1 < t0``.
        y0 : Tensor or TensorDict
            Initial state. Not modified.
        listeners : sequence of StepListener, optional
            Notified during this call only, after the registered listeners.

        Returns
        -------
        Tensor or TensorDict
            State at ``t1``, same shape/structure as ``y0``.

        Raises
        ------
        ShapeMismatch
            If ``f`` does not preserve the shape of ``y0``.
        StepSizeUnderflow
            If a step is rejected at ``config.min_step``.
        MaxStepsExceeded
            If more than ``max_steps`` steps are needed.
        DivergedIntegration
            If ``nan_guard`` is set and a non-finite value is encountered.
        """
        t0, t1 = float(t_span[0]), float(t_span[1])

        y_flat, unflatten = flatten_state(y0)
        function = _structured(as_derivative_function(f), y0)
        if self.nan_guard:
            function = NanGuard(function)

        self.stats = IntegrationStats()
        listeners = [*self._listeners, *listeners]
        for listener in listeners:
            listener.begin((t0, t1), y_flat)

        if t0 == t1:
            y = y_flat.clone()
        else:
            y = self._solve(function, t0, t1, y_flat, listeners)

        for listener in listeners:
            listener.done()

        return unflatten(y)

    def _solve(
        self,
        function: DerivativeFunction,
        t0: float,
        t1: float,
        y0: Tensor,
        listeners: List[StepListener],
    ) -> Tensor:
        stats = self.stats
        time_dtype = _real_dtype(y0.dtype)
        device = y0.device

        def evaluate(y: Tensor, t: float) -> Tensor:
            stats.n_function_evals += 1
            return function.evaluate(
                y, torch.tensor(t, dtype=time_dtype, device=device)
            )

        tableau = self.tableau
        direction = 1.0 if t1 > t0 else -1.0

        y = y0.clone()
        k_first = evaluate(y, t0)
        if k_first.shape != y.shape:
            raise ShapeMismatch(
                f"Derivative shape {tuple(k_first.shape)} does not match "
                f"state shape {tuple(y.shape)}"
            )

        h = self.controller.initial_step(evaluate, t0, t1, y, k_first)
        t = t0

        while True:
            if self.max_steps is not None and stats.n_steps >= self.max_steps:
                raise MaxStepsExceeded(
                    f"Exceeded maximum number of steps ({self.max_steps})"
                )

            # Clip the step to land exactly on t1
            last_step = direction * (t + h - t1) >= 0
            if last_step:
                h = t1 - t

            k = [k_first]
            for i in range(1, tableau.n_stages):
                y_i = y + h * linear_combination(tableau.a[i - 1], k)
                k.append(evaluate(y_i, t + tableau.c[i - 1] * h))
            k_stack = torch.stack(k)

            y_new = y + h * linear_combination(tableau.b, k)
            error = self.error_estimator.estimate(k_stack, y, y_new, h)

            if error < 1.0:
                t_new = t1 if last_step else t + h
                result = StepResult(
                    t_start=t,
                    t_end=t_new,
                    y_start=y,
                    y_end=y_new,
                    k=k_stack,
                    h=h,
                    error=error,
                )
                for listener in listeners:
                    listener.step(result)

                t = t_new
                y = y_new
                stats.n_steps += 1
                stats.last_step = h
                if last_step:
                    return y
                k_first = k[-1] if tableau.is_fsal else evaluate(y, t)
            else:
                stats.n_rejected += 1
                if abs(h) <= self.config.min_step:
                    raise StepSizeUnderflow(
                        f"Step rejected at minimum step size {abs(h):.3e} "
                        f"(t={t:.6g}, error ratio={error:.3e})"
                    )

            h = self.controller.next_step(h, error)


class _StructuredDerivative(DerivativeFunction):
    """Evaluates a TensorDict dynamics on flattened states."""

    def __init__(self, function: DerivativeFunction, template: TensorDict):
        self.function = function
        self.layout = StateLayout(template)

    def evaluate(self, y: Tensor, t: Tensor) -> Tensor:
        dy = self.function.evaluate(self.layout.unflatten(y), t)
        return self.layout.flatten(dy)


def _structured(
    function: DerivativeFunction, y0: Union[Tensor, TensorDict]
) -> DerivativeFunction:
    if isinstance(y0, TensorDict):
        return _StructuredDerivative(function, y0)
    return function
