"""Dormand-Prince 5(4) adaptive ODE solver."""

from typing import Optional, Tuple, Union

import torch
from tensordict import TensorDict
from torch import Tensor

from torchodenet.ordinary_differential_equation._butcher_tableau import (
    ButcherTableau,
    linear_combination,
)
from torchodenet.ordinary_differential_equation._runge_kutta import (
    Dynamics,
    EmbeddedRungeKuttaIntegrator,
    ErrorEstimator,
)
from torchodenet.ordinary_differential_equation._solver_config import (
    SolverConfig,
    StepConfig,
)

# Dormand-Prince 5(4) Butcher tableau coefficients
# fmt: off
DORMAND_PRINCE_54 = ButcherTableau(
    a=(
        (1/5,),
        (3/40, 9/40),
        (44/45, -56/15, 32/9),
        (19372/6561, -25360/2187, 64448/6561, -212/729),
        (9017/3168, -355/33, 46732/5247, 49/176, -5103/18656),
        (35/384, 0.0, 500/1113, 125/192, -2187/6784, 11/84),
    ),
    b=(35/384, 0.0, 500/1113, 125/192, -2187/6784, 11/84, 0.0),
    b_star=(
        71/57600, 0.0, -71/16695, 71/1920, -17253/339200, 22/525, -1/40,
    ),
    c=(1/5, 3/10, 4/5, 8/9, 1.0, 1.0),
    # Shampine's midpoint weights, halved so that y_mid = y0 + h * c_mid . k
    c_mid=(
        6025192743/30085553152/2, 0.0, 51252292925/65400821598/2,
        -2691868925/45128329728/2, 187940372067/1594534317056/2,
        -1776094331/19743644256/2, 11237099/235043384/2,
    ),
)
# fmt: on

_ORDER = 5


class DormandPrince54ErrorEstimator(ErrorEstimator):
    """
    Root-mean-square error ratio of a Dormand-Prince step.

    ``err = b_star . k`` is scaled component-wise by
    ``max(|y0|, |y1|) * rel_tol + abs_tol`` and by the step magnitude; the
    ratio is the RMS over all components.
    """

    def __init__(
        self,
        config: SolverConfig,
        error_weights: Tuple[float, ...] = DORMAND_PRINCE_54.b_star,
    ):
        self.config = config
        self.error_weights = error_weights

    def estimate(self, k: Tensor, y0: Tensor, y1: Tensor, h: float) -> float:
        err_sum = linear_combination(self.error_weights, k)
        tol = (
            torch.maximum(torch.abs(y0), torch.abs(y1)) * self.config.rel_tol
            + self.config.abs_tol
        )
        ratio = err_sum / tol * abs(h)
        # abs() for complex support
        return torch.sqrt(torch.mean(torch.abs(ratio) ** 2)).item()


def dormand_prince_54(
    config: Optional[SolverConfig] = None,
    step_config: Optional[StepConfig] = None,
    nan_guard: bool = False,
    max_steps: Optional[int] = None,
) -> EmbeddedRungeKuttaIntegrator:
    """
    Create a Dormand-Prince 5(4) integrator.

    Parameters
    ----------
    config : SolverConfig, optional
        Tolerances and step bounds.
    step_config : StepConfig, optional
        Step size control factors. Must have ``order=5``.
    nan_guard : bool
        Raise :class:`DivergedIntegration` on non-finite values.
    max_steps : int, optional
        Maximum number of accepted steps per integration.

    Returns
    -------
    EmbeddedRungeKuttaIntegrator
    """
    config = config if config is not None else SolverConfig()
    step_config = step_config if step_config is not None else StepConfig(order=_ORDER)
    return EmbeddedRungeKuttaIntegrator(
        DORMAND_PRINCE_54,
        DormandPrince54ErrorEstimator(config),
        config=config,
        step_config=step_config,
        nan_guard=nan_guard,
        max_steps=max_steps,
    )


def integrate(
    f: Dynamics,
    t_span: Tuple[Union[float, Tensor], Union[float, Tensor]],
    y0: Union[Tensor, TensorDict],
    config: Optional[SolverConfig] = None,
    nan_guard: bool = False,
    max_steps: Optional[int] = None,
) -> Union[Tensor, TensorDict]:
    """
    Solve ``dy/dt = f(y, t)`` on ``t_span`` with Dormand-Prince 5(4).

    Parameters
    ----------
    f : DerivativeFunction, nn.Module or callable
        Dynamics. Modules and callables use the signature ``f(t, y)``.
    t_span : tuple
        Integration interval ``(t0, t1)``. Supports backward integration if
        ``t1 < t0``.
    y0 : Tensor or TensorDict
        Initial state.
    config : SolverConfig, optional
        Tolerances and step bounds.
    nan_guard : bool
        Raise :class:`DivergedIntegration` on non-finite values.
    max_steps : int, optional
        Maximum number of accepted steps.

    Returns
    -------
    Tensor or TensorDict
        State at ``t1``.

    Examples
    --------
    >>> y1 = integrate(lambda t, y: -y, (0.0, 1.0), torch.tensor([1.0]))
    """
    solver = dormand_prince_54(config, nan_guard=nan_guard, max_steps=max_steps)
    return solver.integrate(f, t_span, y0)
