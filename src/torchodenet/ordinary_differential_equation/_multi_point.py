"""Solutions at multiple requested times."""

from typing import List, Optional, Sequence, Union

import torch
from tensordict import TensorDict
from torch import Tensor

from torchodenet.ordinary_differential_equation._derivative_function import (
    as_derivative_function,
)
from torchodenet.ordinary_differential_equation._dormand_prince_5 import (
    dormand_prince_54,
)
from torchodenet.ordinary_differential_equation._exceptions import (
    InvalidConfiguration,
)
from torchodenet.ordinary_differential_equation._interpolation import (
    InterpolatingStepListener,
)
from torchodenet.ordinary_differential_equation._runge_kutta import (
    Dynamics,
    EmbeddedRungeKuttaIntegrator,
    _structured,
)
from torchodenet.ordinary_differential_equation._tensordict_utils import (
    flatten_state,
)


def _as_time_list(t: Union[Tensor, Sequence[float]]) -> List[float]:
    if isinstance(t, Tensor):
        if t.dim() != 1:
            raise ValueError(
                f"t must be a 1D tensor, got shape {tuple(t.shape)}"
            )
        times = t.detach().cpu().tolist()
    else:
        times = [float(v) for v in t]

    if len(times) < 2:
        raise ValueError(f"t must contain at least 2 times, got {len(times)}")

    diffs = [b - a for a, b in zip(times[:-1], times[1:])]
    if not (all(d > 0 for d in diffs) or all(d < 0 for d in diffs)):
        raise ValueError(
            f"t must be strictly ascending or strictly descending, got {times}"
        )
    return times


class MultiPointSampler:
    """
    Solve an ODE and return the state at every requested time.

    Parameters
    ----------
    integrator : EmbeddedRungeKuttaIntegrator, optional
        Single-interval integrator. Defaults to Dormand-Prince 5(4).
    dense_output : bool
        If True (default), integrate once over the whole span and
        interpolate the intermediate times from the accepted steps. If
        False, integrate separately between each pair of consecutive times,
        which costs more function evaluations but has no interpolation
        error.

    Raises
    ------
    InvalidConfiguration
        If dense output is requested for a tableau without midpoint weights
        or whose last stage is not the end-of-step derivative.
    """

    def __init__(
        self,
        integrator: Optional[EmbeddedRungeKuttaIntegrator] = None,
        dense_output: bool = True,
    ):
        self.integrator = (
            integrator if integrator is not None else dormand_prince_54()
        )
        self.dense_output = dense_output
        tableau = self.integrator.tableau
        if dense_output and (tableau.c_mid is None or not tableau.is_fsal):
            raise InvalidConfiguration(
                "Dense output requires a first-same-as-last tableau with "
                "midpoint weights (c_mid)"
            )

    def sample(
        self,
        f: Dynamics,
        t: Union[Tensor, Sequence[float]],
        y0: Union[Tensor, TensorDict],
    ) -> Union[Tensor, TensorDict]:
        """
        Parameters
        ----------
        f : DerivativeFunction, nn.Module or callable
            Dynamics.
        t : Tensor or sequence of float
            Monotonic requested times; ``t[0]`` is the time of ``y0``.
        y0 : Tensor or TensorDict
            Initial state.

        Returns
        -------
        Tensor or TensorDict
            States at the requested times stacked along a new leading
            dimension, shape ``(len(t), *y0.shape)``. The first entry is
            ``y0``.
        """
        times = _as_time_list(t)
        y_flat, unflatten = flatten_state(y0)
        function = _structured(as_derivative_function(f), y0)

        if len(times) == 2:
            y1 = self.integrator.integrate(function, (times[0], times[1]), y_flat)
            states = [y_flat.clone(), y1]
        elif self.dense_output:
            states = self._interpolated(function, times, y_flat)
        else:
            states = self._pairwise(function, times, y_flat)

        return unflatten(torch.stack(states))

    def _interpolated(self, function, times, y0) -> List[Tensor]:
        listener = InterpolatingStepListener(times, self.integrator.tableau.c_mid)
        self.integrator.integrate(
            function, (times[0], times[-1]), y0, listeners=[listener]
        )

        missing = [t for t, v in zip(times, listener.values) if v is None]
        if missing:
            raise RuntimeError(f"No interpolated state for times {missing}")
        return listener.values

    def _pairwise(self, function, times, y0) -> List[Tensor]:
        states = [y0.clone()]
        for t_prev, t_next in zip(times[:-1], times[1:]):
            states.append(
                self.integrator.integrate(function, (t_prev, t_next), states[-1])
            )
        return states
