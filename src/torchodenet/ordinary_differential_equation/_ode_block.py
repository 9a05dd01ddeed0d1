"""Neural ODE layer."""

from enum import Enum
from typing import Optional, Sequence, Union

import torch
from torch import Tensor, nn

from torchodenet.ordinary_differential_equation._derivative_function import (
    CallableDerivative,
    ModuleDerivative,
)
from torchodenet.ordinary_differential_equation._dormand_prince_5 import (
    dormand_prince_54,
)
from torchodenet.ordinary_differential_equation._ivp_adjoint import (
    odeint_adjoint,
)
from torchodenet.ordinary_differential_equation._multi_point import (
    MultiPointSampler,
    _as_time_list,
)
from torchodenet.ordinary_differential_equation._solver_config import (
    SolverConfig,
)


class StepMode(Enum):
    """How an :class:`ODEBlock` obtains its integration times."""

    # Fixed (t0, t1); forward returns the state at t1
    SINGLE_STEP = "single_step"
    # Fixed times; forward returns the state at every time
    FIXED_MULTI_STEP = "fixed_multi_step"
    # Times passed to forward; forward returns the state at every time
    INPUT_DRIVEN_STEP = "input_driven_step"


class ODEBlock(nn.Module):
    """
    Layer mapping an input state through ``dy/dt = func(t, y)``.

    Parameters
    ----------
    func : nn.Module
        Dynamics with ``forward(t, y)``.
    t : Tensor or sequence of float, optional
        Integration times. Two times select :attr:`StepMode.SINGLE_STEP`,
        more select :attr:`StepMode.FIXED_MULTI_STEP`. If omitted, times
        must be passed to :meth:`forward` (:attr:`StepMode.INPUT_DRIVEN_STEP`).
    config : SolverConfig, optional
        Tolerances and step bounds.
    dense_output : bool
        Interpolate intermediate times instead of integrating each interval.
    adjoint : bool
        Compute gradients with the adjoint method. If False, gradients are
        backpropagated through the solver's operations.

    Examples
    --------
    >>> block = ODEBlock(nn.Linear(2, 2), t=[0.0, 1.0])  # doctest: +SKIP
    >>> y1 = block(torch.randn(8, 2))  # doctest: +SKIP
    """

    def __init__(
        self,
        func: nn.Module,
        t: Optional[Union[Tensor, Sequence[float]]] = None,
        config: Optional[SolverConfig] = None,
        dense_output: bool = True,
        adjoint: bool = True,
    ):
        super().__init__()
        self.func = func
        self.config = config if config is not None else SolverConfig()
        self.dense_output = dense_output
        self.adjoint = adjoint

        if t is None:
            self.mode = StepMode.INPUT_DRIVEN_STEP
            self.t = None
        else:
            times = _as_time_list(t)
            self.mode = (
                StepMode.SINGLE_STEP if len(times) == 2 else StepMode.FIXED_MULTI_STEP
            )
            self.register_buffer("t", torch.tensor(times, dtype=torch.float64))

    def forward(self, y0: Tensor, t: Optional[Tensor] = None) -> Tensor:
        if self.mode == StepMode.SINGLE_STEP:
            return self._trajectory(y0, self.t)[-1]
        elif self.mode == StepMode.FIXED_MULTI_STEP:
            return self._trajectory(y0, self.t)
        elif self.mode == StepMode.INPUT_DRIVEN_STEP:
            if t is None:
                raise ValueError("ODEBlock constructed without times requires t")
            return self._trajectory(y0, t)
        raise ValueError(f"Unknown step mode {self.mode}")

    def _trajectory(self, y0: Tensor, t: Tensor) -> Tensor:
        if not isinstance(t, Tensor):
            t = torch.tensor(_as_time_list(t), dtype=y0.dtype, device=y0.device)
        integrator = dormand_prince_54(self.config)
        if self.adjoint:
            return odeint_adjoint(
                ModuleDerivative(self.func),
                y0,
                t,
                integrator=integrator,
                dense_output=self.dense_output,
            )
        sampler = MultiPointSampler(integrator, dense_output=self.dense_output)
        return sampler.sample(CallableDerivative(self.func), t, y0)

    def extra_repr(self) -> str:
        return f"mode={self.mode.value}, adjoint={self.adjoint}"
