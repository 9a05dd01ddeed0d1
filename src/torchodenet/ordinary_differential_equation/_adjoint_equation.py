"""Augmented dynamics of the adjoint method."""

from typing import Sequence

import torch
from torch import Tensor

from torchodenet.ordinary_differential_equation._augmented_state import (
    AugmentedState,
)
from torchodenet.ordinary_differential_equation._derivative_function import (
    DerivativeFunction,
)
from torchodenet.ordinary_differential_equation._exceptions import ShapeMismatch


class AdjointEquation(DerivativeFunction):
    """
    Augmented dynamics for backpropagation through an ODE.

    See https://arxiv.org/abs/1806.07366. For an augmented state
    ``[z | a_z | a_theta | a_t]`` the derivative is::

        dz/dt       = f(z, t, theta)
        da_z/dt     = -a_z . df/dz
        da_theta/dt = -a_z . df/dtheta
        da_t/dt     = 0

    The last three come from a single reverse-mode pass of ``function`` with
    upstream gradient ``-a_z``, run right after the forward evaluation at the
    same ``(z, t)``.

    Parameters
    ----------
    function : DerivativeFunction
        Forward dynamics supporting :meth:`DerivativeFunction.backward`.
    state_shape : sequence of int
        Shape of ``z``.
    """

    def __init__(self, function: DerivativeFunction, state_shape: Sequence[int]):
        self.function = function
        self.state_shape = torch.Size(state_shape)
        self.n_parameters = function.parameter_count()

    def evaluate(self, y: Tensor, t: Tensor) -> Tensor:
        state = AugmentedState(y, self.state_shape, self.n_parameters)

        # evaluate/backward must stay paired: no other evaluation in between
        dz = self.function.evaluate(state.z, t)
        input_gradient, parameter_gradient = self.function.backward(-state.a_z)

        if parameter_gradient.numel() != self.n_parameters:
            raise ShapeMismatch(
                f"Parameter gradient has {parameter_gradient.numel()} "
                f"elements, expected parameter_count()={self.n_parameters}"
            )

        return AugmentedState.pack(
            dz, input_gradient, parameter_gradient, torch.zeros_like(state.a_t)
        ).buffer

    def parameter_count(self) -> int:
        return 0
