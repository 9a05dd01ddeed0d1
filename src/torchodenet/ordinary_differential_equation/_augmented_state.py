"""Augmented state of the adjoint method."""

import math
from typing import Sequence, Tuple

import torch
from torch import Tensor

from torchodenet.ordinary_differential_equation._exceptions import ShapeMismatch


class AugmentedState:
    """
    Flat buffer ``[z | a_z | a_theta | a_t]`` integrated backward in time.

    ``z`` is the state, ``a_z = dL/dz`` the state adjoint, ``a_theta`` the
    accumulated parameter gradient and ``a_t`` the time adjoint. The four
    attributes are views into disjoint ranges of :attr:`buffer`.

    Parameters
    ----------
    buffer : Tensor
        1D buffer of length ``2 * prod(state_shape) + n_parameters + n_times``.
    state_shape : sequence of int
        Shape of ``z`` and ``a_z``.
    n_parameters : int
        Length of ``a_theta``.
    n_times : int
        Length of ``a_t``.
    """

    def __init__(
        self,
        buffer: Tensor,
        state_shape: Sequence[int],
        n_parameters: int,
        n_times: int = 1,
    ):
        self.state_shape = torch.Size(state_shape)
        n_state = math.prod(self.state_shape)
        expected = self.length(self.state_shape, n_parameters, n_times)
        if buffer.dim() != 1 or buffer.numel() != expected:
            raise ShapeMismatch(
                f"Augmented state for state shape {tuple(self.state_shape)}, "
                f"{n_parameters} parameters and {n_times} times needs a 1D "
                f"buffer of length {expected}, got shape {tuple(buffer.shape)}"
            )

        self.buffer = buffer
        self.z = buffer.narrow(0, 0, n_state).view(self.state_shape)
        self.a_z = buffer.narrow(0, n_state, n_state).view(self.state_shape)
        self.a_theta = buffer.narrow(0, 2 * n_state, n_parameters)
        self.a_t = buffer.narrow(0, 2 * n_state + n_parameters, n_times)

    @staticmethod
    def length(state_shape: Sequence[int], n_parameters: int, n_times: int = 1) -> int:
        return 2 * math.prod(state_shape) + n_parameters + n_times

    @classmethod
    def pack(
        cls, z: Tensor, a_z: Tensor, a_theta: Tensor, a_t: Tensor
    ) -> "AugmentedState":
        """Copy the four parts into a new buffer with the dtype of ``z``."""
        if a_z.shape != z.shape:
            raise ShapeMismatch(
                f"a_z shape {tuple(a_z.shape)} does not match z shape "
                f"{tuple(z.shape)}"
            )
        buffer = torch.cat(
            [
                z.reshape(-1),
                a_z.reshape(-1).to(z.dtype),
                a_theta.reshape(-1).to(z.dtype),
                a_t.reshape(-1).to(z.dtype),
            ]
        )
        return cls(buffer, z.shape, a_theta.numel(), a_t.numel())

    def unpack(self) -> Tuple[Tensor, Tensor, Tensor, Tensor]:
        return self.z, self.a_z, self.a_theta, self.a_t
