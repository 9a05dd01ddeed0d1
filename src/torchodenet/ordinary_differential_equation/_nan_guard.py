"""Opt-in guard against non-finite values during integration."""

from typing import Tuple

import torch
from torch import Tensor

from torchodenet.ordinary_differential_equation._derivative_function import (
    DerivativeFunction,
)
from torchodenet.ordinary_differential_equation._exceptions import (
    DivergedIntegration,
)


class NanGuard(DerivativeFunction):
    """Raise :class:`DivergedIntegration` when ``y``, ``t`` or ``dy/dt`` is not finite."""

    def __init__(self, function: DerivativeFunction):
        self.function = function

    def evaluate(self, y: Tensor, t: Tensor) -> Tensor:
        if not torch.isfinite(t).all():
            raise DivergedIntegration(f"Non-finite time t={t.item()}")
        if not torch.isfinite(y).all():
            raise DivergedIntegration(f"Non-finite state at t={t.item():.6g}")
        dy = self.function.evaluate(y, t)
        if not torch.isfinite(dy).all():
            raise DivergedIntegration(
                f"Non-finite derivative at t={t.item():.6g}"
            )
        return dy

    def backward(self, upstream_gradient: Tensor) -> Tuple[Tensor, Tensor]:
        return self.function.backward(upstream_gradient)

    def parameter_count(self) -> int:
        return self.function.parameter_count()
