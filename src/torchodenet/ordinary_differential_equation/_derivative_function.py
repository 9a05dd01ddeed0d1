"""Derivative functions consumed by the integrators."""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Optional, Tuple, Union

import torch
from torch import Tensor, nn


class DerivativeFunction(ABC):
    """
    Right-hand side ``dy/dt = f(y, t)`` of a first-order ODE.

    Implementations supporting the adjoint method also provide a reverse-mode
    operation. ``backward`` is only valid directly after the ``evaluate``
    call it belongs to, so instances are stateful and must not be shared
    between concurrent integrations.
    """

    @abstractmethod
    def evaluate(self, y: Tensor, t: Tensor) -> Tensor:
        """Return ``dy/dt`` at state ``y`` and scalar time ``t``."""

    def backward(self, upstream_gradient: Tensor) -> Tuple[Tensor, Tensor]:
        """
        Vector-Jacobian products of the last ``evaluate`` call.

        Parameters
        ----------
        upstream_gradient : Tensor
            Cotangent with the shape of the last returned derivative.

        Returns
        -------
        input_gradient : Tensor
            ``upstream_gradient . df/dy``, shaped like ``y``.
        parameter_gradient : Tensor
            ``upstream_gradient . df/dtheta`` flattened to
            ``(parameter_count(),)``.
        """
        raise NotImplementedError(
            f"{type(self).__name__} does not support reverse-mode evaluation"
        )

    def parameter_count(self) -> int:
        return 0


class CallableDerivative(DerivativeFunction):
    """Forward-only adapter for a plain callable ``f(t, y)``."""

    def __init__(self, fn: Callable[[Tensor, Tensor], Tensor]):
        self.fn = fn

    def evaluate(self, y: Tensor, t: Tensor) -> Tensor:
        return self.fn(t, y)


class AutogradDerivative(DerivativeFunction):
    """
    Derivative function differentiated with ``torch.autograd``.

    Parameters
    ----------
    fn : callable
        Dynamics with signature ``fn(t, y) -> dy/dt``.
    parameters : iterable of Tensor
        Tensors ``fn`` depends on. Their gradients are returned by
        :meth:`backward`, flattened and concatenated in this order.
        Tensors that do not require grad contribute zeros.
    """

    def __init__(
        self,
        fn: Callable[[Tensor, Tensor], Tensor],
        parameters: Iterable[Tensor] = (),
    ):
        self.fn = fn
        self.parameters = list(parameters)
        self._pending: Optional[Tuple[Tensor, Tensor]] = None

    def parameter_count(self) -> int:
        return sum(p.numel() for p in self.parameters)

    def evaluate(self, y: Tensor, t: Tensor) -> Tensor:
        with torch.enable_grad():
            y_local = y.detach().requires_grad_(True)
            dy = self.fn(t, y_local)
        self._pending = (y_local, dy)
        return dy.detach()

    def backward(self, upstream_gradient: Tensor) -> Tuple[Tensor, Tensor]:
        if self._pending is None:
            raise RuntimeError(
                "backward() called without a matching evaluate(). Each "
                "evaluate() may be followed by at most one backward()."
            )
        y_local, dy = self._pending
        # Release the graph whether or not the gradient computation succeeds
        self._pending = None

        trainable = [p for p in self.parameters if p.requires_grad]
        if not dy.requires_grad:
            input_gradient = torch.zeros_like(y_local)
            grads = [None] * len(trainable)
        else:
            input_gradient, *grads = torch.autograd.grad(
                dy,
                [y_local, *trainable],
                grad_outputs=upstream_gradient.to(dy.dtype),
                allow_unused=True,
            )
            if input_gradient is None:
                input_gradient = torch.zeros_like(y_local)

        grads_by_id = {id(p): g for p, g in zip(trainable, grads)}
        flat = []
        for p in self.parameters:
            g = grads_by_id.get(id(p))
            if g is None:
                g = torch.zeros_like(p)
            flat.append(g.reshape(-1).to(dtype=y_local.dtype))
        if flat:
            parameter_gradient = torch.cat(flat)
        else:
            parameter_gradient = y_local.new_zeros(0)
        return input_gradient.detach(), parameter_gradient.detach()

    def split_parameter_gradient(self, parameter_gradient: Tensor) -> List[Tensor]:
        """Split a flat parameter gradient into tensors shaped like the parameters."""
        sizes = [p.numel() for p in self.parameters]
        chunks = torch.split(parameter_gradient, sizes) if sizes else ()
        return [
            chunk.reshape(p.shape).to(dtype=p.dtype)
            for chunk, p in zip(chunks, self.parameters)
        ]


class ModuleDerivative(AutogradDerivative):
    """:class:`AutogradDerivative` over an ``nn.Module`` with ``forward(t, y)``."""

    def __init__(self, module: nn.Module):
        super().__init__(module, module.parameters())
        self.module = module


def as_derivative_function(
    f: Union[DerivativeFunction, nn.Module, Callable[[Tensor, Tensor], Tensor]],
) -> DerivativeFunction:
    """
    Wrap modules and plain callables so integrators see one interface.

    Modules and callables are evaluated directly, so autograd records the
    operations of the solver. Use :class:`ModuleDerivative` or
    :class:`AutogradDerivative` for reverse-mode evaluation.
    """
    if isinstance(f, DerivativeFunction):
        return f
    if callable(f):
        return CallableDerivative(f)
    raise TypeError(
        f"Expected a DerivativeFunction, nn.Module or callable, got {type(f)}"
    )
