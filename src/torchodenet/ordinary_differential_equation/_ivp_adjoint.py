"""Adjoint method for memory-efficient ODE gradients."""

import warnings
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple, Union

import torch
from torch import Tensor, nn

from torchodenet.ordinary_differential_equation._adjoint_equation import (
    AdjointEquation,
)
from torchodenet.ordinary_differential_equation._augmented_state import (
    AugmentedState,
)
from torchodenet.ordinary_differential_equation._derivative_function import (
    AutogradDerivative,
    DerivativeFunction,
    ModuleDerivative,
)
from torchodenet.ordinary_differential_equation._dormand_prince_5 import (
    dormand_prince_54,
)
from torchodenet.ordinary_differential_equation._exceptions import ShapeMismatch
from torchodenet.ordinary_differential_equation._multi_point import (
    MultiPointSampler,
)
from torchodenet.ordinary_differential_equation._nan_guard import NanGuard
from torchodenet.ordinary_differential_equation._runge_kutta import (
    EmbeddedRungeKuttaIntegrator,
    _real_dtype,
)
from torchodenet.ordinary_differential_equation._solver_config import (
    SolverConfig,
)
from torchodenet.ordinary_differential_equation._warnings import (
    AdjointStabilityWarning,
    BacksolveAdjointWarning,
)

# Drift of the backward-recovered initial state, in units of the local
# tolerance, above which a BacksolveAdjointWarning is issued
_BACKSOLVE_DRIFT_FACTOR = 100.0


@dataclass
class AdjointResult:
    """
    Gradients from :func:`integrate_adjoint`.

    Attributes
    ----------
    z0 : Tensor
        State at ``t0`` recovered by integrating backward from ``z1``.
    grad_z0 : Tensor
        ``dL/dz(t0)``.
    grad_parameters : Tensor
        ``dL/dtheta``, flattened in parameter order.
    grad_t0 : Tensor
        ``dL/dt0``, scalar.
    grad_t1 : Tensor
        ``dL/dt1``, scalar.
    """

    z0: Tensor
    grad_z0: Tensor
    grad_parameters: Tensor
    grad_t0: Tensor
    grad_t1: Tensor


def _adjoint_capable(
    f: Union[DerivativeFunction, nn.Module, Callable[[Tensor, Tensor], Tensor]],
    parameters: Optional[Iterable[Tensor]] = None,
) -> DerivativeFunction:
    if isinstance(f, DerivativeFunction):
        return f
    if isinstance(f, nn.Module):
        return ModuleDerivative(f)
    if callable(f):
        return AutogradDerivative(f, parameters if parameters is not None else ())
    raise TypeError(
        f"Expected a DerivativeFunction, nn.Module or callable, got {type(f)}"
    )


def integrate_adjoint(
    f: Union[DerivativeFunction, nn.Module, Callable[[Tensor, Tensor], Tensor]],
    t_span: Tuple[Union[float, Tensor], Union[float, Tensor]],
    z1: Tensor,
    grad_z1: Tensor,
    integrator: Optional[EmbeddedRungeKuttaIntegrator] = None,
    config: Optional[SolverConfig] = None,
) -> AdjointResult:
    """
    Propagate ``dL/dz(t1)`` back to ``t0`` with the adjoint method.

    The augmented state ``[z | a_z | a_theta | a_t]`` starts at
    ``[z1 | dL/dz1 | 0 | -dL/dt1]`` and is integrated from ``t1`` to ``t0``
    with the same integrator used for the forward pass, so no activations of
    the forward pass are stored.

    Parameters
    ----------
    f : DerivativeFunction, nn.Module or callable
        Forward dynamics. Must support reverse-mode evaluation; modules and
        callables ``f(t, y)`` are differentiated with ``torch.autograd``.
    t_span : tuple
        ``(t0, t1)`` of the forward pass.
    z1 : Tensor
        Forward state at ``t1``.
    grad_z1 : Tensor
        ``dL/dz(t1)``, shaped like ``z1``.
    integrator : EmbeddedRungeKuttaIntegrator, optional
        Integrator for the augmented system. Defaults to Dormand-Prince 5(4)
        with ``config``.
    config : SolverConfig, optional
        Tolerances for the default integrator.

    Returns
    -------
    AdjointResult

    Raises
    ------
    ShapeMismatch
        If ``grad_z1`` is not shaped like ``z1`` or ``f`` does not preserve
        the shape of ``z1``.
    """
    function = _adjoint_capable(f)
    if grad_z1.shape != z1.shape:
        raise ShapeMismatch(
            f"grad_z1 shape {tuple(grad_z1.shape)} does not match z1 shape "
            f"{tuple(z1.shape)}"
        )
    if integrator is None:
        integrator = dormand_prince_54(config)

    t0, t1 = float(t_span[0]), float(t_span[1])

    with torch.no_grad():
        z1 = z1.detach()
        grad_z1 = grad_z1.detach().to(z1.dtype)

        boundary = NanGuard(function) if integrator.nan_guard else function
        f1 = boundary.evaluate(
            z1, torch.tensor(t1, dtype=_real_dtype(z1.dtype), device=z1.device)
        )
        if f1.shape != z1.shape:
            raise ShapeMismatch(
                f"Derivative shape {tuple(f1.shape)} does not match state "
                f"shape {tuple(z1.shape)}"
            )
        grad_t1 = torch.sum(grad_z1 * f1.to(z1.dtype))

        n_parameters = function.parameter_count()
        initial = AugmentedState.pack(
            z1, grad_z1, z1.new_zeros(n_parameters), -grad_t1.reshape(1)
        )
        equation = AdjointEquation(function, z1.shape)
        buffer = integrator.integrate(equation, (t1, t0), initial.buffer)

        final = AugmentedState(buffer, z1.shape, n_parameters)
        return AdjointResult(
            z0=final.z.clone(),
            grad_z0=final.a_z.clone(),
            grad_parameters=final.a_theta.clone(),
            grad_t0=final.a_t.reshape(()).clone(),
            grad_t1=grad_t1,
        )


class _AdjointFunction(torch.autograd.Function):
    """
    Autograd function running the forward pass without a graph and the
    backward pass with :func:`integrate_adjoint`.
    """

    @staticmethod
    def forward(
        ctx,
        y0: Tensor,
        t: Tensor,
        function: AutogradDerivative,
        sampler: MultiPointSampler,
        *parameters: Tensor,
    ) -> Tensor:
        with torch.no_grad():
            trajectory = sampler.sample(function, t, y0)

        ctx.function = function
        ctx.integrator = sampler.integrator
        ctx.save_for_backward(y0, t, trajectory)
        return trajectory

    @staticmethod
    def backward(ctx, grad_trajectory: Tensor) -> Tuple[Any, ...]:
        y0, t, trajectory = ctx.saved_tensors
        function = ctx.function
        integrator = ctx.integrator
        times = t.detach().cpu().tolist()

        grad_t = torch.zeros(len(times), dtype=trajectory.dtype, device=trajectory.device)
        grad_parameters = trajectory.new_zeros(function.parameter_count())

        # Each interval restarts from the forward state at its end
        a = grad_trajectory[-1]
        z0 = None
        for i in range(len(times) - 1, 0, -1):
            if not _all_finite(a, grad_parameters):
                break
            result = integrate_adjoint(
                function,
                (times[i - 1], times[i]),
                trajectory[i],
                a,
                integrator=integrator,
            )
            grad_parameters = grad_parameters + result.grad_parameters
            grad_t[i] += result.grad_t1
            grad_t[i - 1] += result.grad_t0
            z0 = result.z0
            a = result.grad_z0 + grad_trajectory[i - 1]
        else:
            i = 0

        if not _all_finite(a, grad_parameters):
            warnings.warn(
                f"Adjoint state is not finite at t={times[i]:.4f}. Remaining "
                f"intervals are skipped and the gradient is not finite. "
                f"Consider tighter tolerances or a shorter integration time.",
                AdjointStabilityWarning,
            )
            if i > 0:
                nan = float("nan")
                a = torch.full_like(a, nan)
                grad_parameters = torch.full_like(grad_parameters, nan)
                grad_t[: i + 1] = nan
        elif z0 is not None:
            _check_backsolve(z0, y0, integrator.config, times[0])

        grad_y0 = a.to(y0.dtype)
        grad_t_out = grad_t.to(t.dtype) if ctx.needs_input_grad[1] else None
        grad_params = function.split_parameter_gradient(grad_parameters)
        return (grad_y0, grad_t_out, None, None, *grad_params)


def _all_finite(*tensors: Tensor) -> bool:
    return all(bool(torch.isfinite(x).all()) for x in tensors)


def _check_backsolve(
    z0: Tensor, y0: Tensor, config: SolverConfig, t0: float
) -> None:
    y0 = y0.detach().to(z0.dtype)
    tol = config.abs_tol + config.rel_tol * torch.abs(y0)
    drift = torch.abs(z0 - y0) / tol
    if drift.numel() and drift.max().item() > _BACKSOLVE_DRIFT_FACTOR:
        warnings.warn(
            f"State recovered by backward integration at t={t0:.4f} deviates "
            f"from the forward pass ({drift.max().item():.1f} x tolerance). "
            f"Adjoint gradients may be inaccurate; consider tighter tolerances.",
            BacksolveAdjointWarning,
        )


def odeint_adjoint(
    func: Union[AutogradDerivative, nn.Module, Callable[[Tensor, Tensor], Tensor]],
    y0: Tensor,
    t: Union[Tensor, Sequence[float]],
    parameters: Optional[Iterable[Tensor]] = None,
    integrator: Optional[EmbeddedRungeKuttaIntegrator] = None,
    dense_output: bool = True,
) -> Tensor:
    """
    Solve an ODE at the requested times with adjoint-method gradients.

    The forward pass builds no autograd graph. On ``backward()``, the
    adjoint system is integrated backward interval by interval, adding the
    loss gradient at each requested time, so memory use does not grow with
    the number of steps.

    Parameters
    ----------
    func : nn.Module, callable or AutogradDerivative
        Dynamics with signature ``func(t, y)``.
    y0 : Tensor
        Initial state at ``t[0]``.
    t : Tensor or sequence of float
        Monotonic requested times. A tensor with ``requires_grad=True``
        receives gradients for every time.
    parameters : iterable of Tensor, optional
        Tensors a plain callable ``func`` depends on. Ignored for modules,
        whose parameters are used.
    integrator : EmbeddedRungeKuttaIntegrator, optional
        Integrator for both passes. Defaults to Dormand-Prince 5(4).
    dense_output : bool
        Interpolate intermediate times in the forward pass.

    Returns
    -------
    Tensor
        States at the requested times, shape ``(len(t), *y0.shape)``.
    """
    if isinstance(func, AutogradDerivative):
        function = func
    elif isinstance(func, DerivativeFunction):
        raise TypeError(
            "odeint_adjoint needs an AutogradDerivative to route parameter "
            f"gradients, got {type(func).__name__}"
        )
    else:
        function = _adjoint_capable(func, parameters)

    if not isinstance(t, Tensor):
        t = torch.tensor(list(t), dtype=_real_dtype(y0.dtype), device=y0.device)

    sampler = MultiPointSampler(integrator, dense_output=dense_output)
    return _AdjointFunction.apply(y0, t, function, sampler, *function.parameters)
