"""
Adaptive ODE integration with dense output and adjoint gradients.

Integrators
-----------
integrate
    Dormand-Prince 5(4) adaptive method (explicit), functional form.
dormand_prince_54
    Create a reusable Dormand-Prince 5(4) integrator.
EmbeddedRungeKuttaIntegrator
    Adaptive integrator driven by any embedded Butcher tableau.
MultiPointSampler
    Solutions at multiple requested times (pairwise or interpolated).

Adjoint Method
--------------
integrate_adjoint
    Propagate a loss gradient backward through one integration.
odeint_adjoint
    Autograd-compatible multi-point solve with adjoint gradients.
ODEBlock
    Neural ODE layer.

Derivative Functions
--------------------
DerivativeFunction
    Interface consumed by the integrators.
AutogradDerivative, ModuleDerivative
    Reverse-mode capable wrappers over callables and modules.
"""

from torchodenet.ordinary_differential_equation._adjoint_equation import (
    AdjointEquation,
)
from torchodenet.ordinary_differential_equation._augmented_state import (
    AugmentedState,
)
from torchodenet.ordinary_differential_equation._butcher_tableau import (
    ButcherTableau,
)
from torchodenet.ordinary_differential_equation._derivative_function import (
    AutogradDerivative,
    CallableDerivative,
    DerivativeFunction,
    ModuleDerivative,
)
from torchodenet.ordinary_differential_equation._dormand_prince_5 import (
    DORMAND_PRINCE_54,
    DormandPrince54ErrorEstimator,
    dormand_prince_54,
    integrate,
)
from torchodenet.ordinary_differential_equation._exceptions import (
    DivergedIntegration,
    IntegrationError,
    InvalidConfiguration,
    MaxStepsExceeded,
    ShapeMismatch,
    StepSizeUnderflow,
)
from torchodenet.ordinary_differential_equation._interpolation import (
    DenseOutputInterpolator,
    InterpolatingStepListener,
)
from torchodenet.ordinary_differential_equation._ivp_adjoint import (
    AdjointResult,
    integrate_adjoint,
    odeint_adjoint,
)
from torchodenet.ordinary_differential_equation._multi_point import (
    MultiPointSampler,
)
from torchodenet.ordinary_differential_equation._nan_guard import NanGuard
from torchodenet.ordinary_differential_equation._ode_block import (
    ODEBlock,
    StepMode,
)
from torchodenet.ordinary_differential_equation._runge_kutta import (
    EmbeddedRungeKuttaIntegrator,
    ErrorEstimator,
    IntegrationStats,
)
from torchodenet.ordinary_differential_equation._solver_config import (
    SolverConfig,
    StepConfig,
)
from torchodenet.ordinary_differential_equation._step_listener import (
    StepCounter,
    StepListener,
    StepResult,
)
from torchodenet.ordinary_differential_equation._step_size_controller import (
    StepSizeController,
)
from torchodenet.ordinary_differential_equation._warnings import (
    AdjointStabilityWarning,
    BacksolveAdjointWarning,
)

__all__ = [
    # Integrators
    "DORMAND_PRINCE_54",
    "DormandPrince54ErrorEstimator",
    "EmbeddedRungeKuttaIntegrator",
    "ErrorEstimator",
    "IntegrationStats",
    "MultiPointSampler",
    "dormand_prince_54",
    "integrate",
    # Configuration
    "ButcherTableau",
    "SolverConfig",
    "StepConfig",
    "StepSizeController",
    # Dense output and listeners
    "DenseOutputInterpolator",
    "InterpolatingStepListener",
    "StepCounter",
    "StepListener",
    "StepResult",
    # Derivative functions
    "AutogradDerivative",
    "CallableDerivative",
    "DerivativeFunction",
    "ModuleDerivative",
    "NanGuard",
    # Adjoint
    "AdjointEquation",
    "AdjointResult",
    "AugmentedState",
    "ODEBlock",
    "StepMode",
    "integrate_adjoint",
    "odeint_adjoint",
    # Exceptions and warnings
    "AdjointStabilityWarning",
    "BacksolveAdjointWarning",
    "DivergedIntegration",
    "IntegrationError",
    "InvalidConfiguration",
    "MaxStepsExceeded",
    "ShapeMismatch",
    "StepSizeUnderflow",
]
