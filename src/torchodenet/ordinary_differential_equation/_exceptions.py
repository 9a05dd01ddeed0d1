"""Exceptions for ODE solvers."""


class IntegrationError(Exception):
    """Base exception for all integration solver errors."""

    pass


class InvalidConfiguration(IntegrationError, ValueError):
    """Raised when a tableau or solver configuration is malformed."""

    pass


class DivergedIntegration(IntegrationError):
    """Raised when a non-finite state, time or derivative is encountered."""

    pass


class StepSizeUnderflow(IntegrationError):
    """Raised when a step is rejected at the minimum step size."""

    pass


class MaxStepsExceeded(IntegrationError):
    """Raised when adaptive solver exceeds max_steps."""

    pass


class ShapeMismatch(IntegrationError, ValueError):
    """Raised when state, derivative or gradient shapes disagree."""

    pass
