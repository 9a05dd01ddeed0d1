"""Warnings emitted by the adjoint method."""


class AdjointStabilityWarning(UserWarning):
    """Warning when the adjoint state becomes non-finite."""

    pass


class BacksolveAdjointWarning(UserWarning):
    """Warning when the backward-recovered state drifts from the forward pass."""

    pass
