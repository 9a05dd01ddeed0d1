"""Butcher tableau for embedded Runge-Kutta methods."""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import torch

from torchodenet.ordinary_differential_equation._exceptions import (
    InvalidConfiguration,
)


@dataclass(frozen=True)
class ButcherTableau:
    """
    Coefficients of an embedded Runge-Kutta method.

    Parameters
    ----------
    a : tuple of tuple of float
        Strictly lower triangular stage matrix without its empty first row.
        Row ``k`` holds the ``k + 1`` weights used to form stage ``k + 1``
        from stages ``0..k``.
    b : tuple of float
        Weights of the propagated solution, one per stage.
    b_star : tuple of float
        Error weights, one per stage. The local error is ``h * b_star . k``.
    c : tuple of float
        Stage times of every stage but the first, as fractions of the step.
    c_mid : tuple of float, optional
        Weights giving the state at the middle of the step,
        ``y_mid = y0 + h * c_mid . k``. Required for dense output.
    """

    a: Tuple[Tuple[float, ...], ...]
    b: Tuple[float, ...]
    b_star: Tuple[float, ...]
    c: Tuple[float, ...]
    c_mid: Optional[Tuple[float, ...]] = None

    def __post_init__(self):
        n_stages = len(self.b)
        if not (len(self.a) == len(self.c) == n_stages - 1):
            raise InvalidConfiguration(
                f"Tableau must satisfy len(a) == len(c) == len(b) - 1. "
                f"Got len(a)={len(self.a)}, len(c)={len(self.c)}, "
                f"len(b)={n_stages}"
            )
        if len(self.b_star) != n_stages:
            raise InvalidConfiguration(
                f"b_star must have one weight per stage ({n_stages}), "
                f"got {len(self.b_star)}"
            )
        for k, row in enumerate(self.a):
            if len(row) != k + 1:
                raise InvalidConfiguration(
                    f"Row {k} of a must have {k + 1} entries, got {len(row)}"
                )
        if self.c_mid is not None and len(self.c_mid) != n_stages:
            raise InvalidConfiguration(
                f"c_mid must have one weight per stage ({n_stages}), "
                f"got {len(self.c_mid)}"
            )

    @property
    def n_stages(self) -> int:
        return len(self.b)

    @property
    def is_fsal(self) -> bool:
        """True if the last stage is the derivative at the end of the step."""
        return (
            self.c[-1] == 1.0
            and tuple(self.a[-1]) == tuple(self.b[:-1])
            and self.b[-1] == 0.0
        )


def linear_combination(
    weights: Sequence[float], stages: Sequence[torch.Tensor]
) -> torch.Tensor:
    """Return ``sum_i weights[i] * stages[i]``, skipping zero weights."""
    result = torch.zeros_like(stages[0])
    for w, k in zip(weights, stages):
        if w != 0.0:
            result = result + w * k
    return result
