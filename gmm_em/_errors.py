# gmm_em/_errors.py
"""Exception and warning types raised by the estimation engine.

Shape problems are programmer errors and always propagate. Degenerate data
(empty clusters, collapsed covariances, non-convergence) is reported through
warnings and handled by the configured recovery policy.
"""

from __future__ import annotations

from typing import Optional

from sklearn.exceptions import ConvergenceWarning


class SizeError(ValueError):
    """Matrix operation could not be performed due to a size mismatch."""

    def __init__(self, message: str = "Matrix operation could not be performed due to a size mismatch.") -> None:
        super().__init__(message)


class NumericSolverError(RuntimeError):
    """Inversion or determinant failed: matrix singular or ill-conditioned.

    ``component`` is set when the failure belongs to a mixture component.
    """

    def __init__(
        self,
        message: str = "Operation could not be performed - matrix is singular or ill-conditioned.",
        component: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.component = component


# LAPACK-style name for the same failure.
LapackError = NumericSolverError


class DegenerateClusterWarning(UserWarning):
    """A k-means cluster or mixture component lost all effective membership."""


class DegenerateClusterError(RuntimeError):
    """Raised instead of DegenerateClusterWarning under the 'error' policy or strict mode."""

    def __init__(self, message: str, components=()) -> None:
        super().__init__(message)
        self.components = tuple(components)


class NonConvergenceNotice(ConvergenceWarning):
    """EM hit its iteration cap before the likelihood change fell below epsilon."""


class NonConvergenceError(RuntimeError):
    """Strict-mode counterpart of NonConvergenceNotice; carries the partial result."""

    def __init__(self, message: str, result=None) -> None:
        super().__init__(message)
        self.result = result
