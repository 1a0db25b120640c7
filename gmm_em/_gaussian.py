# gmm_em/_gaussian.py
"""Multivariate normal density, evaluated in log space.

    log N(x | mu, Sigma) = -0.5 * (M ln(2 pi) + ln|Sigma| + (x - mu)^T Sigma^{-1} (x - mu))

Callers exponentiate only when combining weighted densities (log-sum-exp in the
E-step), so tight or high-dimensional components do not underflow.
"""

from __future__ import annotations

import math
from typing import Tuple

import torch

from ._errors import NumericSolverError, SizeError
from ._matrix import Matrix, as_tensor

LOG_2PI = math.log(2.0 * math.pi)


def _as_covariance(covariance) -> Matrix:
    if isinstance(covariance, Matrix):
        return covariance
    cov = as_tensor(covariance)
    if cov.numel() == 1 and cov.dim() < 2:
        cov = cov.reshape(1, 1)
    return Matrix.from_tensor(cov)


def _precision_and_log_det(mean, covariance) -> Tuple[torch.Tensor, torch.Tensor, float]:
    cov = _as_covariance(covariance)
    mu = as_tensor(mean).reshape(-1)
    if cov.row_count != cov.col_count:
        raise SizeError(f"covariance must be square, got {cov.row_count}x{cov.col_count}")
    if mu.numel() != cov.row_count:
        raise SizeError(f"mean of length {mu.numel()} does not match {cov.row_count}x{cov.col_count} covariance")

    sign, log_det = cov.slogdet()
    if sign <= 0.0 or not math.isfinite(log_det):
        raise NumericSolverError("covariance is singular or not positive definite")
    precision = cov.inv()
    return mu, precision.tensor, log_det


def log_gaussian_density(X, mean, covariance) -> torch.Tensor:
    """log N(x_n | mean, covariance) for every row of X (N, M). Returns (N,)."""
    X = as_tensor(X)
    if X.dim() != 2:
        raise SizeError(f"points must be 2-D (N, M), got shape {tuple(X.shape)}")
    mu, precision, log_det = _precision_and_log_det(mean, covariance)
    M = mu.numel()
    if X.shape[1] != M:
        raise SizeError(f"points have {X.shape[1]} features, mean has {M}")

    diff = X - mu                                              # (N,M)
    mahal = torch.sum((diff @ precision) * diff, dim=1)        # (N,)
    mahal = mahal.clamp_min(0.0)
    return -0.5 * (M * LOG_2PI + log_det + mahal)


def evaluate_density(point, mean, covariance) -> float:
    """Log density of a single point."""
    x = as_tensor(point).reshape(1, -1)
    return float(log_gaussian_density(x, mean, covariance)[0])


def gaussian_density(point, mean, covariance) -> float:
    """Density of a single point (exponentiated; may underflow to 0.0)."""
    return math.exp(evaluate_density(point, mean, covariance))
