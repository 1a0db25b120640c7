import math
import os
import sys

import numpy as np
import pytest
import torch
from scipy import stats

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

from gmm_em import Matrix, NumericSolverError, SizeError, evaluate_density, gaussian_density, log_gaussian_density

torch.set_default_dtype(torch.float64)


def _random_spd(rng: np.random.RandomState, d: int) -> np.ndarray:
    A = rng.randn(d, d)
    C = A @ A.T
    C /= np.trace(C) / d
    return C + 1e-3 * np.eye(d)


@pytest.mark.parametrize("d", [1, 2, 4])
def test_log_density_matches_scipy(d):
    rng = np.random.RandomState(10 + d)
    X = rng.randn(25, d)
    mean = rng.randn(d)
    cov = _random_spd(rng, d)

    ours = log_gaussian_density(X, mean, cov).numpy()
    ref = stats.multivariate_normal(mean=mean, cov=cov).logpdf(X)
    assert np.allclose(ours, np.atleast_1d(ref), atol=1e-9)


def test_evaluate_density_single_point_and_matrix_covariance():
    mean = np.array([1.0, -1.0])
    cov = np.array([[2.0, 0.3], [0.3, 0.5]])
    x = np.array([0.5, 0.0])
    ref = stats.multivariate_normal(mean=mean, cov=cov).logpdf(x)

    assert evaluate_density(x, mean, Matrix.from_tensor(cov)) == pytest.approx(ref, abs=1e-10)
    assert gaussian_density(x, mean, cov) == pytest.approx(math.exp(ref), rel=1e-9)


def test_scalar_variance_in_one_dimension():
    assert evaluate_density([0.0], [0.0], 1.0) == pytest.approx(-0.5 * math.log(2 * math.pi))


def test_far_points_do_not_underflow():
    # density underflows to 0.0 but the log stays finite
    logp = evaluate_density([1e3], [0.0], 1e-2)
    assert math.isfinite(logp)
    assert gaussian_density([1e3], [0.0], 1e-2) == 0.0


def test_singular_covariance_raises():
    with pytest.raises(NumericSolverError):
        evaluate_density([0.0, 0.0], [0.0, 0.0], [[1.0, 1.0], [1.0, 1.0]])
    with pytest.raises(NumericSolverError):
        evaluate_density([0.0], [0.0], 0.0)


def test_size_errors():
    with pytest.raises(SizeError):
        evaluate_density([0.0, 0.0], [0.0, 0.0, 0.0], np.eye(3))
    with pytest.raises(SizeError):
        evaluate_density([0.0, 0.0], [0.0, 0.0], np.ones((2, 3)))
    with pytest.raises(SizeError):
        log_gaussian_density(np.zeros(3), [0.0], 1.0)
