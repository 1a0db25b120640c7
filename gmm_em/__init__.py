"""Gaussian mixture models fitted by EM with a k-means bootstrap (PyTorch, float64)."""

import logging

from ._config import SEEDING_STRATEGIES, EMConfig, EmptyClusterPolicy, load_config
from ._em import (
    EMDriver,
    EMResult,
    EMState,
    GaussianMixtureEM,
    GMMParams,
    expectation_step,
    initialize,
    maximization_step,
    run_em,
)
from ._errors import (
    DegenerateClusterError,
    DegenerateClusterWarning,
    LapackError,
    NonConvergenceError,
    NonConvergenceNotice,
    NumericSolverError,
    SizeError,
)
from ._gaussian import evaluate_density, gaussian_density, log_gaussian_density
from ._io import load_csv
from ._kmeans import (
    KMeansResult,
    all_distances,
    assign_clusters,
    assignment_change_count,
    cluster_member_counts,
    kmeans,
    seed_centroids,
    total_distance,
    update_centroids,
)
from ._matrix import Matrix, Orientation

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "SEEDING_STRATEGIES",
    "DegenerateClusterError",
    "DegenerateClusterWarning",
    "EMConfig",
    "EMDriver",
    "EMResult",
    "EMState",
    "EmptyClusterPolicy",
    "GMMParams",
    "GaussianMixtureEM",
    "KMeansResult",
    "LapackError",
    "Matrix",
    "NonConvergenceError",
    "NonConvergenceNotice",
    "NumericSolverError",
    "Orientation",
    "SizeError",
    "all_distances",
    "assign_clusters",
    "assignment_change_count",
    "cluster_member_counts",
    "evaluate_density",
    "expectation_step",
    "gaussian_density",
    "initialize",
    "kmeans",
    "load_config",
    "load_csv",
    "log_gaussian_density",
    "maximization_step",
    "run_em",
    "seed_centroids",
    "total_distance",
    "update_centroids",
]

__version__ = "0.1.0"
