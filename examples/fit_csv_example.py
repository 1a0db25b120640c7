"""
Example: fitting a Gaussian mixture to a CSV file

Writes a small two-cluster dataset to a temporary CSV, loads it back with
load_csv, runs k-means + EM with a YAML-free config and prints the result.
Pass a path (and optionally K) to fit your own file instead:

    python examples/fit_csv_example.py data.csv 3
"""

import sys
import os
import logging
import tempfile
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
from gmm_em import EMConfig, GaussianMixtureEM, load_csv

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")


def _write_demo_csv(path: str) -> None:
    rng = np.random.RandomState(123)
    a = rng.multivariate_normal([0.0, 0.0], [[1.0, 0.3], [0.3, 0.5]], 150)
    b = rng.multivariate_normal([5.0, 4.0], [[0.4, 0.0], [0.0, 0.9]], 100)
    np.savetxt(path, np.concatenate([a, b]), delimiter=",", fmt="%.6f")


if len(sys.argv) > 1:
    path = sys.argv[1]
    K = int(sys.argv[2]) if len(sys.argv) > 2 else 2
else:
    path = os.path.join(tempfile.mkdtemp(), "two_clusters.csv")
    _write_demo_csv(path)
    K = 2

X = load_csv(path)
N, D = X.shape

print("=" * 80)
print("GaussianMixtureEM - k-means bootstrap + EM")
print("=" * 80)
print()
print(f"Data: {N} samples, {D} dimensions, {K} components ({path})")
print()

config = EMConfig(random_state=0, convergence_epsilon=1e-8, empty_cluster_policy="reseed")
gmm = GaussianMixtureEM(n_components=K, config=config)
gmm.fit(X)

print(gmm.kmeans_.summary())
print()
print(f"State: {gmm.state_.value}")
print(f"Converged: {gmm.converged_}")
print(f"Iterations: {gmm.n_iter_}")
print(f"Final log-likelihood: {gmm.lower_bound_:.4f}")
print()
for k in range(K):
    print(f"Component {k}: weight={float(gmm.weights_[k]):.3f}, mean={gmm.means_[k].tolist()}")
    print(f"  covariance={gmm.covariances_[k].tolist()}")

labels = gmm.predict(X)
print()
print(f"Cluster sizes (argmax responsibility): {labels.bincount(minlength=K).tolist()}")
