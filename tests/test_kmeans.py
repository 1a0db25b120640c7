import os
import sys

import numpy as np
import pytest
import torch
from sklearn.cluster import KMeans

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

from gmm_em import _kmeans
from gmm_em import (
    DegenerateClusterError,
    DegenerateClusterWarning,
    SizeError,
    assignment_change_count,
    cluster_member_counts,
    kmeans,
    seed_centroids,
    update_centroids,
)

torch.set_default_dtype(torch.float64)


def _two_groups_1d(seed: int = 0) -> torch.Tensor:
    rng = np.random.RandomState(seed)
    left = rng.uniform(-0.5, 0.5, size=10)
    right = 10.0 + rng.uniform(-0.5, 0.5, size=10)
    return torch.tensor(np.concatenate([left, right])).unsqueeze(1)


def _blobs(seed: int = 0, n: int = 60) -> np.ndarray:
    rng = np.random.RandomState(seed)
    centers = np.array([[0.0, 0.0], [6.0, 6.0], [-6.0, 6.0]])
    return np.concatenate([c + 0.5 * rng.randn(n, 2) for c in centers])


# ---------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------

def test_fixed_seeding_accepts_flat_centroids_for_1d_data():
    X = _two_groups_1d()
    C = seed_centroids(X, 2, "fixed", initial_centroids=[0.0, 5.0])
    assert C.shape == (2, 1)
    assert C.flatten().tolist() == [0.0, 5.0]

    with pytest.raises(SizeError):
        seed_centroids(X, 3, "fixed", initial_centroids=[0.0, 5.0])
    with pytest.raises(ValueError):
        seed_centroids(X, 2, "fixed")


@pytest.mark.parametrize("strategy", ["random_from_data", "k-means++", "scikit_k-means++"])
def test_seeds_are_data_points_and_reproducible(strategy):
    X = torch.tensor(_blobs())
    a = seed_centroids(X, 3, strategy, random_state=7)
    b = seed_centroids(X, 3, strategy, random_state=7)
    assert a.shape == (3, 2)
    assert torch.equal(a, b)
    for c in a:
        assert (torch.all(X == c, dim=1)).any()


def test_more_clusters_than_points_rejected():
    X = torch.zeros((3, 1))
    with pytest.raises(ValueError):
        seed_centroids(X, 4, "k-means++")
    with pytest.raises(ValueError):
        seed_centroids(X, 2, "no-such-strategy")
    with pytest.raises(ValueError):
        seed_centroids(X, 4, "fixed", initial_centroids=[[0.0], [1.0], [2.0], [3.0]])


# ---------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------

def test_change_and_member_counts():
    a = torch.tensor([0, 1, 1, 2])
    b = torch.tensor([0, 1, 2, 2])
    assert assignment_change_count(a, b) == 1
    assert assignment_change_count(a, a) == 0
    assert cluster_member_counts(a, 4).tolist() == [1, 2, 1, 0]


# ---------------------------------------------------------------------
# Lloyd iterations
# ---------------------------------------------------------------------

def test_two_groups_with_fixed_seeds():
    X = _two_groups_1d()
    result = kmeans(X, 2, seeding="fixed", initial_centroids=[[0.0], [5.0]])

    assert result.converged
    assert not result.rolled_back
    assert result.member_counts.tolist() == [10, 10]
    assert result.centroids[0, 0] == pytest.approx(float(X[:10].mean()))
    assert result.centroids[1, 0] == pytest.approx(float(X[10:].mean()))
    assert torch.all(result.labels[:10] == 0) and torch.all(result.labels[10:] == 1)


def test_two_groups_with_kmeans_plus_plus():
    X = _two_groups_1d(seed=3)
    result = kmeans(X, 2, random_state=0)
    centers = sorted(result.centroids.flatten().tolist())
    assert centers[0] == pytest.approx(0.0, abs=0.5)
    assert centers[1] == pytest.approx(10.0, abs=0.5)


@pytest.mark.parametrize("seed", [0, 1, 2, 3])
def test_total_distance_never_increases(seed):
    X = torch.tensor(_blobs(seed))
    result = kmeans(X, 3, seeding="random_from_data", random_state=seed)
    trace = result.distance_trace
    assert len(trace) >= 1
    for i in range(1, len(trace)):
        assert trace[i] <= trace[i - 1] + 1e-9
    assert result.total_distance <= trace[0] + 1e-9
    assert result.total_distance >= 0.0


def test_iteration_cap():
    X = torch.tensor(_blobs(5))
    result = kmeans(X, 3, max_iter=1, seeding="random_from_data", random_state=1)
    assert result.n_iter == 1
    with pytest.raises(ValueError):
        kmeans(X, 3, max_iter=0)


def test_matches_sklearn_on_separated_blobs():
    X = _blobs(11)
    ours = kmeans(X, 3, random_state=0)
    ref = KMeans(n_clusters=3, n_init=10, random_state=0).fit(X)
    ours_sorted = np.array(sorted(ours.centroids.tolist()))
    ref_sorted = np.array(sorted(ref.cluster_centers_.tolist()))
    assert np.allclose(ours_sorted, ref_sorted, atol=1e-6)


def test_summary_lists_clusters():
    result = kmeans(_two_groups_1d(), 2, seeding="fixed", initial_centroids=[[0.0], [5.0]])
    text = result.summary()
    assert text.splitlines()[0] == "Final clusters"
    assert "cluster 1: members:" in text
    assert text.count("members:") == 2


# ---------------------------------------------------------------------
# Empty clusters
# ---------------------------------------------------------------------

_EMPTY_DATA = [[0.0], [0.1], [0.2], [10.0], [10.1]]
_EMPTY_SEEDS = [[0.0], [10.0], [100.0]]


def test_empty_cluster_reseeded():
    with pytest.warns(DegenerateClusterWarning):
        result = kmeans(_EMPTY_DATA, 3, seeding="fixed", initial_centroids=_EMPTY_SEEDS)
    assert result.empty_clusters == [2]
    assert torch.isfinite(result.centroids).all()
    # the reseeded centroid now sits on a data point and owns it
    assert result.member_counts.min() >= 1


def test_empty_cluster_frozen():
    with pytest.warns(DegenerateClusterWarning):
        result = kmeans(
            _EMPTY_DATA, 3, seeding="fixed", initial_centroids=_EMPTY_SEEDS, empty_cluster_policy="freeze"
        )
    assert result.centroids[2, 0] == 100.0
    assert result.member_counts.tolist() == [3, 2, 0]
    assert result.converged


@pytest.mark.parametrize("kwargs", [{"empty_cluster_policy": "error"}, {"strict": True}])
def test_empty_cluster_error(kwargs):
    with pytest.raises(DegenerateClusterError) as excinfo:
        kmeans(_EMPTY_DATA, 3, seeding="fixed", initial_centroids=_EMPTY_SEEDS, **kwargs)
    assert excinfo.value.components == (2,)


def test_more_empty_clusters_than_points_reported():
    X = torch.tensor([[0.0]])
    centroids = torch.tensor([[0.0], [5.0], [9.0]])
    with pytest.warns(DegenerateClusterWarning, match="not enough points"):
        new_centroids, empty = update_centroids(X, torch.tensor([0]), centroids)
    assert empty == [1, 2]
    assert new_centroids[1, 0] == 0.0
    assert new_centroids[2, 0] == 9.0


# ---------------------------------------------------------------------
# Rollback guard
# ---------------------------------------------------------------------

def test_rollback_restores_previous_assignment(monkeypatch):
    X = torch.tensor([[0.0], [1.0], [2.0], [10.0], [11.0], [12.0]])
    real_total_distance = _kmeans.total_distance
    forced = [10.0, 20.0]

    def increasing_total(X_, centroids, labels):
        if forced:
            return forced.pop(0)
        return real_total_distance(X_, centroids, labels)

    monkeypatch.setattr(_kmeans, "total_distance", increasing_total)
    result = kmeans(X, 2, seeding="fixed", initial_centroids=[[0.0], [2.0]])

    # iteration 1 accepts labels from the seeds, iteration 2 gets worse and is undone
    assert result.rolled_back
    assert result.converged
    assert result.n_iter == 2
    assert result.distance_trace == [10.0]
    assert result.labels.tolist() == [0, 0, 1, 1, 1, 1]
    assert result.centroids.flatten().tolist() == [0.5, 8.75]
    assert result.total_distance == pytest.approx(63.25)
