# gmm_em/_kmeans.py
"""K-means (Lloyd's method) used to bootstrap the EM means.

Each batch iteration:
  1. recompute every centroid as the mean of its assigned points
  2. compute the total within-cluster squared distance (totD)
  3. if totD went up, roll back to the previous assignment and stop (counts as converged)
  4. reassign every point to its nearest centroid (ties -> lowest index)
  5. stop when no point changed cluster, or after max_iter iterations

Accepted iterations therefore never increase totD.

Seeding strategies:
- 'fixed':            caller-supplied initial centroids
- 'random_from_data': K distinct data points
- 'k-means++':        distance-weighted sampling (torch)
- 'scikit_k-means++': sklearn.cluster.kmeans_plusplus

Empty clusters never divide by zero; they follow EmptyClusterPolicy:
- reseed: move the centroid to the point farthest from its own centroid
- freeze: keep the previous centroid until the cluster regains members
- error:  raise DegenerateClusterError
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import torch
from sklearn.cluster import kmeans_plusplus

from ._config import EmptyClusterPolicy
from ._errors import DegenerateClusterError, DegenerateClusterWarning, SizeError
from ._matrix import DTYPE, as_dataset, as_tensor

logger = logging.getLogger(__name__)


# ---------------------------
# Seeding
# ---------------------------

def _make_generator(random_state: Optional[int]) -> Optional[torch.Generator]:
    if random_state is None:
        return None
    g = torch.Generator()
    g.manual_seed(int(random_state))
    return g


@torch.no_grad()
def _kmeans_plus_plus_init_centroids(
    X: torch.Tensor,
    K: int,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """k-means++ seeding. Returns centroids (K, D)."""
    N, D = X.shape
    centroids = torch.empty((K, D), dtype=X.dtype)

    # First centroid uniformly
    i0 = int(torch.randint(0, N, (1,), generator=generator).item())
    centroids[0] = X[i0]

    # Closest squared dist to any chosen centroid so far
    closest_d2 = torch.sum((X - centroids[0]) ** 2, dim=1)  # (N,)

    for k in range(1, K):
        total = closest_d2.sum()
        if total > 0:
            idx = int(torch.multinomial(closest_d2 / total, 1, generator=generator).item())
        else:
            # every point sits on a chosen centroid already
            idx = int(torch.randint(0, N, (1,), generator=generator).item())
        centroids[k] = X[idx]

        d2_new = torch.sum((X - centroids[k]) ** 2, dim=1)
        closest_d2 = torch.minimum(closest_d2, d2_new)

    return centroids


def seed_centroids(
    X,
    n_clusters: int,
    strategy: str = "k-means++",
    initial_centroids=None,
    random_state: Optional[int] = None,
) -> torch.Tensor:
    """Initial centroids (K, D) for the given seeding strategy."""
    X = as_dataset(X)
    N, D = X.shape
    K = int(n_clusters)
    if K <= 0:
        raise ValueError(f"n_clusters must be positive, got {n_clusters!r}")

    if K > N:
        raise ValueError(f"n_clusters={K} exceeds the number of points N={N}")

    if strategy == "fixed":
        if initial_centroids is None:
            raise ValueError("seeding='fixed' requires initial_centroids")
        C = as_tensor(initial_centroids).clone()
        if C.dim() == 1 and D == 1:
            C = C.unsqueeze(1)
        if tuple(C.shape) != (K, D):
            raise SizeError(f"initial_centroids must have shape (K,D) = {(K, D)}, got {tuple(C.shape)}")
        return C

    if strategy == "random_from_data":
        idx = torch.randperm(N, generator=_make_generator(random_state))[:K]
        return X[idx].clone()

    if strategy == "k-means++":
        return _kmeans_plus_plus_init_centroids(X, K, _make_generator(random_state))

    if strategy == "scikit_k-means++":
        centers, _ = kmeans_plusplus(X.numpy(), n_clusters=K, random_state=random_state)
        return torch.from_numpy(centers).to(DTYPE)

    raise ValueError(f"Unknown seeding strategy {strategy!r}")


# ---------------------------
# Lloyd building blocks
# ---------------------------

def all_distances(X: torch.Tensor, centroids: torch.Tensor) -> torch.Tensor:
    """Squared Euclidean distance of every point to every centroid, (N, K)."""
    diff = X.unsqueeze(1) - centroids.unsqueeze(0)  # (N,K,D)
    return torch.sum(diff * diff, dim=2)


def assign_clusters(distances: torch.Tensor) -> torch.Tensor:
    """Nearest centroid per point; argmin returns the first (lowest) index on ties."""
    return torch.argmin(distances, dim=1)


def cluster_member_counts(labels: torch.Tensor, n_clusters: int) -> torch.Tensor:
    return torch.bincount(labels, minlength=n_clusters)


def total_distance(X: torch.Tensor, centroids: torch.Tensor, labels: torch.Tensor) -> float:
    diff = X - centroids[labels]
    return float(torch.sum(diff * diff))


def assignment_change_count(a: torch.Tensor, b: torch.Tensor) -> int:
    return int((a != b).sum())


@torch.no_grad()
def update_centroids(
    X: torch.Tensor,
    labels: torch.Tensor,
    centroids: torch.Tensor,
    policy: EmptyClusterPolicy = EmptyClusterPolicy.RESEED,
    strict: bool = False,
) -> Tuple[torch.Tensor, List[int]]:
    """Cluster means for the given assignment. Returns (new_centroids, empty_clusters)."""
    N, D = X.shape
    K = centroids.shape[0]

    counts = cluster_member_counts(labels, K).to(X.dtype)
    sums = torch.zeros((K, D), dtype=X.dtype).index_add_(0, labels, X)

    new_centroids = centroids.clone()
    occupied = counts > 0
    new_centroids[occupied] = sums[occupied] / counts[occupied].unsqueeze(1)

    empty = torch.nonzero(~occupied).flatten().tolist()
    if not empty:
        return new_centroids, empty

    policy = EmptyClusterPolicy(policy)
    if strict or policy is EmptyClusterPolicy.ERROR:
        raise DegenerateClusterError(f"Empty cluster(s) {empty} during k-means", empty)

    if policy is EmptyClusterPolicy.RESEED:
        d2 = torch.sum((X - new_centroids[labels]) ** 2, dim=1)
        farthest = torch.argsort(d2, descending=True, stable=True)[: len(empty)]
        reseeded = empty[: farthest.numel()]
        for k, i in zip(reseeded, farthest.tolist()):
            new_centroids[k] = X[i]
        action = f"{reseeded} reseeded from the farthest points"
        stale = empty[len(reseeded):]
        if stale:
            action += f", {stale} left at their previous centroids (not enough points)"
    else:
        action = "frozen at their previous centroids"

    warnings.warn(
        f"Empty cluster(s) {empty} during k-means; {action}.",
        DegenerateClusterWarning,
        stacklevel=3,
    )
    return new_centroids, empty


# ---------------------------
# Driver
# ---------------------------

@dataclass
class KMeansResult:
    centroids: torch.Tensor            # (K, D)
    labels: torch.Tensor               # (N,)
    total_distance: float
    n_iter: int
    converged: bool
    rolled_back: bool = False
    distance_trace: List[float] = field(default_factory=list)
    empty_clusters: List[int] = field(default_factory=list)

    @property
    def member_counts(self) -> torch.Tensor:
        return cluster_member_counts(self.labels, self.centroids.shape[0])

    def summary(self) -> str:
        lines = ["Final clusters"]
        for k, count in enumerate(self.member_counts.tolist()):
            coords = ", ".join(f"{v:.3f}" for v in self.centroids[k].tolist())
            lines.append(f"  cluster {k}: members: {count:8d}, centroid({coords})")
        return "\n".join(lines)


def kmeans(
    X,
    n_clusters: int,
    *,
    max_iter: int = 100,
    seeding: str = "k-means++",
    initial_centroids=None,
    empty_cluster_policy=EmptyClusterPolicy.RESEED,
    random_state: Optional[int] = None,
    strict: bool = False,
) -> KMeansResult:
    """Batch Lloyd k-means with the non-improvement rollback guard."""
    X = as_dataset(X)
    if max_iter <= 0:
        raise ValueError(f"max_iter must be positive, got {max_iter!r}")
    policy = EmptyClusterPolicy(empty_cluster_policy)

    centroids = seed_centroids(X, n_clusters, seeding, initial_centroids, random_state)
    labels = assign_clusters(all_distances(X, centroids))
    prev_labels = labels.clone()

    prev_total = math.inf
    trace: List[float] = []
    empty_seen: List[int] = []
    converged = False
    rolled_back = False
    n_iter = 0

    for it in range(max_iter):
        n_iter = it + 1
        new_centroids, empty = update_centroids(X, labels, centroids, policy, strict)
        empty_seen.extend(k for k in empty if k not in empty_seen)

        tot = total_distance(X, new_centroids, labels)
        if tot > prev_total:
            # failed to improve: go back to the previous assignment, whose
            # means are the current centroids
            labels = prev_labels
            rolled_back = True
            converged = True
            logger.debug("negative progress on batch iteration %d (%.6g); rolled back", n_iter, tot - prev_total)
            break

        trace.append(tot)
        prev_labels = labels
        centroids = new_centroids
        labels = assign_clusters(all_distances(X, centroids))

        change_count = assignment_change_count(labels, prev_labels)
        logger.debug(
            "batch iteration %3d  change count %8d  totD %16.6f  totD-prev_totD %+.6e",
            n_iter, change_count, tot, tot - prev_total if math.isfinite(prev_total) else float("nan"),
        )
        if change_count == 0:
            converged = True
            break
        prev_total = tot

    result = KMeansResult(
        centroids=centroids,
        labels=labels,
        total_distance=total_distance(X, centroids, labels),
        n_iter=n_iter,
        converged=converged,
        rolled_back=rolled_back,
        distance_trace=trace,
        empty_clusters=sorted(empty_seen),
    )
    logger.info(
        "k-means finished after %d iteration(s) (converged=%s, rolled_back=%s, totD=%.6g)",
        n_iter, converged, rolled_back, result.total_distance,
    )
    logger.info("%s", result.summary())
    return result
