# gmm_em/_config.py
"""Run configuration for k-means bootstrapping and EM.

- ``EMConfig`` is a frozen dataclass validated on construction.
- ``load_config`` reads a YAML file (optionally under a ``gmm_em:`` section)
  and applies CLI-style ``key=value`` overrides.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import yaml

SEEDING_STRATEGIES = ("fixed", "random_from_data", "k-means++", "scikit_k-means++")


class EmptyClusterPolicy(str, Enum):
    """What to do when a cluster/component loses all effective membership."""

    RESEED = "reseed"
    FREEZE = "freeze"
    ERROR = "error"


@dataclass(frozen=True)
class EMConfig:
    max_kmeans_iterations: int = 100
    convergence_epsilon: float = 1e-6
    relative_tolerance: bool = False
    max_em_iterations: int = 1000
    empty_cluster_policy: EmptyClusterPolicy = EmptyClusterPolicy.RESEED
    seeding: str = "k-means++"
    initial_centroids: Optional[Sequence[Sequence[float]]] = None
    random_state: Optional[int] = None
    reg_covar: float = 0.0
    # covariance counts as collapsed when its smallest eigenvalue falls below
    # collapse_tol * (mean per-feature variance of the data)
    collapse_tol: float = 1e-8
    max_reseed_attempts: int = 10
    strict: bool = False

    def __post_init__(self) -> None:
        try:
            policy = EmptyClusterPolicy(self.empty_cluster_policy)
        except ValueError:
            raise ValueError(
                f"empty_cluster_policy must be one of {[p.value for p in EmptyClusterPolicy]}, "
                f"got {self.empty_cluster_policy!r}"
            ) from None
        object.__setattr__(self, "empty_cluster_policy", policy)

        if self.max_kmeans_iterations <= 0:
            raise ValueError(f"max_kmeans_iterations must be positive, got {self.max_kmeans_iterations!r}")
        if self.max_em_iterations <= 0:
            raise ValueError(f"max_em_iterations must be positive, got {self.max_em_iterations!r}")
        if not self.convergence_epsilon > 0:
            raise ValueError(f"convergence_epsilon must be positive, got {self.convergence_epsilon!r}")
        if self.reg_covar < 0:
            raise ValueError(f"reg_covar must be non-negative, got {self.reg_covar!r}")
        if self.collapse_tol < 0:
            raise ValueError(f"collapse_tol must be non-negative, got {self.collapse_tol!r}")
        if self.max_reseed_attempts < 0:
            raise ValueError(f"max_reseed_attempts must be non-negative, got {self.max_reseed_attempts!r}")
        if self.seeding not in SEEDING_STRATEGIES:
            raise ValueError(f"seeding must be one of {SEEDING_STRATEGIES}, got {self.seeding!r}")
        if self.seeding == "fixed" and self.initial_centroids is None:
            raise ValueError("seeding='fixed' requires initial_centroids")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EMConfig":
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["empty_cluster_policy"] = self.empty_cluster_policy.value
        return d

    def replace(self, **changes: Any) -> "EMConfig":
        return dataclasses.replace(self, **changes)


# --------------------------- load & overrides --------------------------- #

def _parse_val(v: str) -> Any:
    if v.lower() in ("true", "false"):
        return v.lower() == "true"
    if v.lower() in ("none", "null"):
        return None
    for cast in (int, float):
        try:
            return cast(v)
        except ValueError:
            pass
    return v


def load_config(path: str, overrides: Optional[List[str]] = None) -> EMConfig:
    """Load an EMConfig from YAML, e.g.::

        gmm_em:
          convergence_epsilon: 1.0e-8
          empty_cluster_policy: freeze

    ``overrides`` are strings like ``"max_em_iterations=50"``.
    """
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"config file {path!r} must contain a mapping")
    section = raw.get("gmm_em", raw) or {}
    if not isinstance(section, dict):
        raise ValueError(f"gmm_em section of {path!r} must be a mapping")
    data = dict(section)
    for ov in overrides or ():
        key, sep, val = ov.partition("=")
        if not sep:
            raise ValueError(f"override must look like key=value, got {ov!r}")
        data[key.strip()] = _parse_val(val.strip())
    return EMConfig.from_dict(data)
