# gmm_em/_em.py
"""Gaussian Mixture Model (GMM) EM bootstrapped by k-means.

Procedure:
- run k-means on the data to get starting means
- start with uniform weights and the global data covariance for every component
- repeat: E-step -> responsibilities and log-likelihood, M-step -> new parameters
- stop when the log-likelihood stops changing (|delta| < convergence_epsilon)

Parameters (theta) are an immutable ``GMMParams`` replaced every iteration:
- weights:     (K,)      mixture weights, sum to 1
- means:       (K, M)
- covariances: (K, M, M) full covariance per component

Degenerate components (starved of responsibility mass, collapsed or singular
covariance) are repaired according to ``EMConfig.empty_cluster_policy``:
- reseed: mean <- the data point the healthy components explain worst,
          covariance <- bootstrap covariance, weight <- 1/K (renormalized)
- freeze: the component keeps its previous parameters
- error:  DegenerateClusterError
Too many repairs end the run in the FAILED state.

Driver states: UNINITIALIZED -> BOOTSTRAPPED -> ITERATING -> CONVERGED | MAX_ITER | FAILED
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import torch

from ._config import EMConfig, EmptyClusterPolicy
from ._errors import (
    DegenerateClusterError,
    DegenerateClusterWarning,
    NonConvergenceError,
    NonConvergenceNotice,
    NumericSolverError,
    SizeError,
)
from ._gaussian import log_gaussian_density
from ._kmeans import KMeansResult, kmeans
from ._matrix import DTYPE, Matrix, as_dataset, as_tensor

logger = logging.getLogger(__name__)


# ---------------------------
# Utilities
# ---------------------------

def _nk_eps(dtype: torch.dtype) -> float:
    """Responsibility mass below which a component counts as starved."""
    return float(10.0 * torch.finfo(dtype).eps)


def _safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def _collapse_floor(X: torch.Tensor, collapse_tol: float) -> float:
    """Smallest acceptable covariance eigenvalue, relative to the data's spread."""
    spread = float(X.var(dim=0, unbiased=False).mean())
    if not spread > 0.0:
        spread = 1.0
    return collapse_tol * spread


def _is_usable_covariance(cov: torch.Tensor, floor: float) -> bool:
    if not torch.isfinite(cov).all():
        return False
    if float(torch.linalg.eigvalsh(cov).min()) <= floor:
        return False
    try:
        Matrix.from_tensor(cov).inv()
    except NumericSolverError:
        return False
    return True


def _bootstrap_covariance(X: torch.Tensor, reg_covar: float, floor: float) -> torch.Tensor:
    """Global data covariance, or the identity scaled by the data spread if that is singular."""
    D = X.shape[1]
    eye = torch.eye(D, dtype=DTYPE)
    cov = Matrix.from_tensor(X).covar().tensor + reg_covar * eye
    if _is_usable_covariance(cov, floor):
        return cov
    spread = float(X.var(dim=0, unbiased=False).mean())
    if not spread > 0.0:
        spread = 1.0
    logger.info("global covariance is singular; starting from %.6g * I", spread)
    return spread * eye + reg_covar * eye


# ---------------------------
# Parameters
# ---------------------------

@dataclass(frozen=True)
class GMMParams:
    weights: torch.Tensor       # (K,)
    means: torch.Tensor         # (K, M)
    covariances: torch.Tensor   # (K, M, M)

    def __post_init__(self) -> None:
        K = self.weights.shape[0]
        if self.weights.dim() != 1:
            raise SizeError(f"weights must be 1-D, got shape {tuple(self.weights.shape)}")
        if self.means.dim() != 2 or self.means.shape[0] != K:
            raise SizeError(f"means must have shape (K, M) with K={K}, got {tuple(self.means.shape)}")
        M = self.means.shape[1]
        if tuple(self.covariances.shape) != (K, M, M):
            raise SizeError(f"covariances must have shape {(K, M, M)}, got {tuple(self.covariances.shape)}")

    @classmethod
    def from_arrays(cls, weights, means, covariances) -> "GMMParams":
        """Build from array-likes; 1-D data may pass means (K,) and variances (K,)."""
        w = as_tensor(weights).reshape(-1)
        mu = as_tensor(means)
        cov = as_tensor(covariances)
        if mu.dim() == 1:
            mu = mu.unsqueeze(1)
        if cov.dim() == 1:
            cov = cov.reshape(-1, 1, 1)
        return cls(weights=w.clone(), means=mu.clone(), covariances=cov.clone())

    @property
    def n_components(self) -> int:
        return int(self.weights.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.means.shape[1])

    def covariance(self, k: int) -> Matrix:
        return Matrix.from_tensor(self.covariances[k])

    def subset(self, components: Sequence[int]) -> "GMMParams":
        idx = torch.as_tensor(list(components), dtype=torch.long)
        return GMMParams(self.weights[idx], self.means[idx], self.covariances[idx])


# ---------------------------
# EM steps
# ---------------------------

def _estimate_weighted_log_prob(X: torch.Tensor, params: GMMParams) -> torch.Tensor:
    """log(pi_k) + log N(x_n | mu_k, Sigma_k), shape (N, K)."""
    cols = []
    for k in range(params.n_components):
        try:
            log_prob = log_gaussian_density(X, params.means[k], params.covariance(k))
        except NumericSolverError as exc:
            raise NumericSolverError(f"covariance of component {k} is singular: {exc}", component=k) from exc
        cols.append(log_prob + _safe_log(params.weights[k]))
    return torch.stack(cols, dim=1)


def expectation_step(X, params: GMMParams) -> Tuple[torch.Tensor, float]:
    """Responsibilities (N, K) and total log-likelihood under ``params``.

    A point every component assigns zero density gets uniform responsibilities
    and contributes ln(tiny) instead of -inf.
    """
    X = as_dataset(X)
    if X.shape[1] != params.n_features:
        raise SizeError(f"data has {X.shape[1]} features, parameters have {params.n_features}")
    K = params.n_components

    weighted_log_prob = _estimate_weighted_log_prob(X, params)     # (N,K)
    log_prob_norm = torch.logsumexp(weighted_log_prob, dim=1)      # (N,)
    resp = torch.exp(weighted_log_prob - log_prob_norm.unsqueeze(1))

    dead = ~torch.isfinite(log_prob_norm)
    if dead.any():
        resp[dead] = 1.0 / K
        floor = torch.full_like(log_prob_norm, math.log(torch.finfo(DTYPE).tiny))
        log_prob_norm = torch.where(dead, floor, log_prob_norm)

    return resp, float(log_prob_norm.sum())


def maximization_step(X, responsibilities, reg_covar: float = 0.0) -> GMMParams:
    """New weights, means and covariances from responsibilities (N, K).

    Components with (numerically) zero responsibility mass get zero placeholders;
    the driver detects and repairs them.
    """
    X = as_dataset(X)
    resp = as_tensor(responsibilities)
    N, D = X.shape
    if resp.dim() != 2 or resp.shape[0] != N:
        raise SizeError(f"responsibilities must have shape (N, K) with N={N}, got {tuple(resp.shape)}")
    K = resp.shape[1]

    data = Matrix.from_tensor(X)
    nk = resp.sum(dim=0)                                   # (K,)
    eye = torch.eye(D, dtype=DTYPE)
    means = torch.zeros((K, D), dtype=DTYPE)
    covariances = torch.zeros((K, D, D), dtype=DTYPE)

    # components are independent: no accumulator shared across k
    for k in range(K):
        if nk[k] <= _nk_eps(DTYPE):
            continue
        w = resp[:, k]
        means[k] = data.average(axis=0, weights=w)
        covariances[k] = data.covar(weights=w, bias=True).tensor + reg_covar * eye

    return GMMParams(weights=nk / N, means=means, covariances=covariances)


def _degenerate_components(params: GMMParams, nk: torch.Tensor, floor: float) -> List[int]:
    bad = []
    for k in range(params.n_components):
        if nk[k] <= _nk_eps(DTYPE) or not torch.isfinite(params.means[k]).all():
            bad.append(k)
        elif not _is_usable_covariance(params.covariances[k], floor):
            bad.append(k)
    return bad


# ---------------------------
# Driver
# ---------------------------

class EMState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPED = "bootstrapped"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER = "max_iter"
    FAILED = "failed"


@dataclass
class EMResult:
    params: GMMParams
    responsibilities: torch.Tensor     # (N, K)
    likelihood_trace: List[float]
    state: EMState
    n_iter: int
    n_repairs: int = 0
    # trace positions where a new segment starts because the entry before it was repaired
    repair_iterations: List[int] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.state is EMState.CONVERGED

    @property
    def log_likelihood(self) -> float:
        return self.likelihood_trace[-1] if self.likelihood_trace else float("-inf")

    def trace_segments(self) -> List[List[float]]:
        """Likelihood trace split at repairs; EM never lowers the likelihood inside a segment."""
        bounds = [0] + [i for i in self.repair_iterations if 0 < i < len(self.likelihood_trace)]
        bounds.append(len(self.likelihood_trace))
        return [self.likelihood_trace[a:b] for a, b in zip(bounds, bounds[1:]) if b > a]


class _RecoveryExhausted(NumericSolverError):
    pass


def _mark_repair(repair_iterations: List[int], position: int) -> None:
    if not repair_iterations or repair_iterations[-1] != position:
        repair_iterations.append(position)


class EMDriver:
    """Runs the k-means bootstrap and the EM loop for one configuration."""

    def __init__(self, config: Optional[EMConfig] = None) -> None:
        self.config = config if config is not None else EMConfig()
        self.state = EMState.UNINITIALIZED
        self.kmeans_result: Optional[KMeansResult] = None
        self.n_repairs = 0
        self._reseeded: set = set()

    def initialize(self, dataset, n_components: int) -> GMMParams:
        """K-means means, uniform weights, bootstrap covariance for every component."""
        X = as_dataset(dataset)
        cfg = self.config
        N, D = X.shape
        K = int(n_components)

        km = kmeans(
            X,
            K,
            max_iter=cfg.max_kmeans_iterations,
            seeding=cfg.seeding,
            initial_centroids=cfg.initial_centroids,
            empty_cluster_policy=cfg.empty_cluster_policy,
            random_state=cfg.random_state,
            strict=cfg.strict,
        )
        self.kmeans_result = km

        cov = _bootstrap_covariance(X, cfg.reg_covar, _collapse_floor(X, cfg.collapse_tol))
        params = GMMParams(
            weights=torch.full((K,), 1.0 / K, dtype=DTYPE),
            means=km.centroids.clone(),
            covariances=cov.unsqueeze(0).expand(K, D, D).clone(),
        )
        self.state = EMState.BOOTSTRAPPED
        logger.info("bootstrapped %d components on %d points in %d dimension(s)", K, N, D)
        return params

    def _has_converged(self, likelihood: float, previous: float) -> bool:
        delta = abs(likelihood - previous)
        if self.config.relative_tolerance:
            return delta < self.config.convergence_epsilon * abs(likelihood)
        return delta < self.config.convergence_epsilon

    def _highest_residual_points(
        self, X: torch.Tensor, params: GMMParams, healthy: List[int], count: int
    ) -> List[int]:
        """Indices of the points worst explained by the healthy components."""
        score = None
        if healthy:
            try:
                score = torch.logsumexp(_estimate_weighted_log_prob(X, params.subset(healthy)), dim=1)
            except NumericSolverError:
                score = None
        if score is None:
            score = -torch.sum((X - X.mean(dim=0)) ** 2, dim=1)

        order = torch.argsort(score, stable=True).tolist()
        chosen = [i for i in order if i not in self._reseeded][:count]
        if len(chosen) < count:
            chosen += [i for i in order if i not in chosen][: count - len(chosen)]
        return chosen

    def _recover(
        self,
        X: torch.Tensor,
        params: GMMParams,
        previous: Optional[GMMParams],
        components: List[int],
        fallback_cov: torch.Tensor,
    ) -> GMMParams:
        cfg = self.config
        policy = cfg.empty_cluster_policy
        if cfg.strict or policy is EmptyClusterPolicy.ERROR:
            raise DegenerateClusterError(
                f"Component(s) {components} degenerate (starved or singular covariance)", components
            )

        self.n_repairs += len(components)
        if self.n_repairs > cfg.max_reseed_attempts:
            raise _RecoveryExhausted(
                f"gave up after {self.n_repairs} repairs; component(s) {components} keep degenerating"
            )

        K = params.n_components
        weights = params.weights.clone()
        means = params.means.clone()
        covariances = params.covariances.clone()

        if policy is EmptyClusterPolicy.FREEZE:
            if previous is None:
                raise _RecoveryExhausted(f"no previous parameters to freeze component(s) {components} at")
            for k in components:
                weights[k] = previous.weights[k]
                means[k] = previous.means[k]
                covariances[k] = previous.covariances[k]
            action = "frozen at their previous parameters"
        else:
            healthy = [j for j in range(K) if j not in components]
            points = self._highest_residual_points(X, params, healthy, len(components))
            for k, i in zip(components, points):
                weights[k] = 1.0 / K
                means[k] = X[i]
                covariances[k] = fallback_cov
                self._reseeded.add(i)
            action = f"reseeded at point(s) {points}"

        warnings.warn(
            f"Degenerate mixture component(s) {components}; {action}.",
            DegenerateClusterWarning,
            stacklevel=3,
        )
        return GMMParams(weights=weights / weights.sum(), means=means, covariances=covariances)

    def run(self, dataset, params: GMMParams) -> EMResult:
        """Alternate E- and M-steps from ``params`` until the likelihood settles."""
        X = as_dataset(dataset)
        cfg = self.config
        if X.shape[1] != params.n_features:
            raise SizeError(f"data has {X.shape[1]} features, parameters have {params.n_features}")
        N = X.shape[0]
        K = params.n_components

        floor = _collapse_floor(X, cfg.collapse_tol)
        fallback_cov = _bootstrap_covariance(X, cfg.reg_covar, floor)

        self.state = EMState.ITERATING
        self.n_repairs = 0
        self._reseeded = set()

        trace: List[float] = []
        repair_iterations: List[int] = []
        prev_likelihood = float("-inf")
        resp: Optional[torch.Tensor] = None
        last_healthy: Optional[GMMParams] = None
        state = EMState.MAX_ITER
        n_iter = 0

        try:
            for it in range(1, cfg.max_em_iterations + 1):
                n_iter = it
                try:
                    step_resp, likelihood = expectation_step(X, params)
                except NumericSolverError as exc:
                    if exc.component is None:
                        raise
                    params = self._recover(X, params, last_healthy, [exc.component], fallback_cov)
                    _mark_repair(repair_iterations, len(trace))
                    prev_likelihood = float("-inf")
                    continue

                resp = step_resp
                last_healthy = params
                new_params = maximization_step(X, resp, cfg.reg_covar)
                trace.append(likelihood)

                degenerate = _degenerate_components(new_params, resp.sum(dim=0), floor)
                if degenerate:
                    params = self._recover(X, new_params, params, degenerate, fallback_cov)
                    _mark_repair(repair_iterations, len(trace))
                    prev_likelihood = float("-inf")
                    continue

                params = new_params
                logger.debug(
                    "EM iteration %3d: log-likelihood = %.6f (delta = %+.6e)",
                    it, likelihood, likelihood - prev_likelihood,
                )
                if self._has_converged(likelihood, prev_likelihood):
                    state = EMState.CONVERGED
                    break
                prev_likelihood = likelihood
        except _RecoveryExhausted as exc:
            self.state = EMState.FAILED
            if cfg.strict:
                raise
            logger.warning("EM failed after %d iteration(s): %s", n_iter, exc)
            state = EMState.FAILED
            params = last_healthy if last_healthy is not None else params
        except DegenerateClusterError:
            self.state = EMState.FAILED
            raise

        try:
            resp, _ = expectation_step(X, params)
        except NumericSolverError:
            if resp is None:
                resp = torch.full((N, K), 1.0 / K, dtype=DTYPE)

        result = EMResult(
            params=params,
            responsibilities=resp,
            likelihood_trace=trace,
            state=state,
            n_iter=n_iter,
            n_repairs=self.n_repairs,
            repair_iterations=repair_iterations,
        )

        if state is EMState.MAX_ITER:
            if cfg.strict:
                self.state = result.state = EMState.FAILED
                raise NonConvergenceError(
                    f"EM did not converge within {cfg.max_em_iterations} iterations", result=result
                )
            warnings.warn(
                f"EM did not converge within {cfg.max_em_iterations} iterations "
                f"(last log-likelihood {result.log_likelihood:.6f}); returning the current parameters.",
                NonConvergenceNotice,
                stacklevel=2,
            )

        self.state = result.state
        logger.info(
            "EM finished: state=%s, iterations=%d, log-likelihood=%.6f, repairs=%d",
            result.state.value, n_iter, result.log_likelihood, self.n_repairs,
        )
        return result


# ---------------------------
# Public entry points
# ---------------------------

def initialize(dataset, k: int, config: Optional[EMConfig] = None) -> GMMParams:
    """Run k-means and build a valid initial parameter set."""
    return EMDriver(config).initialize(dataset, k)


def run_em(dataset, theta0: GMMParams, config: Optional[EMConfig] = None) -> EMResult:
    """Iterate EM from ``theta0``; see ``EMDriver.run``."""
    return EMDriver(config).run(dataset, theta0)


class GaussianMixtureEM:
    """Sklearn-shaped estimator around ``initialize`` + ``run_em``.

    Fitted attributes:
    - weights_, means_, covariances_, responsibilities_
    - converged_, state_, n_iter_, lower_bound_, lower_bounds_ (likelihood trace)
    - kmeans_ (the bootstrap KMeansResult)
    """

    def __init__(self, n_components: int, config: Optional[EMConfig] = None, **overrides) -> None:
        if n_components <= 0:
            raise ValueError(f"n_components must be positive, got {n_components!r}")
        base = config if config is not None else EMConfig()
        self.config = base.replace(**overrides) if overrides else base
        self.n_components = n_components

        self.weights_: Optional[torch.Tensor] = None
        self.means_: Optional[torch.Tensor] = None
        self.covariances_: Optional[torch.Tensor] = None
        self.responsibilities_: Optional[torch.Tensor] = None

        self.converged_: bool = False
        self.state_: EMState = EMState.UNINITIALIZED
        self.n_iter_: int = 0
        self.lower_bound_: float = float("-inf")
        self.lower_bounds_: List[float] = []
        self.kmeans_: Optional[KMeansResult] = None

        self._params: Optional[GMMParams] = None

    def fit(self, X) -> "GaussianMixtureEM":
        X = as_dataset(X)
        driver = EMDriver(self.config)
        result = driver.run(X, driver.initialize(X, self.n_components))

        self._params = result.params
        self.weights_ = result.params.weights
        self.means_ = result.params.means
        self.covariances_ = result.params.covariances
        self.responsibilities_ = result.responsibilities

        self.converged_ = result.converged
        self.state_ = result.state
        self.n_iter_ = result.n_iter
        self.lower_bound_ = result.log_likelihood
        self.lower_bounds_ = list(result.likelihood_trace)
        self.kmeans_ = driver.kmeans_result
        return self

    def _fitted_params(self) -> GMMParams:
        if self._params is None:
            raise RuntimeError("Model is not fitted yet.")
        return self._params

    def score_samples(self, X) -> torch.Tensor:
        """Per-sample log-likelihood (N,)."""
        params = self._fitted_params()
        return torch.logsumexp(_estimate_weighted_log_prob(as_dataset(X), params), dim=1)

    def score(self, X) -> float:
        """Mean log-likelihood."""
        return float(self.score_samples(X).mean())

    def predict_proba(self, X) -> torch.Tensor:
        """Posterior responsibilities (N, K)."""
        resp, _ = expectation_step(X, self._fitted_params())
        return resp

    def predict(self, X) -> torch.Tensor:
        return torch.argmax(self.predict_proba(X), dim=1)

    def fit_predict(self, X) -> torch.Tensor:
        return self.fit(X).predict(X)
