from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed
from scipy.special import expit, logsumexp

from .clusters import ClusterState, ClusterView
from .utils import chunk_slices

__names__ = [
    "chunk_rng",
    "sample_assignments",
    "sample_subassignments",
    "mixture_log_likelihood",
    "sample_weights",
    "sample_subweights",
    "resample_weights",
    "resample_params",
]

# phase tags mixed into the per-chunk seeds
ASSIGN_PHASE = 0
SUBASSIGN_PHASE = 1


def chunk_rng(entropy: int, key: Sequence[int]) -> np.random.Generator:
    """
    Independent generator for one unit of parallel work.

    The stream depends only on the run entropy and ``key`` (e.g. iteration,
    phase, chunk index), never on which worker executes the chunk.
    """
    return np.random.default_rng(
        np.random.SeedSequence(entropy=entropy, spawn_key=tuple(int(k) for k in key))
    )


def _log_joint(X: np.ndarray, view: ClusterView) -> np.ndarray:
    """``log w_k + log p_k(x)`` for every point and cluster, shape (n, K)."""
    logp = np.empty((X.shape[0], len(view)))
    for k, params in enumerate(view.params):
        logp[:, k] = view.log_weights[k] + params.logpdf(X)
    return logp


def _assign_chunk(
    X: np.ndarray, view: ClusterView, rng: np.random.Generator, argmax: bool
) -> Tuple[np.ndarray, float]:
    logp = _log_joint(X, view)
    log_norm = logsumexp(logp, axis=1)
    if argmax:
        idx = logp.argmax(axis=1)
    else:
        cdf = np.cumsum(np.exp(logp - log_norm[:, np.newaxis]), axis=1)
        u = rng.random((X.shape[0], 1)) * cdf[:, -1:]
        idx = (cdf > u).argmax(axis=1)
    return view.ids[idx], float(log_norm.sum())


def sample_assignments(
    points: np.ndarray,
    view: ClusterView,
    entropy: int,
    iteration: int,
    chunk_size: int = 4096,
    n_jobs: Optional[int] = 1,
    argmax: bool = False,
) -> Tuple[np.ndarray, float]:
    """
    Draw a cluster label for every point.

    For each point the categorical distribution over active clusters is
    proportional to ``w_k p_k(x)``, with ``p_k`` the component density frozen
    in ``view``. Chunks of points are processed
    independently and write disjoint slices of the result.

    Parameters
    ----------
    points : np.ndarray (n, d)
    view : ClusterView
        Frozen weights and component densities.
    entropy : int
        Run entropy, see :func:`chunk_rng`.
    iteration : int
        Iteration number, mixed into the per-chunk seeds.
    chunk_size : int, default=4096
    n_jobs : int or None, default=1
        Number of joblib workers (threading backend).
    argmax : bool, default=False
        Take the most probable cluster instead of sampling.

    Returns
    -------
    labels : np.ndarray (n,)
        Cluster ids.
    log_likelihood : float
        Mixture log-likelihood of the data under ``view``.
    """
    slices = chunk_slices(points.shape[0], chunk_size)
    results = Parallel(n_jobs=n_jobs, backend="threading")(
        delayed(_assign_chunk)(
            points[s], view, chunk_rng(entropy, (iteration, ASSIGN_PHASE, i)), argmax
        )
        for i, s in enumerate(slices)
    )
    labels = np.concatenate([r[0] for r in results])
    return labels, float(sum(r[1] for r in results))


def _subassign_chunk(
    X: np.ndarray, labels: np.ndarray, view: ClusterView, rng: np.random.Generator
) -> np.ndarray:
    rows = view.index[labels]
    u = rng.random(X.shape[0])
    out = np.zeros(X.shape[0], dtype=np.int8)
    for k in np.unique(rows):
        mask = rows == k
        p0, p1 = view.sub_params[k]
        l0 = view.sub_log_weights[k, 0] + p0.logpdf(X[mask])
        l1 = view.sub_log_weights[k, 1] + p1.logpdf(X[mask])
        out[mask] = u[mask] < expit(l1 - l0)
    return out


def sample_subassignments(
    points: np.ndarray,
    labels: np.ndarray,
    view: ClusterView,
    entropy: int,
    iteration: int,
    chunk_size: int = 4096,
    n_jobs: Optional[int] = 1,
) -> np.ndarray:
    """
    Draw the half (0 or 1) of every point within its current cluster.

    Must run on a completed label array: every label has to be an active
    id of ``view``.

    Returns
    -------
    np.ndarray (n,) of int8
    """
    labels = np.asarray(labels)
    if labels.size and (
        labels.min() < 0 or labels.max() >= view.index.shape[0] or np.any(view.index[labels] < 0)
    ):
        raise ValueError("Every label must refer to a cluster of the view.")
    slices = chunk_slices(points.shape[0], chunk_size)
    results = Parallel(n_jobs=n_jobs, backend="threading")(
        delayed(_subassign_chunk)(
            points[s], labels[s], view, chunk_rng(entropy, (iteration, SUBASSIGN_PHASE, i))
        )
        for i, s in enumerate(slices)
    )
    return np.concatenate(results)


def mixture_log_likelihood(points: np.ndarray, view: ClusterView) -> float:
    """Log-likelihood of ``points`` under the mixture frozen in ``view``."""
    return float(logsumexp(_log_joint(points, view), axis=1).sum())


def sample_weights(
    counts: Sequence[int], alpha: float, rng: np.random.Generator
) -> Tuple[np.ndarray, float]:
    """
    Mixture weights from ``Dirichlet(n_1, ..., n_K, alpha)``.

    The last coordinate is the stick-breaking residual mass reserved for
    clusters not yet instantiated.

    Returns
    -------
    weights : np.ndarray (K,)
    residual : float
    """
    counts = np.asarray(counts, dtype=float)
    if np.any(counts <= 0):
        raise ValueError("Every cluster must hold at least one point.")
    draw = rng.dirichlet(np.append(counts, alpha))
    return draw[:-1], float(draw[-1])


def sample_subweights(n0: int, n1: int, alpha: float, rng: np.random.Generator) -> np.ndarray:
    """Weights of the two halves from ``Dirichlet(alpha/2 + n0, alpha/2 + n1)``."""
    return rng.dirichlet([0.5 * alpha + n0, 0.5 * alpha + n1])


def resample_weights(state: ClusterState, alpha: float, rng: np.random.Generator) -> None:
    clusters = list(state)
    weights, residual = sample_weights([c.n for c in clusters], alpha, rng)
    for c, w in zip(clusters, weights):
        c.weight = float(w)
        w0, w1 = sample_subweights(c.subclusters[0].n, c.subclusters[1].n, alpha, rng)
        c.subclusters[0].weight = float(w0)
        c.subclusters[1].weight = float(w1)
    state.residual_weight = residual


def resample_params(state: ClusterState, rng: np.random.Generator, sample: bool = False) -> None:
    """
    Refresh the component densities used by the next assignment passes.

    By default every cluster and half gets its Student-t posterior predictive.
    With ``sample=True`` Gaussian parameters are drawn from the posteriors
    instead.
    """
    for c in state:
        c.params = c.posterior.sample(rng) if sample else c.posterior.predictive()
        for sub in c.subclusters:
            sub.params = sub.posterior.sample(rng) if sample else sub.posterior.predictive()
