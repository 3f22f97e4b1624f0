from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed

from .utils import chunk_slices

__names__ = [
    "SufficientStats",
    "reduce",
    "reduce_grouped",
    "parallel_reduce",
]


@dataclass(frozen=True, eq=False)
class SufficientStats:
    """
    Sufficient statistics of a Gaussian point set.

    Parameters
    ----------
    n : int
        Number of points.
    x_sum : np.ndarray (d,)
        Sum of the points.
    xx_sum : np.ndarray (d, d)
        Sum of the outer products ``x x^T``.

    Notes
    -----
    Statistics form a commutative monoid under :meth:`combine`, with
    :meth:`zeros` as identity, so disjoint chunks of a point set can be
    reduced independently and combined in any order.
    """

    n: int
    x_sum: np.ndarray
    xx_sum: np.ndarray

    @classmethod
    def zeros(cls, dim: int) -> "SufficientStats":
        return cls(0, np.zeros(dim), np.zeros((dim, dim)))

    @classmethod
    def from_points(cls, X: np.ndarray) -> "SufficientStats":
        X = np.atleast_2d(np.asarray(X, dtype=float))
        return cls(int(X.shape[0]), X.sum(axis=0), X.T @ X)

    @property
    def dim(self) -> int:
        return self.x_sum.shape[0]

    def combine(self, other: "SufficientStats") -> "SufficientStats":
        if other.dim != self.dim:
            raise ValueError(
                f"Cannot combine statistics of dimension {self.dim} and {other.dim}."
            )
        return SufficientStats(
            self.n + other.n, self.x_sum + other.x_sum, self.xx_sum + other.xx_sum
        )

    __add__ = combine

    def mean(self) -> np.ndarray:
        """Sample mean; NaN for an empty set."""
        if self.n == 0:
            return np.full(self.dim, np.nan)
        return self.x_sum / self.n

    def covariance(self) -> np.ndarray:
        """Maximum-likelihood covariance; NaN for an empty set."""
        if self.n == 0:
            return np.full((self.dim, self.dim), np.nan)
        mu = self.x_sum / self.n
        return self.xx_sum / self.n - np.outer(mu, mu)

    def allclose(self, other: "SufficientStats", rtol: float = 1e-9, atol: float = 1e-8) -> bool:
        return (
            self.n == other.n
            and np.allclose(self.x_sum, other.x_sum, rtol=rtol, atol=atol)
            and np.allclose(self.xx_sum, other.xx_sum, rtol=rtol, atol=atol)
        )


def reduce(
    points: np.ndarray,
    labels: np.ndarray,
    sub_labels: Optional[np.ndarray],
    target_cluster: int,
    target_sub: Optional[int] = None,
) -> SufficientStats:
    """
    Reduce the points of one cluster (or one of its halves) into statistics.

    Parameters
    ----------
    points : np.ndarray (n, d)
    labels : np.ndarray (n,)
        Cluster id of every point.
    sub_labels : np.ndarray (n,) or None
        Half (0 or 1) of every point. Only read when ``target_sub`` is given.
    target_cluster : int
        Cluster id to select.
    target_sub : {0, 1} or None
        Restrict the selection to one half of the cluster.

    Returns
    -------
    SufficientStats
    """
    mask = labels == target_cluster
    if target_sub is not None:
        if sub_labels is None:
            raise ValueError("`sub_labels` is required when `target_sub` is given.")
        mask &= sub_labels == target_sub
    return SufficientStats.from_points(points[mask]) if mask.any() else SufficientStats.zeros(
        points.shape[1]
    )


def reduce_grouped(
    points: np.ndarray, codes: np.ndarray, n_groups: int
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Reduce every group of a partition at once.

    Parameters
    ----------
    points : np.ndarray (n, d)
    codes : np.ndarray (n,)
        Group index in ``[0, n_groups)`` of every point.
    n_groups : int

    Returns
    -------
    counts : np.ndarray (n_groups,)
    sums : np.ndarray (n_groups, d)
    outer_sums : np.ndarray (n_groups, d, d)
    """
    dim = points.shape[1]
    counts = np.bincount(codes, minlength=n_groups)
    sums = np.zeros((n_groups, dim))
    outer_sums = np.zeros((n_groups, dim, dim))
    np.add.at(sums, codes, points)
    np.add.at(outer_sums, codes, np.einsum("ni,nj->nij", points, points))
    return counts, sums, outer_sums


def parallel_reduce(
    points: np.ndarray,
    labels: np.ndarray,
    sub_labels: np.ndarray,
    cluster_ids: Sequence[int],
    chunk_size: int = 4096,
    n_jobs: Optional[int] = 1,
) -> Dict[int, Tuple[SufficientStats, SufficientStats]]:
    """
    Per-cluster, per-half statistics computed over disjoint point chunks.

    Each worker reduces its own index range into private arrays; the partial
    results are then combined sequentially in chunk order. No accumulator is
    shared between workers.

    Parameters
    ----------
    points : np.ndarray (n, d)
    labels : np.ndarray (n,)
        Cluster id of every point; every id must be in ``cluster_ids``.
    sub_labels : np.ndarray (n,)
        Half (0 or 1) of every point.
    cluster_ids : sequence of int
        Active cluster ids.
    chunk_size : int, default=4096
    n_jobs : int or None, default=1
        Number of joblib workers (threading backend).

    Returns
    -------
    dict
        ``{cluster_id: (stats_half0, stats_half1)}``.
    """
    ids = np.asarray(list(cluster_ids), dtype=int)
    dim = points.shape[1]
    if ids.size == 0:
        return {}
    lookup = np.full(int(ids.max()) + 1, -1, dtype=int)
    lookup[ids] = np.arange(ids.size)
    labels = np.asarray(labels)
    if labels.size and (labels.min() < 0 or labels.max() >= lookup.size):
        raise ValueError("Every label must refer to an active cluster.")
    codes = 2 * lookup[labels] + sub_labels.astype(int)
    if np.any(codes < 0):
        raise ValueError("Every label must refer to an active cluster.")
    n_groups = 2 * ids.size

    slices = chunk_slices(points.shape[0], chunk_size)
    partials = Parallel(n_jobs=n_jobs, backend="threading")(
        delayed(reduce_grouped)(points[s], codes[s], n_groups) for s in slices
    )

    counts = np.zeros(n_groups, dtype=int)
    sums = np.zeros((n_groups, dim))
    outer_sums = np.zeros((n_groups, dim, dim))
    for c, s, o in partials:
        counts += c
        sums += s
        outer_sums += o

    out = {}
    for k, cid in enumerate(ids):
        halves = tuple(
            SufficientStats(int(counts[2 * k + h]), sums[2 * k + h], outer_sums[2 * k + h])
            for h in (0, 1)
        )
        out[int(cid)] = halves
    return out
