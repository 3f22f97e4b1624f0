from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.distance import cdist
from scipy.special import gammaln

from .clusters import ClusterState
from .distributions import NIWPrior
from .stats import SufficientStats

__names__ = [
    "Move",
    "MoveReport",
    "log_split_ratio",
    "log_merge_ratio",
    "acceptance_probability",
    "merge_candidates",
    "random_halves",
    "split_cluster",
    "merge_clusters",
    "propose_moves",
]


@dataclass(frozen=True)
class Move:
    """An accepted structural change."""

    kind: str  # "split" or "merge"
    sources: Tuple[int, ...]
    results: Tuple[int, ...]
    log_ratio: float


@dataclass
class MoveReport:
    """Outcome of one split/merge pass."""

    moves: List[Move] = field(default_factory=list)
    removed: List[int] = field(default_factory=list)
    n_split_proposals: int = 0
    n_merge_proposals: int = 0
    saturated: bool = False

    @property
    def n_splits(self) -> int:
        return sum(m.kind == "split" for m in self.moves)

    @property
    def n_merges(self) -> int:
        return sum(m.kind == "merge" for m in self.moves)


def log_split_ratio(
    prior: NIWPrior, stats0: SufficientStats, stats1: SufficientStats, alpha: float
) -> float:
    r"""
    Log Hastings ratio for splitting a cluster into its two halves.

    $$ \log\alpha + \log\Gamma(n_0) + \log\Gamma(n_1) - \log\Gamma(n)
       + L(C_0) + L(C_1) - L(C) $$

    where ``L`` is the log marginal likelihood under ``prior``.

    Raises
    ------
    np.linalg.LinAlgError
        If a posterior scale matrix is not positive definite.
    """
    stats = stats0 + stats1
    lml = prior.log_marginal_likelihood
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(
            lml(stats0)
            + lml(stats1)
            - lml(stats)
            + np.log(alpha)
            + gammaln(stats0.n)
            + gammaln(stats1.n)
            - gammaln(stats.n)
        )


def log_merge_ratio(
    prior: NIWPrior, stats_a: SufficientStats, stats_b: SufficientStats, alpha: float
) -> float:
    """Log Hastings ratio for merging two clusters; the reverse of :func:`log_split_ratio`."""
    return -log_split_ratio(prior, stats_a, stats_b, alpha)


def acceptance_probability(log_ratio: float) -> float:
    """
    ``min(1, exp(log_ratio))``.

    Non-finite ratios (NaN or infinite) give probability 0.
    """
    if not np.isfinite(log_ratio):
        return 0.0
    return float(np.exp(min(0.0, log_ratio)))


def _guarded_ratio(fn: Callable[..., float], *args) -> float:
    try:
        return fn(*args)
    except np.linalg.LinAlgError:
        return float("nan")


def merge_candidates(
    ids: Sequence[int], means: np.ndarray, radius: Optional[float] = None
) -> List[Tuple[int, int]]:
    """
    Cluster pairs worth proposing for a merge.

    A pair qualifies when one cluster is the other's nearest centroid, or
    when the two centroids lie within ``radius`` (Euclidean). With
    ``radius=None`` only nearest-centroid pairs are returned.

    Parameters
    ----------
    ids : sequence of int
        Cluster ids.
    means : np.ndarray (K, d)
        Centroid of every cluster in ``ids``.
    radius : float or None

    Returns
    -------
    list of (int, int)
        Sorted pairs ``(a, b)`` with ``a < b``.
    """
    ids = list(ids)
    if len(ids) < 2:
        return []
    dist = cdist(means, means)
    np.fill_diagonal(dist, np.inf)
    pairs = set()
    for i, j in enumerate(dist.argmin(axis=1)):
        pairs.add((min(i, int(j)), max(i, int(j))))
    if radius is not None:
        ii, jj = np.nonzero(np.triu(dist <= radius, k=1))
        pairs.update(zip(ii.tolist(), jj.tolist()))
    return sorted((min(ids[i], ids[j]), max(ids[i], ids[j])) for i, j in pairs)


def random_halves(
    X: np.ndarray, rng: np.random.Generator
) -> Tuple[np.ndarray, SufficientStats, SufficientStats]:
    """
    Randomly re-initialise the two halves of a point set.

    Two distinct points are drawn as seeds and every point joins the half of
    its nearer seed. Sets of fewer than two points are split at random.

    Returns
    -------
    sub_labels : np.ndarray (n,) of int8
    stats0, stats1 : SufficientStats
    """
    n, dim = X.shape
    if n < 2:
        sub = rng.integers(0, 2, size=n).astype(np.int8)
    else:
        seeds = X[rng.choice(n, size=2, replace=False)]
        dist = cdist(X, seeds, metric="sqeuclidean")
        sub = (dist[:, 1] < dist[:, 0]).astype(np.int8)
    halves = []
    for h in (0, 1):
        Xh = X[sub == h]
        halves.append(SufficientStats.from_points(Xh) if Xh.shape[0] else SufficientStats.zeros(dim))
    return sub, halves[0], halves[1]


def split_cluster(
    state: ClusterState,
    points: np.ndarray,
    labels: np.ndarray,
    sub_labels: np.ndarray,
    cid: int,
    rng: np.random.Generator,
) -> Tuple[int, int]:
    """
    Replace cluster ``cid`` by two clusters made of its halves.

    Both new clusters get fresh ids and freshly randomised halves. The label
    arrays are updated in place. ``cid`` is retired.

    Returns
    -------
    (int, int)
        Ids of the clusters built from half 0 and half 1.
    """
    state.retire(cid)
    mask = labels == cid
    # both halves are selected before any sub-label is rewritten
    masks = [mask & (sub_labels == h) for h in (0, 1)]
    new_ids = []
    for m in masks:
        sub, s0, s1 = random_halves(points[m], rng)
        cluster = state.allocate(s0, s1)
        labels[m] = cluster.id
        sub_labels[m] = sub
        new_ids.append(cluster.id)
    return new_ids[0], new_ids[1]


def merge_clusters(
    state: ClusterState,
    labels: np.ndarray,
    sub_labels: np.ndarray,
    a: int,
    b: int,
) -> int:
    """
    Collapse clusters ``a`` and ``b`` into the one with the lower id.

    The merged cluster's halves are set to the former clusters (lower id as
    half 0), so a later split proposal can restore the same boundary. The
    label arrays are updated in place and the higher id is retired.

    Returns
    -------
    int
        Id of the merged cluster.
    """
    keep, drop = (a, b) if a < b else (b, a)
    stats_keep = state.get(keep).stats
    stats_drop = state.get(drop).stats
    mask_keep = labels == keep
    mask_drop = labels == drop
    sub_labels[mask_keep] = 0
    sub_labels[mask_drop] = 1
    labels[mask_drop] = keep
    state.retire(drop)
    state.set_statistics(keep, stats_keep, stats_drop, reset_age=True)
    return keep


def propose_moves(
    state: ClusterState,
    points: np.ndarray,
    labels: np.ndarray,
    sub_labels: np.ndarray,
    alpha: float,
    rng: np.random.Generator,
    burnout_period: int = 5,
    max_clusters: Optional[int] = None,
    merge_neighbor_radius: Optional[float] = None,
    allow_moves: bool = True,
) -> MoveReport:
    """
    One split/merge pass over the cluster state.

    Empty clusters are retired first. Every proposal is then evaluated on the
    statistics as they stand at the start of the pass: splits first, then
    merges over the candidate pairs in random order. A cluster takes part in
    at most one accepted move per pass. Accepted moves are applied at the
    end; ids retired by the pass become reusable only afterwards.

    Parameters
    ----------
    state : ClusterState
    points : np.ndarray (n, d)
    labels, sub_labels : np.ndarray (n,)
        Updated in place.
    alpha : float
        Dirichlet process concentration.
    rng : np.random.Generator
    burnout_period : int, default=5
        Minimum age of a cluster's halves before it may be split.
    max_clusters : int or None
        No split is accepted once the cluster count would exceed this.
    merge_neighbor_radius : float or None
        See :func:`merge_candidates`.
    allow_moves : bool, default=True
        When False only empty clusters are retired.

    Returns
    -------
    MoveReport
    """
    report = MoveReport()
    for c in list(state):
        if c.n == 0:
            state.retire(c.id)
            report.removed.append(c.id)
    if not allow_moves:
        state.release_retired()
        return report

    prior = state.prior
    snapshot = {c.id: tuple(s.stats for s in c.subclusters) for c in state}
    cluster_stats = {c.id: c.stats for c in state}
    ages = {c.id: c.age for c in state}
    touched = set()

    splits = []
    for cid in sorted(snapshot):
        s0, s1 = snapshot[cid]
        if ages[cid] < burnout_period or s0.n == 0 or s1.n == 0:
            continue
        if max_clusters is not None and len(snapshot) + len(splits) >= max_clusters:
            report.saturated = True
            continue
        report.n_split_proposals += 1
        log_h = _guarded_ratio(log_split_ratio, prior, s0, s1, alpha)
        if rng.random() < acceptance_probability(log_h):
            splits.append((cid, log_h))
            touched.add(cid)

    merges = []
    remaining = [cid for cid in sorted(snapshot) if cid not in touched]
    if len(remaining) > 1:
        means = np.array([state.get(cid).posterior.mu for cid in remaining])
        candidates = merge_candidates(remaining, means, merge_neighbor_radius)
        for k in rng.permutation(len(candidates)):
            a, b = candidates[k]
            if a in touched or b in touched:
                continue
            report.n_merge_proposals += 1
            log_h = _guarded_ratio(log_merge_ratio, prior, cluster_stats[a], cluster_stats[b], alpha)
            if rng.random() < acceptance_probability(log_h):
                merges.append((a, b, log_h))
                touched.update((a, b))

    for cid, log_h in splits:
        new_ids = split_cluster(state, points, labels, sub_labels, cid, rng)
        report.moves.append(Move("split", (cid,), new_ids, log_h))
    for a, b, log_h in merges:
        keep = merge_clusters(state, labels, sub_labels, a, b)
        report.moves.append(Move("merge", (a, b), (keep,), log_h))

    state.release_retired()
    return report
