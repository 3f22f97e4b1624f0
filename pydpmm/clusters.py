from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple, Union

import numpy as np

from .distributions import GaussianParams, NIWPosterior, NIWPrior, StudentT
from .stats import SufficientStats, reduce

__names__ = ["SubCluster", "Cluster", "ClusterState", "ClusterView", "ClusterSummary"]

# density a component is evaluated with during assignment
ComponentDensity = Union[GaussianParams, StudentT]


class SubCluster:
    """One of the two halves of a cluster, used to evaluate split proposals."""

    def __init__(self, stats: SufficientStats, posterior: NIWPosterior, weight: float = 0.5):
        self.stats = stats
        self.posterior = posterior
        self.weight = weight
        self.params: Optional[ComponentDensity] = None

    @property
    def n(self) -> int:
        return self.stats.n


class Cluster:
    """
    A mixture component and its two sub-clusters.

    Parameters
    ----------
    id : int
        Stable id, the value stored in the label array for its points.
    stats : SufficientStats
        Statistics of all points of the cluster.
    posterior : NIWPosterior
    subclusters : tuple of two SubCluster
        Halves 0 and 1. Their statistics sum to ``stats``.
    weight : float
        Mixture weight.
    age : int
        Iterations since the halves were (re)initialised.
    """

    def __init__(
        self,
        id: int,
        stats: SufficientStats,
        posterior: NIWPosterior,
        subclusters: Tuple[SubCluster, SubCluster],
        weight: float = 0.0,
        age: int = 0,
    ):
        self.id = id
        self.stats = stats
        self.posterior = posterior
        self.subclusters = subclusters
        self.weight = weight
        self.age = age
        self.params: Optional[ComponentDensity] = None

    @property
    def n(self) -> int:
        return self.stats.n

    def __repr__(self) -> str:
        return f"Cluster(id={self.id}, n={self.n}, weight={self.weight:.4f}, age={self.age})"


@dataclass(frozen=True, eq=False)
class ClusterSummary:
    """Read-only description of an active cluster handed out to callers."""

    id: int
    weight: float
    count: int
    mean: np.ndarray
    cov: np.ndarray


@dataclass(frozen=True, eq=False)
class ClusterView:
    """
    Immutable snapshot of the cluster state for the data-parallel phases.

    Attributes
    ----------
    ids : np.ndarray (K,)
        Active cluster ids in ascending order.
    log_weights : np.ndarray (K,)
    params : tuple of GaussianParams or StudentT
    sub_log_weights : np.ndarray (K, 2)
    sub_params : tuple of pairs of GaussianParams or StudentT
    index : np.ndarray
        ``index[cluster_id]`` is the row of that cluster in the arrays above,
        or -1 for ids that are not active.
    """

    ids: np.ndarray
    log_weights: np.ndarray
    params: Tuple[ComponentDensity, ...]
    sub_log_weights: np.ndarray
    sub_params: Tuple[Tuple[ComponentDensity, ComponentDensity], ...]
    index: np.ndarray

    def __len__(self) -> int:
        return self.ids.shape[0]


class ClusterState:
    """
    Arena of cluster records indexed by stable id.

    Retired ids go to a free-list and are handed out again by later
    allocations, lowest first. Ids retired during a move pass are only
    released by :meth:`release_retired`, so a pass never sees an id reused.

    Parameters
    ----------
    prior : NIWPrior
        Prior shared by every cluster and sub-cluster.
    """

    def __init__(self, prior: NIWPrior):
        self.prior = prior
        self._slots: List[Optional[Cluster]] = []
        self._free: List[int] = []
        self._retired: List[int] = []
        self.residual_weight = 0.0

    @property
    def dim(self) -> int:
        return self.prior.dim

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def __len__(self) -> int:
        return sum(c is not None for c in self._slots)

    def __iter__(self) -> Iterator[Cluster]:
        return (c for c in self._slots if c is not None)

    def __contains__(self, cid: int) -> bool:
        return 0 <= cid < len(self._slots) and self._slots[cid] is not None

    def get(self, cid: int) -> Cluster:
        if cid not in self:
            raise KeyError(f"No active cluster with id {cid}.")
        return self._slots[cid]

    def active_ids(self) -> List[int]:
        return [c.id for c in self]

    def _next_id(self) -> int:
        if self._free:
            return heapq.heappop(self._free)
        self._slots.append(None)
        return len(self._slots) - 1

    def _make_subclusters(
        self, stats0: SufficientStats, stats1: SufficientStats
    ) -> Tuple[SubCluster, SubCluster]:
        return (
            SubCluster(stats0, self.prior.posterior(stats0)),
            SubCluster(stats1, self.prior.posterior(stats1)),
        )

    def allocate(self, stats0: SufficientStats, stats1: SufficientStats) -> Cluster:
        """Create a cluster from the statistics of its two halves."""
        cid = self._next_id()
        stats = stats0 + stats1
        cluster = Cluster(
            cid, stats, self.prior.posterior(stats), self._make_subclusters(stats0, stats1)
        )
        self._slots[cid] = cluster
        return cluster

    def retire(self, cid: int) -> Cluster:
        cluster = self.get(cid)
        self._slots[cid] = None
        self._retired.append(cid)
        return cluster

    def release_retired(self) -> None:
        for cid in self._retired:
            heapq.heappush(self._free, cid)
        self._retired.clear()

    def set_statistics(
        self, cid: int, stats0: SufficientStats, stats1: SufficientStats, reset_age: bool = False
    ) -> None:
        cluster = self.get(cid)
        cluster.stats = stats0 + stats1
        cluster.posterior = self.prior.posterior(cluster.stats)
        weights = [s.weight for s in cluster.subclusters]
        cluster.subclusters = self._make_subclusters(stats0, stats1)
        for sub, w in zip(cluster.subclusters, weights):
            sub.weight = w
        if reset_age:
            cluster.age = 0

    def update_statistics(self, reduced: Dict[int, Tuple[SufficientStats, SufficientStats]]) -> None:
        """Install freshly reduced per-half statistics for every active cluster."""
        for cid, (s0, s1) in reduced.items():
            self.set_statistics(cid, s0, s1)

    def counts(self) -> Dict[int, int]:
        return {c.id: c.n for c in self}

    def snapshot(self) -> ClusterView:
        """
        Freeze weights and component densities into a :class:`ClusterView`.

        Raises
        ------
        RuntimeError
            If a cluster has no component density yet.
        """
        clusters = list(self)
        if any(c.params is None or any(s.params is None for s in c.subclusters) for c in clusters):
            raise RuntimeError("Component densities must be set before taking a snapshot.")
        ids = np.array([c.id for c in clusters], dtype=int)
        index = np.full(max(self.capacity, 1), -1, dtype=int)
        index[ids] = np.arange(ids.size)
        with np.errstate(divide="ignore"):
            log_weights = np.log(np.array([c.weight for c in clusters], dtype=float))
            sub_log_weights = np.log(
                np.array([[s.weight for s in c.subclusters] for c in clusters], dtype=float)
            ).reshape(-1, 2)
        return ClusterView(
            ids=ids,
            log_weights=log_weights,
            params=tuple(c.params for c in clusters),
            sub_log_weights=sub_log_weights,
            sub_params=tuple((c.subclusters[0].params, c.subclusters[1].params) for c in clusters),
            index=index,
        )

    def summaries(self) -> List[ClusterSummary]:
        out = []
        for c in self:
            expected = c.posterior.expected_params()
            out.append(
                ClusterSummary(
                    id=c.id,
                    weight=float(c.weight),
                    count=int(c.n),
                    mean=expected.mean,
                    cov=expected.cov,
                )
            )
        return out

    def check_consistency(
        self, points: np.ndarray, labels: np.ndarray, sub_labels: np.ndarray
    ) -> None:
        """
        Verify the bookkeeping of every active cluster against the label arrays.

        Sub-cluster statistics must sum to the cluster's statistics, and the
        cluster's statistics must match the points labelled with its id.

        Raises
        ------
        AssertionError
            On any mismatch. These are defects, not user errors.
        """
        assert np.all(np.isin(labels, self.active_ids())), "label refers to an inactive cluster"
        for c in self:
            s0, s1 = (s.stats for s in c.subclusters)
            assert (s0 + s1).allclose(c.stats), f"halves of cluster {c.id} do not sum to it"
            direct = reduce(points, labels, sub_labels, c.id)
            assert direct.allclose(c.stats), f"statistics of cluster {c.id} are stale"
            assert reduce(points, labels, sub_labels, c.id, 0).allclose(s0), (
                f"statistics of half 0 of cluster {c.id} are stale"
            )
