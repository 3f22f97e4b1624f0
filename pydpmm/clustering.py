from __future__ import annotations

import threading
import time
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.cluster.vq import kmeans2
from scipy.special import logsumexp

from .callback import Callback
from .clusters import ClusterState, ClusterSummary
from .config import ConfigurationError, DPMMConfig
from .distributions import NIWPrior
from .moves import Move, propose_moves, random_halves
from .samplers import (
    mixture_log_likelihood,
    resample_params,
    resample_weights,
    sample_assignments,
    sample_subassignments,
)
from .stats import parallel_reduce
from .utils import check_points

__names__ = [
    "SamplerPhase",
    "IterationSummary",
    "SamplerResult",
    "SplitMergeSampler",
    "DPMM",
]


class SamplerPhase(Enum):
    INITIALIZING = "initializing"
    ASSIGNING = "assigning"
    SUBASSIGNING = "subassigning"
    PROPOSING_MOVES = "proposing_moves"
    REWEIGHTING = "reweighting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class IterationSummary:
    """
    One entry of the model trace.

    ``log_likelihood`` scores the data under the state that entered the
    iteration, before its assignment pass. ``n_clusters`` counts the clusters
    left after the iteration's moves, so the two fields describe successive
    states.
    """

    iteration: int
    log_likelihood: float
    n_clusters: int
    moves: Tuple[Move, ...]
    n_removed: int
    saturated: bool
    elapsed: float

    @property
    def n_splits(self) -> int:
        return sum(m.kind == "split" for m in self.moves)

    @property
    def n_merges(self) -> int:
        return sum(m.kind == "merge" for m in self.moves)


@dataclass(frozen=True, eq=False)
class SamplerResult:
    """
    State handed back by :meth:`SplitMergeSampler.run_to_completion`.

    ``log_likelihood`` is the mixture log-likelihood of the data under the
    component densities of the returned state, and ``iteration`` the number
    of completed iterations that led to it.
    """

    labels: np.ndarray
    clusters: Tuple[ClusterSummary, ...]
    trace: Tuple[IterationSummary, ...]
    stop_reason: str
    iteration: int
    log_likelihood: float


class SplitMergeSampler:
    """
    Parallel split/merge sampler for a Dirichlet process mixture of Gaussians.

    Every iteration runs the fixed cycle

    1. assignment: a cluster label for every point (data-parallel),
    2. sub-assignment: a half for every point within its cluster (data-parallel),
    3. split/merge proposals on the reduced statistics (single-threaded),
    4. weights and parameters re-drawn from their posteriors (single-threaded).

    The number of clusters is inferred: it changes only through accepted
    splits, merges and the removal of emptied clusters.

    Parameters
    ----------
    points : array-like (n, d)
        Data, read-only for the lifetime of the sampler.
    config : DPMMConfig, mapping or None
        Run settings; ``None`` uses the defaults.
    callback : Callback, optional
        Hooks called around every iteration.

    Raises
    ------
    ConfigurationError
        For invalid settings or data, before any sampling happens.

    Examples
    --------
        X, y = make_blobs([(0, 0), (10, 0), (5, 10)], 100, random_seed=0)
        sampler = SplitMergeSampler(X, DPMMConfig(max_iterations=50, random_seed=1))
        result = sampler.run_to_completion()
        sampler.cluster_count()
    """

    def __init__(
        self,
        points: Union[np.ndarray, List],
        config: Optional[Union[DPMMConfig, Mapping[str, Any]]] = None,
        callback: Optional[Callback] = None,
    ):
        if config is None:
            config = DPMMConfig()
        elif isinstance(config, Mapping):
            config = DPMMConfig.from_dict(config)
        elif not isinstance(config, DPMMConfig):
            raise ConfigurationError("`config` must be a DPMMConfig, a mapping or None.")
        try:
            X = check_points(points).copy()
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        if config.initial_cluster_count > X.shape[0]:
            raise ConfigurationError(
                "`initial_cluster_count` cannot exceed the number of points."
            )
        X.setflags(write=False)

        self.points = X
        self.config = config
        self.callback = callback if callback is not None else Callback()
        self.prior: NIWPrior = config.build_prior(X)
        self.state = ClusterState(self.prior)

        seed_seq = np.random.SeedSequence(config.random_seed)
        self._entropy = seed_seq.entropy
        self._rng = np.random.default_rng(seed_seq)

        self.labels = np.zeros(X.shape[0], dtype=int)
        self.sub_labels = np.zeros(X.shape[0], dtype=np.int8)
        self.iteration = 0
        self.stop_reason: Optional[str] = None
        self._trace: List[IterationSummary] = []
        self._cancelled = threading.Event()
        self._idle_iterations = 0
        self._warned_saturation = False
        self._best: Optional[SamplerResult] = None
        self._best_log_likelihood = -np.inf

        self.phase = SamplerPhase.INITIALIZING
        self._initialize()
        self.phase = SamplerPhase.ASSIGNING

    ##################
    # Initialisation #
    ##################

    def _initial_partition(self) -> np.ndarray:
        X = self.points
        k = self.config.initial_cluster_count
        if k == 1:
            return np.zeros(X.shape[0], dtype=int)
        if self.config.init == "kmeans":
            _, labels = kmeans2(X, k, minit="++", seed=self._rng)
            return labels
        # balanced random partition, no cluster starts empty
        return self._rng.permutation(np.arange(X.shape[0]) % k)

    def _initialize(self) -> None:
        X = self.points
        partition = self._initial_partition()
        for k in np.unique(partition):
            mask = partition == k
            sub, s0, s1 = random_halves(X[mask], self._rng)
            cluster = self.state.allocate(s0, s1)
            self.labels[mask] = cluster.id
            self.sub_labels[mask] = sub
        if self.config.check_invariants:
            self.state.check_consistency(X, self.labels, self.sub_labels)
        resample_weights(self.state, self.config.concentration_parameter, self._rng)
        resample_params(self.state, self._rng, sample=self.config.assignment_params == "sampled")

    #############
    # Iteration #
    #############

    def step(self) -> IterationSummary:
        """
        Run one full phase cycle and append its summary to the trace.

        Raises
        ------
        RuntimeError
            If the sampler has already stopped.
        """
        if self.phase is SamplerPhase.STOPPED:
            raise RuntimeError(f"Sampler has stopped ({self.stop_reason}).")
        cfg = self.config
        X = self.points
        i = self.iteration
        started = time.perf_counter()
        self.callback.before_step(i)
        argmax = i >= cfg.max_iterations - cfg.argmax_sample_stop

        self.phase = SamplerPhase.ASSIGNING
        view = self.state.snapshot()
        labels, log_likelihood = sample_assignments(
            X, view, self._entropy, i, cfg.chunk_size, cfg.n_jobs, argmax=argmax
        )
        if log_likelihood > self._best_log_likelihood:
            # the score belongs to the state entering this iteration
            self._best_log_likelihood = log_likelihood
            self._best = self._result("best", log_likelihood)

        self.phase = SamplerPhase.SUBASSIGNING
        sub_labels = sample_subassignments(
            X, labels, view, self._entropy, i, cfg.chunk_size, cfg.n_jobs
        )
        reduced = parallel_reduce(X, labels, sub_labels, view.ids, cfg.chunk_size, cfg.n_jobs)
        self.labels, self.sub_labels = labels, sub_labels
        self.state.update_statistics(reduced)
        if cfg.check_invariants:
            self.state.check_consistency(X, self.labels, self.sub_labels)

        self.phase = SamplerPhase.PROPOSING_MOVES
        for cluster in self.state:
            cluster.age += 1
        report = propose_moves(
            self.state,
            X,
            self.labels,
            self.sub_labels,
            cfg.concentration_parameter,
            self._rng,
            burnout_period=cfg.burnout_period,
            max_clusters=cfg.max_clusters,
            merge_neighbor_radius=cfg.merge_neighbor_radius,
            allow_moves=not argmax,
        )

        self.phase = SamplerPhase.REWEIGHTING
        resample_weights(self.state, cfg.concentration_parameter, self._rng)
        resample_params(self.state, self._rng, sample=cfg.assignment_params == "sampled")

        summary = IterationSummary(
            iteration=i,
            log_likelihood=log_likelihood,
            n_clusters=len(self.state),
            moves=tuple(report.moves),
            n_removed=len(report.removed),
            saturated=report.saturated,
            elapsed=time.perf_counter() - started,
        )
        self._trace.append(summary)
        self.iteration += 1
        self._record(summary)
        self.callback.during_step(i, self)
        self.callback.after_step(i)

        self.phase = SamplerPhase.ASSIGNING
        if self.iteration >= cfg.max_iterations:
            self._stop("max_iterations")
        elif cfg.patience is not None and self._idle_iterations >= cfg.patience:
            self._stop("patience")
        return summary

    def _record(self, summary: IterationSummary) -> None:
        if summary.moves or summary.n_removed:
            self._idle_iterations = 0
        else:
            self._idle_iterations += 1
        if summary.saturated and not self._warned_saturation:
            warnings.warn(
                f"Cluster count reached max_clusters={self.config.max_clusters} at "
                f"iteration {summary.iteration}; further splits are suppressed.",
                RuntimeWarning,
            )
            self._warned_saturation = True

    def _stop(self, reason: str) -> None:
        self.stop_reason = reason
        self.phase = SamplerPhase.STOPPED

    def _result(self, reason: str, log_likelihood: Optional[float] = None) -> SamplerResult:
        if log_likelihood is None:
            log_likelihood = mixture_log_likelihood(self.points, self.state.snapshot())
        return SamplerResult(
            labels=self.labels.copy(),
            clusters=tuple(self.state.summaries()),
            trace=tuple(self._trace),
            stop_reason=reason,
            iteration=self.iteration,
            log_likelihood=float(log_likelihood),
        )

    def cancel(self) -> None:
        """Ask a running :meth:`run_to_completion` to stop after the current iteration."""
        self._cancelled.set()

    def run_to_completion(self, verbose: Union[bool, int] = 0) -> SamplerResult:
        """
        Iterate until the budget, the stopping rule or a cancellation ends the run.

        Parameters
        ----------
        verbose : bool or int, default=0
            If True, prints progress every iteration. If an integer, prints every
            `verbose` iterations.

        Returns
        -------
        SamplerResult
            The final state, or the best state reached so far (highest trace
            log-likelihood) when the run was cancelled.
        """
        if verbose:
            print("Iter".ljust(10) + "K".ljust(6) + "logL".ljust(16) + "moves")
        while self.phase is not SamplerPhase.STOPPED:
            if self._cancelled.is_set():
                self._stop("cancelled")
                return self.best_state()
            summary = self.step()
            if verbose and (summary.iteration % int(verbose or 1) == 0):
                moves = f"+{summary.n_splits}/-{summary.n_merges}"
                print(
                    f"{summary.iteration}".ljust(10)
                    + f"{summary.n_clusters}".ljust(6)
                    + f"{summary.log_likelihood:.3f}".ljust(16)
                    + moves
                )
        if verbose:
            print(
                f"Stopped ({self.stop_reason}) after {self.iteration} iterations "
                f"with {self.cluster_count()} clusters.\n"
            )
        return self._result(self.stop_reason)

    ###########
    # Queries #
    ###########

    def cluster_assignments(self) -> np.ndarray:
        """Cluster id of every point (index ``i`` holds the id of point ``i``)."""
        return self.labels.copy()

    def cluster_count(self) -> int:
        return len(self.state)

    def clusters(self) -> List[ClusterSummary]:
        """Id, weight, point count and posterior mean parameters of every active cluster."""
        return self.state.summaries()

    def trace(self) -> Tuple[IterationSummary, ...]:
        return tuple(self._trace)

    def trace_frame(self) -> pd.DataFrame:
        """The trace as a table, one row per iteration."""
        columns = [
            "iteration",
            "log_likelihood",
            "n_clusters",
            "n_splits",
            "n_merges",
            "n_removed",
            "saturated",
            "elapsed",
        ]
        rows = [
            {
                "iteration": s.iteration,
                "log_likelihood": s.log_likelihood,
                "n_clusters": s.n_clusters,
                "n_splits": s.n_splits,
                "n_merges": s.n_merges,
                "n_removed": s.n_removed,
                "saturated": s.saturated,
                "elapsed": s.elapsed,
            }
            for s in self._trace
        ]
        return pd.DataFrame(rows, columns=columns).set_index("iteration")

    def best_state(self) -> SamplerResult:
        """State at the iteration with the highest log-likelihood so far."""
        if self._best is None:
            return self._result(self.stop_reason or "initial")
        return SamplerResult(
            labels=self._best.labels,
            clusters=self._best.clusters,
            trace=tuple(self._trace),
            stop_reason=self.stop_reason or "best",
            iteration=self._best.iteration,
            log_likelihood=self._best.log_likelihood,
        )

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        """
        Posterior probabilities of the active clusters for new points, computed
        from the mixture weights and the Student-t posterior predictives.

        Returns
        -------
        np.ndarray (n, K)
            Columns follow ``[c.id for c in sampler.clusters()]``.
        """
        X = check_points(X)
        if X.shape[1] != self.prior.dim:
            raise ValueError(
                f"Points have dimension {X.shape[1]}, the model has {self.prior.dim}."
            )
        clusters = list(self.state)
        logp = np.column_stack(
            [np.log(c.weight) + c.posterior.log_predictive(X) for c in clusters]
        )
        return np.exp(logp - logsumexp(logp, axis=1, keepdims=True))

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Most probable cluster id of every new point."""
        ids = np.array(self.state.active_ids())
        return ids[self.predict_proba(X).argmax(axis=1)]


class DPMM:
    """
    Dirichlet Process Mixture Model clustering.

    Fits a Gaussian mixture whose number of components is inferred from the
    data, using the parallel split/merge sampler of
    :class:`SplitMergeSampler`.

    Parameters
    ----------
    n_clusters_init : int, default=1
        Number of clusters to start from.
    alpha : float, default=1.0
        Dirichlet process concentration parameter.
    prior : NIWPrior, mapping or None, default=None
        Normal-Inverse-Wishart prior, see :class:`DPMMConfig`.
    n_iters : int, default=100
        Maximum number of sampler iterations.
    merge_neighbor_radius : float or None, default=None
        Centroid distance under which clusters are always proposed for merging.
    random_seed : int, default=2046
        Random seed for reproducibility.
    burnout_period : int, default=5
        Iterations before a cluster's halves are considered for a split.
    max_clusters : int, default=100
        Upper bound on the cluster count.
    patience : int or None, default=None
        Stop after this many consecutive iterations without accepted moves.
    argmax_sample_stop : int, default=0
        Final iterations using most-probable instead of sampled assignments.
    init : {"random", "kmeans"}, default="random"
        Initial partitioning.
    assignment_params : {"predictive", "sampled"}, default="predictive"
        Component densities used by the assignment passes.
    n_jobs : int or None, default=1
        Worker threads for the data-parallel phases.

    Attributes
    ----------
    converged : bool
        Whether the run stopped through the ``patience`` rule.
    labels_ : np.ndarray
        Cluster index (0..K-1) of every training point.
    cluster_ids_ : np.ndarray
        Sampler id of each of the K clusters.
    n_clusters_ : int
    weights_ : np.ndarray (K,)
    means_ : np.ndarray (K, d)
    covariances_ : np.ndarray (K, d, d)
    trace_ : pandas.DataFrame
        Per-iteration log-likelihood, cluster count and moves.
    sampler_ : SplitMergeSampler

    Examples
    --------
        import numpy as np
        from pydpmm import DPMM, make_blobs
        X, y = make_blobs([(0, 0), (10, 0), (5, 10)], 100, random_seed=0)
        dpmm = DPMM(n_iters=50, random_seed=42).fit(X)
        dpmm.n_clusters_
    """

    def __init__(
        self,
        n_clusters_init: int = 1,
        alpha: float = 1.0,
        prior: Optional[Union[NIWPrior, Mapping[str, Any]]] = None,
        n_iters: int = 100,
        merge_neighbor_radius: Optional[float] = None,
        random_seed: Optional[int] = 2046,
        burnout_period: int = 5,
        max_clusters: int = 100,
        patience: Optional[int] = None,
        argmax_sample_stop: int = 0,
        init: str = "random",
        assignment_params: str = "predictive",
        n_jobs: Optional[int] = 1,
    ):
        self.config = DPMMConfig(
            initial_cluster_count=n_clusters_init,
            concentration_parameter=alpha,
            prior_hyperparameters=prior,
            max_iterations=n_iters,
            merge_neighbor_radius=merge_neighbor_radius,
            random_seed=random_seed,
            burnout_period=burnout_period,
            max_clusters=max_clusters,
            patience=patience,
            argmax_sample_stop=argmax_sample_stop,
            init=init,
            assignment_params=assignment_params,
            n_jobs=n_jobs,
        )
        self.n_clusters_init = n_clusters_init
        self.alpha = alpha
        self.n_iters = n_iters

        self.converged = False
        self.sampler_: Optional[SplitMergeSampler] = None
        self.labels_: Optional[np.ndarray] = None
        self.cluster_ids_: Optional[np.ndarray] = None
        self.n_clusters_: Optional[int] = None
        self.weights_: Optional[np.ndarray] = None
        self.means_: Optional[np.ndarray] = None
        self.covariances_: Optional[np.ndarray] = None
        self.trace_: Optional[pd.DataFrame] = None

    def fit(
        self,
        X: np.ndarray,
        verbose: Union[bool, int] = 0,
        callback: Optional[Callback] = None,
    ) -> "DPMM":
        """
        Fit the mixture to ``X``.

        Parameters
        ----------
        X : np.ndarray (n, d)
        verbose : bool or int, default=0
            If True, prints progress every iteration. If an integer, prints every
            `verbose` iterations.
        callback : Callback, optional
        """
        self.sampler_ = SplitMergeSampler(X, self.config, callback=callback)
        result = self.sampler_.run_to_completion(verbose=verbose)

        self.converged = result.stop_reason == "patience"
        self.cluster_ids_ = np.array([c.id for c in result.clusters], dtype=int)
        lookup = {cid: k for k, cid in enumerate(self.cluster_ids_)}
        self.labels_ = np.array([lookup[cid] for cid in result.labels], dtype=int)
        self.n_clusters_ = len(result.clusters)
        self.weights_ = np.array([c.weight for c in result.clusters])
        self.means_ = np.array([c.mean for c in result.clusters])
        self.covariances_ = np.array([c.cov for c in result.clusters])
        self.trace_ = self.sampler_.trace_frame()
        return self

    def _check_fitted(self) -> SplitMergeSampler:
        if self.sampler_ is None:
            raise ValueError("Model must be fitted before calling predict().")
        return self.sampler_

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        """Cluster membership probabilities of new points, columns as in ``cluster_ids_``."""
        return self._check_fitted().predict_proba(X)

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Cluster index (0..K-1) of the most probable cluster of every new point."""
        return self.predict_proba(X).argmax(axis=1)

    def fit_predict(self, X: np.ndarray, verbose: Union[bool, int] = 0) -> np.ndarray:
        return self.fit(X, verbose=verbose).labels_
