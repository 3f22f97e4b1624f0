from __future__ import annotations

import time
from typing import TYPE_CHECKING, Dict, List, Optional

import numpy as np

from .metrics import normalized_mutual_info
from .samplers import mixture_log_likelihood
from .utils import check_points, reservoir_sampling

if TYPE_CHECKING:
    from .clustering import SplitMergeSampler

__names__ = ["Callback", "EvalData", "Metric", "NMI", "LogLikelihood", "MonitoringCallback"]


class Callback:
    """
    Hooks called by :class:`~pydpmm.clustering.SplitMergeSampler` around
    every iteration. Subclasses override what they need.
    """

    def before_step(self, i: int) -> None:
        pass

    def during_step(self, i: int, sampler: "SplitMergeSampler") -> None:
        pass

    def after_step(self, i: int) -> None:
        pass


class EvalData:
    """
    Points (and optionally their true labels) used to monitor a fit.

    Parameters
    ----------
    points : np.ndarray (n, d)
    labels : np.ndarray (n,) or None
    """

    def __init__(self, points: np.ndarray, labels: Optional[np.ndarray] = None):
        self.points = check_points(points)
        if labels is not None:
            labels = np.asarray(labels).reshape(-1)
            if labels.shape[0] != self.points.shape[0]:
                raise ValueError("`labels` must have one entry per point.")
        self.labels = labels

    @classmethod
    def from_sample(
        cls,
        points: np.ndarray,
        labels: Optional[np.ndarray] = None,
        max_points: int = 1000,
        random_seed: Optional[int] = 42,
    ) -> "EvalData":
        """Evaluation data made of at most ``max_points`` points drawn without replacement."""
        rng = np.random.default_rng(random_seed)
        points = check_points(points)
        idx = np.sort(np.asarray(reservoir_sampling(rng, range(points.shape[0]), max_points), dtype=int))
        return cls(points[idx], None if labels is None else np.asarray(labels).reshape(-1)[idx])


class Metric:
    """A quantity computed on the evaluation data after every iteration."""

    name = "metric"

    def compute(self, i: int, data: EvalData, sampler: "SplitMergeSampler") -> Optional[float]:
        raise NotImplementedError


class NMI(Metric):
    """Normalised mutual information between the true and predicted labels."""

    name = "nmi"

    def compute(self, i, data, sampler):
        if data.labels is None:
            return None
        return normalized_mutual_info(data.labels, sampler.predict(data.points))


class LogLikelihood(Metric):
    """Mixture log-likelihood of the evaluation points."""

    name = "loglik"

    def compute(self, i, data, sampler):
        return mixture_log_likelihood(data.points, sampler.state.snapshot())


class MonitoringCallback(Callback):
    """
    Evaluate metrics on held data after every iteration.

    Measures are collected in :attr:`history`, one dict per iteration, and
    printed when verbose.

    Examples
    --------
        monitor = MonitoringCallback(EvalData.from_sample(X, y, max_points=500))
        monitor.add_metric(NMI())
        monitor.set_verbose(True)
        SplitMergeSampler(X, config, callback=monitor).run_to_completion()
    """

    def __init__(self, data: EvalData):
        self.data = data
        self.metrics: List[Metric] = []
        self.callbacks: List[Callback] = []
        self.measures: Dict[str, float] = {}
        self.history: List[Dict[str, float]] = []
        self.verbose = False
        self._step_started = 0.0

    def add_metric(self, metric: Metric) -> None:
        self.metrics.append(metric)

    def add_callback(self, callback: Callback) -> None:
        self.callbacks.append(callback)

    def set_verbose(self, verbose: bool) -> None:
        self.verbose = verbose

    def before_step(self, i):
        self.measures = {}
        for callback in self.callbacks:
            callback.before_step(i)
        self._step_started = time.perf_counter()

    def during_step(self, i, sampler):
        self.measures["k"] = float(sampler.cluster_count())
        for metric in self.metrics:
            value = metric.compute(i, self.data, sampler)
            if value is not None:
                self.measures[metric.name] = float(value)
        for callback in self.callbacks:
            callback.during_step(i, sampler)

    def after_step(self, i):
        for callback in self.callbacks:
            callback.after_step(i)
        elapsed = time.perf_counter() - self._step_started
        self.history.append(dict(self.measures, iteration=i, elapsed=elapsed))
        if self.verbose:
            measures = ", ".join(f"{k}={v:.4f}" for k, v in self.measures.items())
            print(f"Run iteration {i} in {elapsed:.2f}s; {measures}")
