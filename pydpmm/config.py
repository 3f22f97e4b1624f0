from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional, Union

import numpy as np

from .distributions import NIWPrior

__names__ = ["ConfigurationError", "DPMMConfig"]

ALLOWED_INITS = {"random", "kmeans"}
ALLOWED_ASSIGNMENT_PARAMS = {"predictive", "sampled"}


class ConfigurationError(ValueError):
    """Invalid sampler configuration or input data; raised before any sampling."""


@dataclass(frozen=True)
class DPMMConfig:
    """
    Settings of a split/merge sampler run.

    Parameters
    ----------
    initial_cluster_count : int, default=1
        Number of clusters seeded at initialisation.
    concentration_parameter : float, default=1.0
        Dirichlet process concentration ``alpha``.
    prior_hyperparameters : NIWPrior, mapping or None, default=None
        Normal-Inverse-Wishart prior. A mapping may give any of ``mean``,
        ``kappa``, ``nu`` and ``psi``; missing entries fall back to
        :meth:`NIWPrior.default` centred on the data mean. ``None`` uses that
        default entirely.
    max_iterations : int, default=100
        Iteration budget.
    merge_neighbor_radius : float or None, default=None
        Centroid distance under which two clusters are always proposed for a
        merge, in addition to nearest-centroid pairs.
    random_seed : int or None, default=None
        Seed of every random stream of the run.
    burnout_period : int, default=5
        Iterations a cluster's halves must exist before it may be split.
    max_clusters : int, default=100
        Cap on the number of clusters; splits beyond it are suppressed.
    patience : int or None, default=None
        Stop once no move has been accepted for this many consecutive
        iterations. ``None`` disables the rule.
    argmax_sample_stop : int, default=0
        The last ``argmax_sample_stop`` iterations assign every point to its
        most probable cluster instead of sampling.
    init : {"random", "kmeans"}, default="random"
        Initial partitioning heuristic.
    assignment_params : {"predictive", "sampled"}, default="predictive"
        Component densities used to assign points: the Student-t posterior
        predictive of every cluster, or Gaussian parameters drawn from the
        posterior at every iteration.
    n_jobs : int or None, default=1
        joblib workers for the data-parallel phases.
    chunk_size : int, default=4096
        Points per unit of parallel work. Results depend on it but not on
        ``n_jobs``.
    check_invariants : bool, default=False
        Verify the statistics bookkeeping after every sub-assignment pass.
    """

    initial_cluster_count: int = 1
    concentration_parameter: float = 1.0
    prior_hyperparameters: Optional[Union[NIWPrior, Mapping[str, Any]]] = None
    max_iterations: int = 100
    merge_neighbor_radius: Optional[float] = None
    random_seed: Optional[int] = None
    burnout_period: int = 5
    max_clusters: int = 100
    patience: Optional[int] = None
    argmax_sample_stop: int = 0
    init: str = "random"
    assignment_params: str = "predictive"
    n_jobs: Optional[int] = 1
    chunk_size: int = 4096
    check_invariants: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self) -> "DPMMConfig":
        """
        Check every setting that does not depend on the data.

        Raises
        ------
        ConfigurationError
        """
        if not self.concentration_parameter > 0:
            raise ConfigurationError("`concentration_parameter` must be positive.")
        if self.initial_cluster_count <= 0:
            raise ConfigurationError("`initial_cluster_count` must be a positive integer.")
        if self.max_iterations <= 0:
            raise ConfigurationError("`max_iterations` must be a positive integer.")
        if self.merge_neighbor_radius is not None and self.merge_neighbor_radius < 0:
            raise ConfigurationError("`merge_neighbor_radius` must be non-negative.")
        if self.burnout_period < 0:
            raise ConfigurationError("`burnout_period` must be non-negative.")
        if self.max_clusters < self.initial_cluster_count:
            raise ConfigurationError(
                "`max_clusters` must be at least `initial_cluster_count`."
            )
        if self.patience is not None and self.patience <= 0:
            raise ConfigurationError("`patience` must be a positive integer.")
        if not 0 <= self.argmax_sample_stop <= self.max_iterations:
            raise ConfigurationError(
                "`argmax_sample_stop` must lie between 0 and `max_iterations`."
            )
        if self.init not in ALLOWED_INITS:
            raise ConfigurationError(f"`init` must be one of {sorted(ALLOWED_INITS)}.")
        if self.assignment_params not in ALLOWED_ASSIGNMENT_PARAMS:
            raise ConfigurationError(
                f"`assignment_params` must be one of {sorted(ALLOWED_ASSIGNMENT_PARAMS)}."
            )
        if self.chunk_size <= 0:
            raise ConfigurationError("`chunk_size` must be a positive integer.")
        if self.prior_hyperparameters is not None and not isinstance(
            self.prior_hyperparameters, (NIWPrior, Mapping)
        ):
            raise ConfigurationError(
                "`prior_hyperparameters` must be an NIWPrior, a mapping or None."
            )
        return self

    def replace(self, **changes) -> "DPMMConfig":
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "DPMMConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}.")
        return cls(**values)

    def build_prior(self, points: np.ndarray) -> NIWPrior:
        """
        Resolve ``prior_hyperparameters`` against the data.

        Raises
        ------
        ConfigurationError
            If the prior is malformed or its dimension differs from the data's.
        """
        dim = points.shape[1]
        spec = self.prior_hyperparameters
        try:
            if isinstance(spec, NIWPrior):
                prior = spec
            else:
                spec = dict(spec or {})
                unknown = set(spec) - {"mean", "kappa", "nu", "psi"}
                if unknown:
                    raise ConfigurationError(
                        f"Unknown prior hyperparameters: {sorted(unknown)}."
                    )
                default = NIWPrior.default(dim, mean=points.mean(axis=0))
                prior = NIWPrior(
                    mu0=spec.get("mean", default.mu0),
                    kappa0=spec.get("kappa", default.kappa0),
                    nu0=spec.get("nu", default.nu0),
                    psi0=spec.get("psi", default.psi0),
                )
        except ConfigurationError:
            raise
        except ValueError as e:
            raise ConfigurationError(f"Invalid prior hyperparameters: {e}") from e
        if prior.dim != dim:
            raise ConfigurationError(
                f"Prior has dimension {prior.dim} but the points have dimension {dim}."
            )
        return prior
