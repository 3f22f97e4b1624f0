from importlib import metadata as _metadata

from .callback import NMI, Callback, EvalData, LogLikelihood, MonitoringCallback
from .clustering import DPMM, IterationSummary, SamplerPhase, SamplerResult, SplitMergeSampler
from .config import ConfigurationError, DPMMConfig
from .data import make_blobs
from .distributions import NIWPrior
from .stats import SufficientStats
from .visualization import plot_clusters

try:  # Prefer installed package metadata
    __version__ = _metadata.version("pydpmm")
except _metadata.PackageNotFoundError:  # pragma: no cover - during local dev
    __version__ = "0.0.0"

__all__ = [
    "DPMM",
    "SplitMergeSampler",
    "DPMMConfig",
    "ConfigurationError",
    "NIWPrior",
    "SufficientStats",
    "IterationSummary",
    "SamplerPhase",
    "SamplerResult",
    "Callback",
    "EvalData",
    "MonitoringCallback",
    "NMI",
    "LogLikelihood",
    "make_blobs",
    "plot_clusters",
    "__version__",
]
