from typing import Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.patches import Ellipse

from .clusters import ClusterSummary

DEFAULT_CLUSTER_PLOT_CONFIG = {
    "figsize": (6, 5),
    "scatter": {
        "size": 6,
        "alpha": 0.4,
    },
    "ellipse": {
        "n_std": 2.0,
        "linewidth": 2,
        "fill": False,
    },
    "cmap": "tab20",
}


def _covariance_ellipse(mean: np.ndarray, cov: np.ndarray, n_std: float, **kwargs) -> Ellipse:
    vals, vecs = np.linalg.eigh(cov)
    order = vals.argsort()[::-1]
    vals, vecs = vals[order], vecs[:, order]
    angle = np.degrees(np.arctan2(vecs[1, 0], vecs[0, 0]))
    width, height = 2 * n_std * np.sqrt(np.maximum(vals, 0.0))
    return Ellipse(xy=mean, width=width, height=height, angle=angle, **kwargs)


def plot_clusters(
    points: np.ndarray,
    labels: np.ndarray,
    clusters: Sequence[ClusterSummary],
    ax: Optional[plt.Axes] = None,
    config: Optional[dict] = None,
) -> plt.Axes:
    """
    Scatter 2-D points coloured by cluster, with a covariance ellipse per cluster.

    Parameters
    ----------
    points : np.ndarray (n, 2)
    labels : np.ndarray (n,)
        Cluster id of every point.
    clusters : sequence of ClusterSummary
        E.g. ``sampler.clusters()``.
    ax : matplotlib.axes.Axes, optional
    config : dict, optional
        Overrides of ``DEFAULT_CLUSTER_PLOT_CONFIG`` (one level deep).

    Returns
    -------
    matplotlib.axes.Axes
    """
    points = np.asarray(points, dtype=float)
    if points.ndim != 2 or points.shape[1] != 2:
        raise ValueError("Only 2-D point clouds can be plotted.")
    cfg = {k: (dict(v) if isinstance(v, dict) else v) for k, v in DEFAULT_CLUSTER_PLOT_CONFIG.items()}
    for key, value in (config or {}).items():
        if isinstance(value, dict) and isinstance(cfg.get(key), dict):
            cfg[key].update(value)
        else:
            cfg[key] = value

    if ax is None:
        _, ax = plt.subplots(figsize=cfg["figsize"])
    cmap = plt.get_cmap(cfg["cmap"])
    colors = {c.id: cmap(i % cmap.N) for i, c in enumerate(clusters)}

    point_colors = [colors.get(int(lab), (0.5, 0.5, 0.5, 1.0)) for lab in labels]
    ax.scatter(points[:, 0], points[:, 1], c=point_colors, s=cfg["scatter"]["size"], alpha=cfg["scatter"]["alpha"])
    ellipse_cfg = dict(cfg["ellipse"])
    n_std = ellipse_cfg.pop("n_std")
    for c in clusters:
        ax.add_patch(_covariance_ellipse(c.mean[:2], c.cov[:2, :2], n_std, edgecolor=colors[c.id], **ellipse_cfg))
        ax.plot(*c.mean[:2], marker="x", color=colors[c.id])
    ax.set_aspect("equal", adjustable="datalim")
    return ax
