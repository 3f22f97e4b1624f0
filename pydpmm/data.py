from typing import Optional, Sequence, Tuple, Union

import numpy as np
from sklearn.datasets import make_blobs as _make_blobs


def make_blobs(
    centers: Sequence[Sequence[float]],
    n_per_cluster: Union[int, Sequence[int]] = 100,
    cluster_std: Union[float, Sequence[float]] = 1.0,
    random_seed: Optional[int] = None,
    shuffle: bool = True,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Sample a synthetic point cloud from isotropic Gaussian blobs.

    Parameters
    ----------
    centers : sequence of array-like (d,)
        Blob centres.
    n_per_cluster : int or sequence of int, default=100
        Points drawn from each blob.
    cluster_std : float or sequence of float, default=1.0
        Standard deviation of every blob (1.0 gives unit covariance).
    random_seed : int, optional
        Random seed for reproducibility.
    shuffle : bool, default=True
        Shuffle the points; otherwise blobs are stacked in order.

    Returns
    -------
    X : np.ndarray (n, d)
        Points.
    y : np.ndarray (n,)
        Index of the generating blob of every point.

    Examples
    --------
        X, y = make_blobs([(0, 0), (10, 0), (5, 10)], 100, random_seed=0)
    """
    centers = np.atleast_2d(np.asarray(centers, dtype=float))
    counts = np.broadcast_to(np.asarray(n_per_cluster, dtype=int), (centers.shape[0],))
    if np.any(counts < 0):
        raise ValueError("`n_per_cluster` must be non-negative.")
    X, y = _make_blobs(
        n_samples=[int(c) for c in counts],
        centers=centers,
        cluster_std=cluster_std,
        shuffle=shuffle,
        random_state=random_seed,
    )
    return X, y
