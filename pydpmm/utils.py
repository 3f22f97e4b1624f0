from typing import Iterable, List, Sequence, Union

import numpy as np


def check_points(X: Union[np.ndarray, Sequence]) -> np.ndarray:
    """
    Coerce a point cloud into a contiguous 2-D float array.

    Parameters
    ----------
    X : array-like (n, d)
        Points, one per row. A 1-D input is read as ``n`` points of
        dimension one.

    Returns
    -------
    np.ndarray
        Array of shape (n, d) and dtype float64.

    Raises
    ------
    ValueError
        If the data is empty, not two-dimensional or contains non-finite values.
    """
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.ndim != 2:
        raise ValueError(f"Points must be a 2-D array, got {X.ndim} dimensions.")
    if X.shape[0] == 0 or X.shape[1] == 0:
        raise ValueError("Input data must contain at least one observation.")
    if not np.all(np.isfinite(X)):
        raise ValueError("Input data must not contain NaN or infinite values.")
    return np.ascontiguousarray(X)


def chunk_slices(n: int, chunk_size: int) -> List[slice]:
    """Split ``range(n)`` into consecutive, disjoint slices of at most ``chunk_size``."""
    if chunk_size <= 0:
        raise ValueError("`chunk_size` must be a positive integer.")
    return [slice(start, min(start + chunk_size, n)) for start in range(0, n, chunk_size)]


def reservoir_sampling(
    rng: np.random.Generator, src: Iterable, k: int
) -> list:
    """
    Sample ``k`` items without replacement from an iterable of unknown length.

    Parameters
    ----------
    rng : np.random.Generator
        Random number generator.
    src : iterable
        Items to sample from. Consumed once.
    k : int
        Reservoir size.

    Returns
    -------
    list
        At most ``k`` items. Fewer are returned if ``src`` is shorter than ``k``.

    Examples
    --------
        rng = np.random.default_rng(0)
        reservoir_sampling(rng, range(100), 3)
    """
    if k < 0:
        raise ValueError("`k` must be non-negative.")
    reservoir = []
    for i, item in enumerate(src):
        if i < k:
            reservoir.append(item)
            continue
        j = rng.integers(0, i + 1)
        if j < k:
            reservoir[j] = item
    return reservoir

