from typing import Tuple

import numpy as np
from scipy.optimize import linear_sum_assignment
from sklearn.metrics import normalized_mutual_info_score
from sklearn.metrics.cluster import contingency_matrix as _contingency_matrix

__names__ = ["contingency_matrix", "normalized_mutual_info", "label_agreement"]


def _check_labelings(labels_a, labels_b) -> Tuple[np.ndarray, np.ndarray]:
    labels_a = np.asarray(labels_a).reshape(-1)
    labels_b = np.asarray(labels_b).reshape(-1)
    if labels_a.shape != labels_b.shape:
        raise ValueError("Both labelings must have the same length.")
    if labels_a.size == 0:
        raise ValueError("Labelings must not be empty.")
    return labels_a, labels_b


def contingency_matrix(
    labels_a: np.ndarray, labels_b: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Co-occurrence counts of two labelings of the same points.

    Returns
    -------
    table : np.ndarray (n_a, n_b)
        ``table[i, j]`` counts points with label ``classes_a[i]`` in ``labels_a``
        and ``classes_b[j]`` in ``labels_b``.
    classes_a, classes_b : np.ndarray
    """
    labels_a, labels_b = _check_labelings(labels_a, labels_b)
    table = _contingency_matrix(labels_a, labels_b)
    return np.asarray(table), np.unique(labels_a), np.unique(labels_b)


def normalized_mutual_info(labels_true: np.ndarray, labels_pred: np.ndarray) -> float:
    r"""
    Normalised mutual information with arithmetic-mean normalisation.

    $$ \mathrm{NMI}(A, B) = \frac{I(A; B)}{(H(A) + H(B)) / 2} $$

    Invariant to permutations of the label values. Two constant labelings
    score 1.
    """
    labels_true, labels_pred = _check_labelings(labels_true, labels_pred)
    score = normalized_mutual_info_score(labels_true, labels_pred, average_method="arithmetic")
    return float(min(1.0, max(0.0, score)))


def label_agreement(labels_true: np.ndarray, labels_pred: np.ndarray) -> float:
    """
    Fraction of points whose predicted label matches the true one under the
    best one-to-one relabeling of the predicted clusters.

    Predicted clusters left without a partner count as wrong.
    """
    table, _, _ = contingency_matrix(labels_true, labels_pred)
    rows, cols = linear_sum_assignment(-table)
    return float(table[rows, cols].sum() / table.sum())
