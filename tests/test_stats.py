import numpy as np
import pytest

from pydpmm.stats import SufficientStats, parallel_reduce, reduce, reduce_grouped


@pytest.fixture
def labelled_points():
    rng = np.random.default_rng(7)
    X = rng.normal(size=(1000, 3)) * [1.0, 5.0, 0.1] + [100.0, -3.0, 2.0]
    labels = rng.choice([0, 2, 5], size=1000)
    sub_labels = rng.integers(0, 2, size=1000).astype(np.int8)
    return X, labels, sub_labels


def test_from_points():
    X = np.array([[1.0, 2.0], [3.0, 4.0], [-1.0, 0.5]])
    s = SufficientStats.from_points(X)
    assert s.n == 3
    np.testing.assert_allclose(s.x_sum, [3.0, 6.5])
    np.testing.assert_allclose(s.xx_sum, sum(np.outer(x, x) for x in X))
    np.testing.assert_allclose(s.mean(), X.mean(axis=0))
    np.testing.assert_allclose(s.covariance(), np.cov(X.T, bias=True))


def test_zeros_is_identity():
    X = np.random.default_rng(0).normal(size=(20, 2))
    s = SufficientStats.from_points(X)
    assert (s + SufficientStats.zeros(2)).allclose(s)
    assert (SufficientStats.zeros(2) + s).allclose(s)
    assert np.all(np.isnan(SufficientStats.zeros(2).mean()))


def test_combine_dimension_mismatch():
    with pytest.raises(ValueError):
        SufficientStats.zeros(2).combine(SufficientStats.zeros(3))


def test_chunked_combine_equals_whole():
    """Any partition into chunks combines back to the statistics of the whole set."""
    X = np.random.default_rng(1).normal(size=(503, 4))
    whole = SufficientStats.from_points(X)
    for bounds in ([0, 100, 503], [0, 1, 2, 250, 503], [0, 503]):
        chunks = [
            SufficientStats.from_points(X[a:b]) for a, b in zip(bounds[:-1], bounds[1:])
        ]
        combined = SufficientStats.zeros(4)
        for c in reversed(chunks):
            combined = combined + c
        assert combined.allclose(whole)


def test_reduce_selects_cluster_and_half(labelled_points):
    X, labels, sub_labels = labelled_points
    s = reduce(X, labels, sub_labels, 2, 1)
    mask = (labels == 2) & (sub_labels == 1)
    assert s.n == mask.sum()
    np.testing.assert_allclose(s.x_sum, X[mask].sum(axis=0))
    empty = reduce(X, labels, sub_labels, 3)
    assert empty.n == 0
    np.testing.assert_array_equal(empty.x_sum, np.zeros(3))


def test_reduce_requires_sub_labels():
    X = np.zeros((3, 2))
    with pytest.raises(ValueError):
        reduce(X, np.zeros(3, dtype=int), None, 0, target_sub=1)


def test_reduce_grouped_counts():
    X = np.arange(12, dtype=float).reshape(6, 2)
    counts, sums, outer = reduce_grouped(X, np.array([0, 1, 1, 3, 3, 3]), 4)
    np.testing.assert_array_equal(counts, [1, 2, 0, 3])
    np.testing.assert_allclose(sums[3], X[3:].sum(axis=0))
    np.testing.assert_allclose(outer[1], X[1:3].T @ X[1:3])
    np.testing.assert_array_equal(sums[2], [0.0, 0.0])


@pytest.mark.parametrize("chunk_size,n_jobs", [(97, 1), (97, 2), (1000, 1), (7, 3)])
def test_parallel_reduce_equals_sequential(labelled_points, chunk_size, n_jobs):
    X, labels, sub_labels = labelled_points
    reduced = parallel_reduce(X, labels, sub_labels, [0, 2, 5], chunk_size, n_jobs)
    assert sorted(reduced) == [0, 2, 5]
    for cid, halves in reduced.items():
        for h in (0, 1):
            assert halves[h].allclose(reduce(X, labels, sub_labels, cid, h))
        assert (halves[0] + halves[1]).allclose(reduce(X, labels, sub_labels, cid))


def test_parallel_reduce_rejects_inactive_label(labelled_points):
    X, labels, sub_labels = labelled_points
    labels = labels.copy()
    labels[0] = 1
    with pytest.raises(ValueError):
        parallel_reduce(X, labels, sub_labels, [0, 2, 5])
