import numpy as np
import pytest

from pydpmm.utils import check_points, chunk_slices, reservoir_sampling


def test_check_points():
    X = check_points([[1, 2], [3, 4]])
    assert X.dtype == float
    assert X.flags.c_contiguous
    assert check_points([1.0, 2.0, 3.0]).shape == (3, 1)
    with pytest.raises(ValueError):
        check_points(np.empty((0, 2)))
    with pytest.raises(ValueError):
        check_points([[np.inf, 0.0]])
    with pytest.raises(ValueError):
        check_points(np.zeros((2, 2, 2)))


@pytest.mark.parametrize("n,chunk", [(10, 3), (9, 3), (1, 100), (0, 4)])
def test_chunk_slices_cover(n, chunk):
    slices = chunk_slices(n, chunk)
    covered = np.concatenate([np.arange(n)[s] for s in slices]) if slices else np.array([], dtype=int)
    np.testing.assert_array_equal(covered, np.arange(n))
    assert all(s.stop - s.start <= chunk for s in slices)


def test_chunk_slices_invalid():
    with pytest.raises(ValueError):
        chunk_slices(10, 0)


def test_reservoir_sampling():
    rng = np.random.default_rng(0)
    sample = reservoir_sampling(rng, range(100), 10)
    assert len(sample) == 10
    assert len(set(sample)) == 10
    assert all(0 <= s < 100 for s in sample)
    assert reservoir_sampling(rng, range(3), 10) == [0, 1, 2]
    assert reservoir_sampling(rng, iter("abc"), 0) == []
    with pytest.raises(ValueError):
        reservoir_sampling(rng, range(3), -1)


def test_reservoir_sampling_uniform():
    rng = np.random.default_rng(1)
    counts = np.zeros(10)
    for _ in range(2000):
        counts[reservoir_sampling(rng, range(10), 3)] += 1
    np.testing.assert_allclose(counts / 2000, 0.3, atol=0.05)

