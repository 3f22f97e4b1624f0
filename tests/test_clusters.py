import numpy as np
import pytest

from pydpmm.clusters import ClusterState
from pydpmm.distributions import NIWPrior
from pydpmm.samplers import resample_params, resample_weights
from pydpmm.stats import SufficientStats


@pytest.fixture
def points():
    rng = np.random.default_rng(0)
    return np.vstack([rng.normal(size=(30, 2)), rng.normal(size=(30, 2)) + [8.0, 0.0]])


@pytest.fixture
def state():
    return ClusterState(NIWPrior.default(2))


def _stats(X):
    return SufficientStats.from_points(X) if len(X) else SufficientStats.zeros(X.shape[1])


def test_allocate_assigns_increasing_ids(state, points):
    ids = [state.allocate(_stats(points[:5]), _stats(points[5:10])).id for _ in range(3)]
    assert ids == [0, 1, 2]
    assert len(state) == 3
    assert state.capacity == 3
    c = state.get(1)
    assert c.n == 10
    assert c.age == 0
    assert (c.subclusters[0].stats + c.subclusters[1].stats).allclose(c.stats)


def test_retired_ids_are_reused_after_release(state, points):
    for _ in range(3):
        state.allocate(_stats(points[:5]), _stats(points[5:10]))
    state.retire(1)
    assert 1 not in state
    assert state.active_ids() == [0, 2]
    # not reusable within the same pass
    assert state.allocate(_stats(points[:5]), _stats(points[5:10])).id == 3
    state.release_retired()
    assert state.allocate(_stats(points[:5]), _stats(points[5:10])).id == 1
    assert state.capacity == 4


def test_free_list_hands_out_lowest_id(state, points):
    for _ in range(4):
        state.allocate(_stats(points[:5]), _stats(points[5:10]))
    state.retire(3)
    state.retire(0)
    state.release_retired()
    assert state.allocate(_stats(points[:5]), _stats(points[5:10])).id == 0
    assert state.allocate(_stats(points[:5]), _stats(points[5:10])).id == 3


def test_get_missing_raises(state):
    with pytest.raises(KeyError):
        state.get(0)


def test_set_statistics_keeps_weights(state, points):
    c = state.allocate(_stats(points[:5]), _stats(points[5:10]))
    c.age = 7
    c.subclusters[0].weight = 0.3
    c.subclusters[1].weight = 0.7
    state.set_statistics(c.id, _stats(points[:20]), _stats(points[20:25]))
    assert c.n == 25
    assert c.age == 7
    assert [s.weight for s in c.subclusters] == [0.3, 0.7]
    assert c.params is None
    state.set_statistics(c.id, _stats(points[:20]), _stats(points[20:25]), reset_age=True)
    assert c.age == 0


def test_snapshot_requires_params(state, points):
    state.allocate(_stats(points[:30]), _stats(points[30:]))
    with pytest.raises(RuntimeError):
        state.snapshot()


def test_snapshot(state, points):
    rng = np.random.default_rng(1)
    for _ in range(3):
        state.allocate(_stats(points[:30]), _stats(points[30:]))
    state.retire(1)
    state.release_retired()
    resample_weights(state, 1.0, rng)
    resample_params(state, rng)
    view = state.snapshot()
    assert len(view) == 2
    np.testing.assert_array_equal(view.ids, [0, 2])
    np.testing.assert_array_equal(view.index, [0, -1, 1])
    assert view.sub_log_weights.shape == (2, 2)
    weights = np.exp(view.log_weights)
    assert np.all(weights > 0)
    assert weights.sum() + state.residual_weight == pytest.approx(1.0)
    np.testing.assert_allclose(np.exp(view.sub_log_weights).sum(axis=1), 1.0)


def test_summaries(state, points):
    state.allocate(_stats(points[:30]), _stats(points[30:]))
    (summary,) = state.summaries()
    assert summary.id == 0
    assert summary.count == 60
    assert summary.mean.shape == (2,)
    assert summary.cov.shape == (2, 2)


def test_check_consistency(state, points):
    labels = np.repeat([0, 1], 30)
    sub_labels = np.tile([0, 1], 30).astype(np.int8)
    for cid in (0, 1):
        mask = labels == cid
        state.allocate(_stats(points[mask & (sub_labels == 0)]), _stats(points[mask & (sub_labels == 1)]))
    state.check_consistency(points, labels, sub_labels)

    moved = labels.copy()
    moved[0] = 1
    with pytest.raises(AssertionError):
        state.check_consistency(points, moved, sub_labels)

    flipped = sub_labels.copy()
    flipped[0] = 1 - flipped[0]
    with pytest.raises(AssertionError):
        state.check_consistency(points, labels, flipped)

    with pytest.raises(AssertionError):
        state.check_consistency(points, np.full(60, 5), sub_labels)
