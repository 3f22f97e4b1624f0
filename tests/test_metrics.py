import numpy as np
import pytest

from pydpmm.metrics import contingency_matrix, label_agreement, normalized_mutual_info


def test_contingency_matrix():
    table, a, b = contingency_matrix([0, 0, 1, 1, 1], [5, 7, 7, 7, 5])
    np.testing.assert_array_equal(a, [0, 1])
    np.testing.assert_array_equal(b, [5, 7])
    np.testing.assert_array_equal(table, [[1, 1], [1, 2]])
    with pytest.raises(ValueError):
        contingency_matrix([0, 1], [0])


def test_nmi_identical_and_permuted():
    labels = np.repeat([0, 1, 2], 20)
    assert normalized_mutual_info(labels, labels) == pytest.approx(1.0)
    assert normalized_mutual_info(labels, labels * 7 + 3) == pytest.approx(1.0)
    assert normalized_mutual_info(labels, 2 - labels) == pytest.approx(1.0)


def test_nmi_independent():
    a = np.repeat([0, 1], 50)
    b = np.tile([0, 1], 50)
    assert normalized_mutual_info(a, b) == pytest.approx(0.0, abs=1e-12)


def test_nmi_constant():
    assert normalized_mutual_info([1, 1, 1], [4, 4, 4]) == 1.0
    assert normalized_mutual_info([0, 1, 2, 3], [0, 0, 0, 0]) == pytest.approx(0.0)


def test_nmi_known_value():
    # mutual information written out term by term
    a = [0, 0, 1, 1]
    b = [0, 0, 0, 1]
    h_a = np.log(2)
    h_b = -(0.75 * np.log(0.75) + 0.25 * np.log(0.25))
    mi = 0.5 * np.log(0.5 / (0.5 * 0.75)) + 0.25 * np.log(0.25 / (0.5 * 0.75)) + 0.25 * np.log(
        0.25 / (0.5 * 0.25)
    )
    assert normalized_mutual_info(a, b) == pytest.approx(mi / (0.5 * (h_a + h_b)))


def test_label_agreement():
    true = np.repeat([0, 1, 2], 10)
    pred = np.repeat([5, 3, 9], 10)
    assert label_agreement(true, pred) == 1.0
    pred[:3] = 3
    assert label_agreement(true, pred) == pytest.approx(27 / 30)
    assert label_agreement(true, np.zeros(30)) == pytest.approx(1 / 3)


def test_empty_labelings():
    with pytest.raises(ValueError):
        normalized_mutual_info([], [])
    with pytest.raises(ValueError):
        label_agreement([], [])
