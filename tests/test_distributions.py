import numpy as np
import pytest
from scipy.stats import multivariate_normal

from pydpmm.distributions import GaussianParams, NIWPrior
from pydpmm.stats import SufficientStats


@pytest.fixture
def prior():
    return NIWPrior(mu0=np.array([0.5, -1.0]), kappa0=0.5, nu0=4.0, psi0=np.array([[2.0, 0.3], [0.3, 1.0]]))


@pytest.fixture
def points():
    return np.random.default_rng(3).normal(size=(12, 2)) * [1.0, 2.0] + [1.0, 0.0]


def test_default_prior():
    p = NIWPrior.default(3)
    assert p.dim == 3
    assert p.kappa0 == 1.0
    assert p.nu0 == 6.0
    np.testing.assert_array_equal(p.psi0, np.eye(3))
    np.testing.assert_array_equal(NIWPrior.default(2, mean=[1, 2]).mu0, [1.0, 2.0])


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(mu0=[0.0, 0.0], kappa0=0.0, nu0=4.0, psi0=np.eye(2)),
        dict(mu0=[0.0, 0.0], kappa0=1.0, nu0=1.0, psi0=np.eye(2)),
        dict(mu0=[0.0, 0.0], kappa0=1.0, nu0=4.0, psi0=np.eye(3)),
        dict(mu0=[0.0, 0.0], kappa0=1.0, nu0=4.0, psi0=np.array([[1.0, 2.0], [2.0, 1.0]])),
        dict(mu0=[0.0, 0.0], kappa0=1.0, nu0=4.0, psi0=np.array([[1.0, 0.5], [0.0, 1.0]])),
    ],
)
def test_prior_validation(kwargs):
    with pytest.raises(ValueError):
        NIWPrior(**kwargs)


def test_empty_posterior_is_prior(prior):
    post = prior.posterior(SufficientStats.zeros(2))
    np.testing.assert_allclose(post.mu, prior.mu0)
    np.testing.assert_allclose(post.psi, prior.psi0)
    assert post.kappa == prior.kappa0
    assert post.nu == prior.nu0
    assert prior.log_marginal_likelihood(SufficientStats.zeros(2)) == pytest.approx(0.0, abs=1e-9)


def test_posterior_update(prior, points):
    post = prior.posterior(SufficientStats.from_points(points))
    n = points.shape[0]
    assert post.kappa == prior.kappa0 + n
    assert post.nu == prior.nu0 + n
    expected_mu = (prior.kappa0 * prior.mu0 + points.sum(axis=0)) / (prior.kappa0 + n)
    np.testing.assert_allclose(post.mu, expected_mu)
    xbar = points.mean(axis=0)
    scatter = (points - xbar).T @ (points - xbar)
    d = xbar - prior.mu0
    expected_psi = prior.psi0 + scatter + prior.kappa0 * n / (prior.kappa0 + n) * np.outer(d, d)
    np.testing.assert_allclose(post.psi, expected_psi)


def test_marginal_likelihood_chain_rule(prior, points):
    """log p(x_1..x_n) equals the sum of sequential posterior predictive log densities."""
    total = 0.0
    for i in range(points.shape[0]):
        post = prior.posterior(SufficientStats.from_points(points[:i]) if i else SufficientStats.zeros(2))
        total += float(post.log_predictive(points[i])[0])
    lml = prior.log_marginal_likelihood(SufficientStats.from_points(points))
    assert lml == pytest.approx(total, rel=1e-8)


def test_marginal_likelihood_degenerate_raises(prior):
    bad = SufficientStats(5, np.zeros(2), -100.0 * np.eye(2))
    with pytest.raises(np.linalg.LinAlgError):
        prior.log_marginal_likelihood(bad)


def test_marginal_likelihood_dimension_mismatch(prior):
    with pytest.raises(ValueError):
        prior.log_marginal_likelihood(SufficientStats.zeros(3))


def test_small_counts_give_valid_posterior(prior):
    """Fewer points than dimensions still yield a proper posterior."""
    post = prior.posterior(SufficientStats.from_points(np.array([[3.0, 3.0]])))
    assert np.all(np.linalg.eigvalsh(post.psi) > 0)
    params = post.sample(np.random.default_rng(0))
    assert np.all(np.isfinite(params.logpdf(np.zeros((1, 2)))))


def test_gaussian_logpdf_matches_scipy():
    mean = np.array([1.0, -2.0, 0.5])
    A = np.array([[2.0, 0.3, 0.1], [0.3, 1.0, -0.2], [0.1, -0.2, 0.5]])
    X = np.random.default_rng(5).normal(size=(20, 3))
    g = GaussianParams(mean, A)
    np.testing.assert_allclose(g.logpdf(X), multivariate_normal(mean, A).logpdf(X))


def test_gaussian_jitters_singular_covariance():
    g = GaussianParams(np.zeros(2), np.array([[1.0, 1.0], [1.0, 1.0]]))
    assert np.all(np.isfinite(g.logpdf(np.array([[0.0, 0.0], [1.0, -1.0]]))))


def test_sample_reproducible(prior, points):
    post = prior.posterior(SufficientStats.from_points(points))
    a = post.sample(np.random.default_rng(11))
    b = post.sample(np.random.default_rng(11))
    np.testing.assert_array_equal(a.mean, b.mean)
    np.testing.assert_array_equal(a.cov, b.cov)
    assert a.cov.shape == (2, 2)
    assert np.all(np.linalg.eigvalsh(a.cov) > 0)


def test_sample_concentrates_with_data():
    rng = np.random.default_rng(2)
    X = rng.normal(size=(5000, 2)) @ np.diag([1.0, 3.0]) + [4.0, -2.0]
    post = NIWPrior.default(2).posterior(SufficientStats.from_points(X))
    params = post.sample(rng)
    np.testing.assert_allclose(params.mean, [4.0, -2.0], atol=0.2)
    np.testing.assert_allclose(np.diag(params.cov), [1.0, 9.0], rtol=0.15)
    expected = post.expected_params()
    np.testing.assert_allclose(expected.mean, [4.0, -2.0], atol=0.2)


def test_predictive_params(prior, points):
    post = prior.posterior(SufficientStats.from_points(points))
    df, loc, shape = post.predictive_params()
    assert df == pytest.approx(post.nu - 1)
    np.testing.assert_allclose(loc, post.mu)
    np.testing.assert_allclose(shape, post.psi * (post.kappa + 1) / (post.kappa * df))


def test_student_t_matches_scipy(prior, points):
    from scipy.stats import multivariate_t

    post = prior.posterior(SufficientStats.from_points(points))
    df, loc, shape = post.predictive_params()
    X = np.random.default_rng(8).normal(size=(15, 2)) * 3
    np.testing.assert_allclose(
        post.predictive().logpdf(X), multivariate_t(loc=loc, shape=shape, df=df).logpdf(X)
    )
    np.testing.assert_allclose(post.log_predictive(X), post.predictive().logpdf(X))
    assert post.log_predictive(X[0]).shape == (1,)
