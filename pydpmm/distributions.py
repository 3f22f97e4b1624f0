from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.linalg import solve_triangular
from scipy.special import gammaln, multigammaln
from scipy.stats import invwishart

from .stats import SufficientStats

__names__ = ["GaussianParams", "StudentT", "NIWPrior", "NIWPosterior"]

LOG_2PI = np.log(2 * np.pi)
LOG_PI = np.log(np.pi)


def _cholesky(A: np.ndarray) -> np.ndarray:
    """Lower Cholesky factor; raises ``np.linalg.LinAlgError`` if not positive definite."""
    return np.linalg.cholesky(A)


def _logdet_chol(L: np.ndarray) -> float:
    return 2.0 * float(np.sum(np.log(np.diag(L))))


def _jittered_cholesky(A: np.ndarray, max_tries: int = 6) -> Tuple[np.ndarray, np.ndarray]:
    """
    Cholesky factor of ``A``, adding diagonal jitter until it factorises.

    Returns the (possibly regularised) matrix together with its factor.
    """
    A = 0.5 * (A + A.T)
    try:
        return A, _cholesky(A)
    except np.linalg.LinAlgError:
        pass
    scale = max(float(np.mean(np.abs(np.diag(A)))), 1.0)
    jitter = 1e-10 * scale
    eye = np.eye(A.shape[0])
    for _ in range(max_tries):
        A_j = A + jitter * eye
        try:
            return A_j, _cholesky(A_j)
        except np.linalg.LinAlgError:
            jitter *= 100
    raise np.linalg.LinAlgError("Matrix is not positive definite, even with jitter.")


class GaussianParams:
    """
    Mean and covariance of one Gaussian component.

    The Cholesky factor and log-determinant of the covariance are computed
    once at construction so that :meth:`logpdf` only needs triangular solves.

    Parameters
    ----------
    mean : np.ndarray (d,)
    cov : np.ndarray (d, d)
        Covariance. Regularised with diagonal jitter if it does not factorise.
    chol : np.ndarray (d, d), optional
        Precomputed lower Cholesky factor of ``cov``.
    """

    def __init__(self, mean: np.ndarray, cov: np.ndarray, chol: Optional[np.ndarray] = None):
        self.mean = np.asarray(mean, dtype=float)
        cov = np.atleast_2d(np.asarray(cov, dtype=float))
        if chol is None:
            cov, chol = _jittered_cholesky(cov)
        self.cov = cov
        self.chol = chol
        self.logdet = _logdet_chol(chol)

    @property
    def dim(self) -> int:
        return self.mean.shape[0]

    def logpdf(self, X: np.ndarray) -> np.ndarray:
        """Row-wise Gaussian log density of ``X`` (n, d)."""
        diff = np.atleast_2d(X) - self.mean
        z = solve_triangular(self.chol, diff.T, lower=True, check_finite=False)
        maha = np.einsum("ij,ij->j", z, z)
        return -0.5 * (self.dim * LOG_2PI + self.logdet + maha)


class StudentT:
    """
    Multivariate Student-t distribution, the posterior predictive of an NIW model.

    Parameters
    ----------
    df : float
        Degrees of freedom.
    loc : np.ndarray (d,)
    shape : np.ndarray (d, d)
        Scale matrix. Regularised with diagonal jitter if it does not factorise.
    """

    def __init__(self, df: float, loc: np.ndarray, shape: np.ndarray):
        self.df = float(df)
        self.loc = np.asarray(loc, dtype=float)
        self.shape, self.chol = _jittered_cholesky(np.atleast_2d(np.asarray(shape, dtype=float)))
        self.logdet = _logdet_chol(self.chol)
        d = self.dim
        self._log_norm = (
            gammaln(0.5 * (self.df + d))
            - gammaln(0.5 * self.df)
            - 0.5 * d * (np.log(self.df) + LOG_PI)
            - 0.5 * self.logdet
        )

    @property
    def dim(self) -> int:
        return self.loc.shape[0]

    def logpdf(self, X: np.ndarray) -> np.ndarray:
        """Row-wise log density of ``X`` (n, d)."""
        diff = np.atleast_2d(X) - self.loc
        z = solve_triangular(self.chol, diff.T, lower=True, check_finite=False)
        maha = np.einsum("ij,ij->j", z, z)
        return self._log_norm - 0.5 * (self.df + self.dim) * np.log1p(maha / self.df)


@dataclass(frozen=True, eq=False)
class NIWPrior:
    """
    Normal-Inverse-Wishart prior over the mean and covariance of a Gaussian.

    ``Sigma ~ IW(nu0, psi0)`` and ``mu | Sigma ~ N(mu0, Sigma / kappa0)``.

    Parameters
    ----------
    mu0 : np.ndarray (d,)
        Prior mean.
    kappa0 : float
        Prior strength of the mean (pseudo-count).
    nu0 : float
        Degrees of freedom, must exceed ``d - 1``.
    psi0 : np.ndarray (d, d)
        Scale matrix, symmetric positive definite.

    Examples
    --------
        prior = NIWPrior.default(2)
        post = prior.posterior(SufficientStats.from_points(X))
        prior.log_marginal_likelihood(SufficientStats.from_points(X))
    """

    mu0: np.ndarray
    kappa0: float
    nu0: float
    psi0: np.ndarray

    def __post_init__(self):
        mu0 = np.atleast_1d(np.asarray(self.mu0, dtype=float))
        psi0 = np.atleast_2d(np.asarray(self.psi0, dtype=float))
        d = mu0.shape[0]
        if mu0.ndim != 1:
            raise ValueError("`mu0` must be a vector.")
        if psi0.shape != (d, d):
            raise ValueError(
                f"`psi0` must have shape ({d}, {d}) to match `mu0`, got {psi0.shape}."
            )
        if not np.allclose(psi0, psi0.T):
            raise ValueError("`psi0` must be symmetric.")
        if self.kappa0 <= 0:
            raise ValueError("`kappa0` must be positive.")
        if self.nu0 <= d - 1:
            raise ValueError(f"`nu0` must be greater than d - 1 = {d - 1}.")
        try:
            chol = _cholesky(psi0)
        except np.linalg.LinAlgError as e:
            raise ValueError("`psi0` must be positive definite.") from e
        object.__setattr__(self, "mu0", mu0)
        object.__setattr__(self, "psi0", psi0)
        object.__setattr__(self, "kappa0", float(self.kappa0))
        object.__setattr__(self, "nu0", float(self.nu0))
        object.__setattr__(self, "_logdet_psi0", _logdet_chol(chol))

    @classmethod
    def default(cls, dim: int, mean: Optional[np.ndarray] = None) -> "NIWPrior":
        """Weakly informative prior: ``kappa0=1``, ``nu0=d+3``, ``psi0=I``."""
        mu0 = np.zeros(dim) if mean is None else np.asarray(mean, dtype=float)
        return cls(mu0=mu0, kappa0=1.0, nu0=dim + 3.0, psi0=np.eye(dim))

    @property
    def dim(self) -> int:
        return self.mu0.shape[0]

    def posterior(self, stats: SufficientStats) -> "NIWPosterior":
        """
        Conjugate update of the prior with the statistics of a point set.

        An empty set returns the prior itself, so clusters passing through
        very small counts always keep a well-defined posterior.
        """
        if stats.dim != self.dim:
            raise ValueError(
                f"Statistics have dimension {stats.dim}, prior has dimension {self.dim}."
            )
        n = stats.n
        kappa_n = self.kappa0 + n
        nu_n = self.nu0 + n
        mu_n = (self.kappa0 * self.mu0 + stats.x_sum) / kappa_n
        psi_n = (
            self.psi0
            + stats.xx_sum
            + self.kappa0 * np.outer(self.mu0, self.mu0)
            - kappa_n * np.outer(mu_n, mu_n)
        )
        psi_n = 0.5 * (psi_n + psi_n.T)
        return NIWPosterior(mu_n, kappa_n, nu_n, psi_n)

    def log_marginal_likelihood(self, stats: SufficientStats) -> float:
        r"""
        Log evidence of a point set with the Gaussian parameters integrated out.

        $$ \log p(X) = -\frac{nd}{2}\log\pi
            + \log\Gamma_d(\nu_n/2) - \log\Gamma_d(\nu_0/2)
            + \frac{\nu_0}{2}\log|\Psi_0| - \frac{\nu_n}{2}\log|\Psi_n|
            + \frac{d}{2}(\log\kappa_0 - \log\kappa_n) $$

        Determinants are taken through Cholesky factors.

        Raises
        ------
        np.linalg.LinAlgError
            If the posterior scale matrix is not positive definite.
        """
        post = self.posterior(stats)
        d = self.dim
        logdet_psi_n = _logdet_chol(_cholesky(post.psi))
        return float(
            -0.5 * stats.n * d * LOG_PI
            + multigammaln(0.5 * post.nu, d)
            - multigammaln(0.5 * self.nu0, d)
            + 0.5 * self.nu0 * self._logdet_psi0
            - 0.5 * post.nu * logdet_psi_n
            + 0.5 * d * (np.log(self.kappa0) - np.log(post.kappa))
        )


class NIWPosterior:
    """
    Normal-Inverse-Wishart posterior of one cluster or sub-cluster.

    Parameters
    ----------
    mu, kappa, nu, psi
        Updated hyperparameters, see :class:`NIWPrior`.
    """

    def __init__(self, mu: np.ndarray, kappa: float, nu: float, psi: np.ndarray):
        self.mu = mu
        self.kappa = kappa
        self.nu = nu
        self.psi = psi

    @property
    def dim(self) -> int:
        return self.mu.shape[0]

    def predictive_params(self) -> Tuple[float, np.ndarray, np.ndarray]:
        """Degrees of freedom, location and shape of the Student-t predictive."""
        df = self.nu - self.dim + 1
        shape = self.psi * (self.kappa + 1) / (self.kappa * df)
        return df, self.mu, shape

    def predictive(self) -> StudentT:
        """Student-t posterior predictive distribution."""
        return StudentT(*self.predictive_params())

    def log_predictive(self, X: np.ndarray) -> np.ndarray:
        """Posterior predictive log density of new points ``X`` (n, d)."""
        return self.predictive().logpdf(X)

    def expected_params(self) -> GaussianParams:
        """Posterior mean of the Gaussian parameters."""
        d = self.dim
        denom = self.nu - d - 1 if self.nu > d + 1 else self.nu
        return GaussianParams(self.mu, self.psi / denom)

    def sample(self, rng: np.random.Generator) -> GaussianParams:
        """Draw a mean and covariance from the posterior."""
        psi, _ = _jittered_cholesky(self.psi)
        cov = np.atleast_2d(invwishart.rvs(df=self.nu, scale=psi, random_state=rng))
        cov, chol = _jittered_cholesky(cov)
        mean = self.mu + chol @ rng.standard_normal(self.dim) / np.sqrt(self.kappa)
        return GaussianParams(mean, cov, chol=chol)
