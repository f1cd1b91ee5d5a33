from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.linalg import solve_triangular
from scipy.special import erfc

LOG_2PI = float(np.log(2.0 * np.pi))
LOG_INV_SQRT_2PI = -0.5 * LOG_2PI

# L1 distance under which a draw coincides with the mean of a point mass.
POINT_MASS_TOL = 1e-6


@dataclass(frozen=True)
class Whitening:
    """Result of factorizing a covariance for density evaluation.

    ``rooti`` is the inverse of the lower Cholesky factor, so that
    ``rooti.T @ rooti`` is the inverse covariance. It is ``None`` when the
    covariance could not be factorized, in which case the distribution is
    treated as a point mass at its mean.
    """

    rooti: np.ndarray | None

    @property
    def singular(self) -> bool:
        return self.rooti is None


def factorize_whitening(sigma: np.ndarray) -> Whitening:
    sigma = np.asarray(sigma, dtype=float)
    if sigma.ndim != 2 or sigma.shape[0] != sigma.shape[1]:
        raise ValueError("sigma must be square")
    try:
        L = np.linalg.cholesky(sigma)
    except np.linalg.LinAlgError:
        return Whitening(rooti=None)
    rooti = solve_triangular(L, np.eye(sigma.shape[0]), lower=True, check_finite=False)
    return Whitening(rooti=rooti)


def _point_mass_density(X: np.ndarray, mean: np.ndarray, log: bool) -> np.ndarray:
    diff_l1 = np.sum(np.abs(X - mean[None, :]), axis=1)
    out = np.full(X.shape[0], -np.inf if log else 0.0)
    out[diff_l1 < POINT_MASS_TOL] = np.inf
    return out


def dnorm(
    x: np.ndarray | float,
    mean: np.ndarray | float = 0.0,
    variance: np.ndarray | float = 1.0,
    log: bool = False,
) -> np.ndarray:
    """Elementwise univariate normal density parameterized by variance."""
    x = np.asarray(x, dtype=float)
    mean = np.asarray(mean, dtype=float)
    variance = np.asarray(variance, dtype=float)
    res = LOG_INV_SQRT_2PI - 0.5 * np.log(variance) - (x - mean) ** 2 / (2.0 * variance)
    if log:
        return res
    return np.exp(res)


def dmvnorm_mat(
    X: np.ndarray,
    mean: np.ndarray,
    sigma: np.ndarray,
    log: bool = False,
    whitened: bool = False,
) -> np.ndarray:
    """Multivariate normal density for every row of ``X`` under one covariance.

    With ``whitened=True`` the ``sigma`` argument is a precomputed ``rooti``
    (see :func:`factorize_whitening`) and no factorization is done. A
    covariance that cannot be factorized is treated as a point mass at
    ``mean``: rows within ``1e-6`` (L1) of the mean get ``inf``, the rest get
    zero density.
    """
    X = np.asarray(X, dtype=float)
    mean = np.asarray(mean, dtype=float)
    sigma = np.asarray(sigma, dtype=float)

    if X.ndim != 2:
        raise ValueError("X must be 2D")
    if mean.ndim != 1:
        raise ValueError("mean must be 1D")
    if sigma.ndim != 2 or sigma.shape[0] != sigma.shape[1]:
        raise ValueError("sigma must be square")
    if X.shape[1] != mean.size or sigma.shape[0] != mean.size:
        raise ValueError("shape mismatch between X, mean, and sigma")

    if whitened:
        rooti = sigma
    else:
        fac = factorize_whitening(sigma)
        if fac.singular:
            return _point_mass_density(X, mean, log)
        rooti = fac.rooti

    R = X.shape[1]
    z = rooti @ (X - mean[None, :]).T
    quad = np.sum(z * z, axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        rootisum = np.sum(np.log(np.diag(rooti)))
    out = -0.5 * R * LOG_2PI - 0.5 * quad + rootisum
    if log:
        return out
    return np.exp(out)


def dmvnorm(
    x: np.ndarray,
    mean: np.ndarray,
    sigma: np.ndarray,
    log: bool = False,
    whitened: bool = False,
) -> float:
    x = np.asarray(x, dtype=float)
    if x.ndim != 1:
        raise ValueError("x must be 1D")
    return float(dmvnorm_mat(x[None, :], mean, sigma, log=log, whitened=whitened)[0])


def mvn_logpdf_batch(X: np.ndarray, mean: np.ndarray, sigma: np.ndarray) -> np.ndarray:
    """Evaluate multivariate normal log-pdf for all rows of X."""
    return dmvnorm_mat(X, mean, sigma, log=True)


def pnorm(
    x: np.ndarray | float,
    mean: np.ndarray | float = 0.0,
    sd: np.ndarray | float = 1.0,
    log: bool = False,
    lower_tail: bool = True,
) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    mean_arr = np.asarray(mean, dtype=float)
    sd_arr = np.asarray(sd, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        z = (x - mean_arr) / sd_arr * np.sqrt(0.5)
        if lower_tail:
            res = 0.5 * erfc(-z)
        else:
            res = 0.5 * erfc(z)
        if log:
            return np.log(res)
    return res


def compute_lfsr(neg_prob: np.ndarray, zero_prob: np.ndarray) -> np.ndarray:
    threshold = 0.5 * (1.0 - zero_prob)
    lfsr = np.where(neg_prob > threshold, 1.0 - neg_prob, neg_prob + zero_prob)
    return np.maximum(lfsr, 0.0)


__all__ = [
    "Whitening",
    "factorize_whitening",
    "dnorm",
    "dmvnorm",
    "dmvnorm_mat",
    "mvn_logpdf_batch",
    "pnorm",
    "compute_lfsr",
]
