from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ._numerics import compute_lfsr
from .posterior import _check_weights, _component_row_stats


@dataclass
class UnivariatePosterior:
    posterior_mean: np.ndarray
    posterior_sd: np.ndarray
    posterior_var: np.ndarray
    negative_prob: np.ndarray
    zero_prob: np.ndarray
    lfsr: np.ndarray


def _as_vector(x: np.ndarray | float | None, J: int, name: str) -> np.ndarray:
    if x is None:
        return np.ones(J, dtype=float)
    arr = np.asarray(x, dtype=float)
    if arr.ndim == 0:
        return np.full(J, float(arr))
    arr = arr.ravel()
    if arr.shape != (J,):
        raise ValueError(f"{name} must have length {J}, got {arr.size}")
    return arr


class PosteriorASH:
    """Univariate counterpart of :class:`~pymashcore.posterior.PosteriorMASH`.

    Each effect has one condition, so the conjugate update is closed form:
    with ``vinv = 1 / (shat^2 v)`` the component posterior variance is
    ``U_p / (vinv U_p + 1)``.
    """

    def __init__(
        self,
        bhat: np.ndarray,
        U: np.ndarray,
        shat: np.ndarray | float | None = None,
        shat_alpha: np.ndarray | float | None = None,
        v: float = 1.0,
    ) -> None:
        self.bhat = np.asarray(bhat, dtype=float).ravel()
        J = self.bhat.size
        self.shat = _as_vector(shat, J, "shat")
        self.shat_alpha = _as_vector(shat_alpha, J, "shat_alpha")
        self.v = float(v)
        self.U = np.asarray(U, dtype=float).ravel()
        if self.U.size == 0:
            raise ValueError("U cannot be empty")
        if np.any(self.U < 0.0):
            raise ValueError("prior variances U cannot be negative")

    def compute_posterior(self, posterior_weights: np.ndarray) -> UnivariatePosterior:
        """Marginal posterior summaries; ``posterior_weights`` has shape ``(J, P)``."""
        J, P = self.bhat.size, self.U.size
        w = _check_weights(posterior_weights, J, P, "posterior_weights")

        with np.errstate(divide="ignore", invalid="ignore"):
            vinv = 1.0 / (self.shat * self.shat * self.v)
            U1 = self.U[None, :] / (vinv[:, None] * self.U[None, :] + 1.0)
            U1 = np.where(np.isfinite(U1), U1, 0.0)
            a = self.shat_alpha[:, None]
            mu1 = U1 * (vinv * self.bhat)[:, None] * a
        mu1 = np.where(np.isfinite(mu1), mu1, 0.0)
        U1 = U1 * a * a

        mu2, neg, zero = _component_row_stats(mu1, U1)
        post_mean = np.sum(w * mu1, axis=1)
        post_var = np.maximum(0.0, np.sum(w * mu2, axis=1) - post_mean * post_mean)
        neg_prob = np.sum(w * neg, axis=1)
        zero_prob = np.sum(w * zero, axis=1)

        return UnivariatePosterior(
            posterior_mean=post_mean,
            posterior_sd=np.sqrt(post_var),
            posterior_var=post_var,
            negative_prob=neg_prob,
            zero_prob=zero_prob,
            lfsr=compute_lfsr(neg_prob, zero_prob),
        )


__all__ = ["UnivariatePosterior", "PosteriorASH"]
