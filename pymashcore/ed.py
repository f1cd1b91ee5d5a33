from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.special import logsumexp

from ._numerics import mvn_logpdf_batch
from .covariances import stack_Ulist
from .data import EffectData


@dataclass
class TeemResult:
    w: np.ndarray
    U: list[np.ndarray]
    objective: np.ndarray
    maxd: np.ndarray


def _softmax_rows(logP: np.ndarray) -> np.ndarray:
    return np.exp(logP - logsumexp(logP, axis=1, keepdims=True))


def shrink_cov(V: np.ndarray, eps: float) -> np.ndarray:
    eigval, eigvec = np.linalg.eigh(V)
    eigval = np.where(eigval > 1.0, eigval, 1.0 + eps)
    return eigvec @ np.diag(eigval) @ eigvec.T


class TEEM:
    """Truncated-eigenvalue extreme deconvolution on z-scores.

    ``X`` holds one z-score vector per row (``n x R``), ``w`` the initial
    mixture weights and ``U`` the initial prior covariances. Each component
    models ``X`` as ``N(0, U_k + I)``; the M-step floors the eigenvalues of
    ``U_k + I`` at one so that ``U_k`` stays positive semi-definite.
    """

    def __init__(
        self,
        X: np.ndarray,
        w: np.ndarray,
        U: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
    ) -> None:
        X = np.asarray(X, dtype=float)
        if X.ndim != 2:
            raise ValueError("X must be 2D")
        self.X = X
        R = X.shape[1]
        u_stack, _ = stack_Ulist(U, R=R)
        k = u_stack.shape[0]

        w = np.asarray(w, dtype=float).ravel()
        if w.shape != (k,):
            raise ValueError("w has wrong length")
        if np.any(w < 0):
            raise ValueError("w cannot contain negatives")
        if np.sum(w) == 0:
            raise ValueError("w must have positive sum")
        self.w = w / np.sum(w)
        self.T = [u_stack[j] + np.eye(R, dtype=float) for j in range(k)]
        self.objective = np.zeros(0, dtype=float)
        self.maxd = np.zeros(0, dtype=float)

    def _loglik(self) -> float:
        R = self.X.shape[1]
        comp = [
            np.log(np.maximum(self.w[j], np.finfo(float).tiny)) + mvn_logpdf_batch(self.X, np.zeros(R), cov)
            for j, cov in enumerate(self.T)
        ]
        return float(np.sum(logsumexp(np.column_stack(comp), axis=1)))

    def fit(self, maxiter: int = 5000, tol: float = 1e-7, verbose: bool = False, eigen_tol: float = 1e-7) -> int:
        """Iterate until the largest weight change drops below ``tol``.

        Returns the number of completed iterations.
        """
        X = self.X
        n, R = X.shape
        k = len(self.T)
        objectives: list[float] = []
        maxd_list: list[float] = []

        for it in range(maxiter):
            w0 = self.w.copy()

            logP = np.empty((n, k), dtype=float)
            for j in range(k):
                ll = mvn_logpdf_batch(X, np.zeros(R, dtype=float), self.T[j])
                logP[:, j] = np.log(np.maximum(self.w[j], np.finfo(float).tiny)) + ll

            P = _softmax_rows(logP)

            XT = X.T
            for j in range(k):
                pj = P[:, j]
                denom = float(np.sum(pj))
                if denom <= np.finfo(float).tiny:
                    continue
                cov = XT @ (pj[:, None] * X) / denom
                self.T[j] = shrink_cov(cov, eigen_tol)

            self.w = np.mean(P, axis=0)

            f = self._loglik()
            d = float(np.max(np.abs(self.w - w0)))
            objectives.append(f)
            maxd_list.append(d)

            if verbose and (it % 50 == 0 or d < tol):
                print(f"[TEEM] iter={it} objective={f:.6f} maxd={d:.3e}")

            if d < tol:
                break

        self.objective = np.array(objectives, dtype=float)
        self.maxd = np.array(maxd_list, dtype=float)
        return len(objectives)

    def get_objective(self) -> np.ndarray:
        return self.objective

    def get_maxd(self) -> np.ndarray:
        return self.maxd

    def get_w(self) -> np.ndarray:
        return self.w

    def get_U(self) -> list[np.ndarray]:
        R = self.X.shape[1]
        return [cov - np.eye(R, dtype=float) for cov in self.T]


def teem_wrapper(
    data: EffectData,
    Ulist_init: dict[str, np.ndarray] | list[np.ndarray],
    subset: np.ndarray | list[int] | None = None,
    w_init: np.ndarray | None = None,
    max_iter: int = 5000,
    converge_tol: float = 1e-7,
    eigen_tol: float = 1e-7,
    verbose: bool = False,
) -> TeemResult:
    """Fit TEEM on the z-scores of ``data``."""
    if subset is None:
        subset_idx = np.arange(data.n_effects)
    else:
        subset_idx = np.asarray(subset, dtype=int)

    X = data.Bhat[subset_idx] / data.Shat[subset_idx]
    k = len(Ulist_init)
    w = np.full(k, 1.0 / k, dtype=float) if w_init is None else w_init

    model = TEEM(X, w, Ulist_init)
    model.fit(maxiter=max_iter, tol=converge_tol, verbose=verbose, eigen_tol=eigen_tol)
    return TeemResult(
        w=model.get_w(),
        U=model.get_U(),
        objective=model.get_objective(),
        maxd=model.get_maxd(),
    )


__all__ = ["TeemResult", "TEEM", "shrink_cov", "teem_wrapper"]
