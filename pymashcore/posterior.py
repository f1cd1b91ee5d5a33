from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntEnum

import numpy as np

from ._numerics import compute_lfsr, pnorm
from ._threading import map_effect_blocks, resolve_n_threads
from .covariances import get_cov, stack_Ulist, posterior_cov, posterior_mean, posterior_mean_matrix
from .data import EffectData, StandardErrors, _as_2d_float_array


class ReportType(IntEnum):
    """Which posterior outputs :class:`PosteriorMASH` fills in.

    ``MEAN`` and ``STANDARD`` leave ``posterior_cov`` at zero,
    ``SECOND_MOMENT`` stores the uncentered second moment in
    ``posterior_cov`` and ``FULL_COV`` stores the posterior covariance.
    """

    MEAN = 1
    SECOND_MOMENT = 2
    STANDARD = 3
    FULL_COV = 4


@dataclass
class PosteriorMatrices:
    posterior_mean: np.ndarray
    posterior_sd: np.ndarray
    posterior_var: np.ndarray
    negative_prob: np.ndarray
    zero_prob: np.ndarray
    lfsr: np.ndarray
    lfdr: np.ndarray
    posterior_cov: np.ndarray | None = None


@dataclass
class _PassTotals:
    mean: np.ndarray
    mean2: np.ndarray
    neg: np.ndarray
    zero: np.ndarray
    second: np.ndarray | None
    mu2: np.ndarray | None


def compute_posterior_weights(pi: np.ndarray, lik_mat: np.ndarray) -> np.ndarray:
    pi = np.asarray(pi, dtype=float)
    lik_mat = np.asarray(lik_mat, dtype=float)
    d = lik_mat * pi[None, :]
    norm = np.sum(d, axis=1, keepdims=True)
    norm = np.maximum(norm, np.finfo(float).tiny)
    return d / norm


def _check_weights(w: np.ndarray, J: int, P: int, name: str) -> np.ndarray:
    w = np.asarray(w, dtype=float)
    if w.shape != (J, P):
        raise ValueError(f"{name} must have shape {(J, P)} (effects x components), got {w.shape}")
    if not np.all(np.isfinite(w)):
        raise ValueError(f"{name} must be finite")
    if np.any(w < 0.0):
        raise ValueError(f"{name} cannot contain negative values")
    return w


def _check_cube(x: np.ndarray | None, shape: tuple[int, ...], name: str) -> np.ndarray | None:
    if x is None:
        return None
    arr = np.asarray(x, dtype=float)
    if arr.shape != shape:
        raise ValueError(f"{name} must have shape {shape}, got {arr.shape}")
    return arr


def _component_row_stats(mu: np.ndarray, var: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Second moment, P(b < 0) and P(b == 0) for normal posteriors N(mu, var).

    Zero-variance entries are point masses at ``mu``: never negative, always
    zero.
    """
    null = var == 0.0
    with np.errstate(all="ignore"):
        neg = pnorm(0.0, mean=mu, sd=np.sqrt(var))
    neg = np.where(np.isfinite(neg) & ~null, neg, 0.0)
    return mu * mu + var, neg, null.astype(float)


def _rescale(
    mu: np.ndarray,
    U0: np.ndarray,
    s_alpha: np.ndarray,
    A: np.ndarray | None,
) -> tuple[np.ndarray, np.ndarray]:
    with np.errstate(all="ignore"):
        mu1 = mu * s_alpha
        U1 = U0 * s_alpha[:, None] * s_alpha[None, :]
        if A is not None:
            mu1 = A @ mu1
            U1 = A @ U1 @ A.T
    return np.where(np.isfinite(mu1), mu1, 0.0), np.where(np.isfinite(U1), U1, 0.0)


def _effect_components(
    bhat: np.ndarray,
    Vinv: np.ndarray,
    u_stack: np.ndarray,
    U0_j: np.ndarray | None,
    s_alpha: np.ndarray,
    A: np.ndarray | None,
) -> tuple[np.ndarray, np.ndarray]:
    """Per-component posterior means ``(P, Q)`` and covariances ``(P, Q, Q)`` for one effect."""
    means = []
    covs = []
    for p in range(u_stack.shape[0]):
        U0 = posterior_cov(Vinv, u_stack[p]) if U0_j is None else U0_j[p]
        with np.errstate(all="ignore"):
            mu = posterior_mean(bhat, Vinv, U0)
        mu1, U1 = _rescale(mu, U0, s_alpha, A)
        means.append(mu1)
        covs.append(U1)
    return np.array(means), np.array(covs)


def _general_pass(
    bhat: np.ndarray,
    se: StandardErrors,
    V: np.ndarray,
    L: np.ndarray | None,
    A: np.ndarray | None,
    u_stack: np.ndarray,
    Vinv: np.ndarray | None,
    U0: np.ndarray | None,
    weights: np.ndarray,
    accumulate_second: bool,
    variable_weights: np.ndarray | None,
    n_threads: int,
) -> _PassTotals:
    J = bhat.shape[0]
    P = u_stack.shape[0]
    Q = bhat.shape[1] if A is None else A.shape[0]
    s_orig = se.get_original()
    s_alpha = se.get()

    mean = np.zeros((J, Q), dtype=float)
    mean2 = np.zeros((J, Q), dtype=float)
    neg = np.zeros((J, Q), dtype=float)
    zero = np.zeros((J, Q), dtype=float)
    second = np.zeros((J, Q, Q), dtype=float) if accumulate_second else None

    def _block(start: int, stop: int) -> np.ndarray | None:
        mu2 = None if variable_weights is None else np.zeros((P, Q, Q), dtype=float)
        for j in range(start, stop):
            if Vinv is None:
                Vinv_j = np.linalg.inv(get_cov(s_orig[j], V, L))
            else:
                Vinv_j = Vinv[j]
            mu1, U1 = _effect_components(
                bhat[j],
                Vinv_j,
                u_stack,
                None if U0 is None else U0[j],
                s_alpha[j],
                A,
            )
            var = np.maximum(np.diagonal(U1, axis1=1, axis2=2), 0.0)
            m2, ng, zr = _component_row_stats(mu1, var)
            w = weights[j]
            mean[j] = w @ mu1
            mean2[j] = w @ m2
            neg[j] = w @ ng
            zero[j] = w @ zr
            if second is not None or mu2 is not None:
                sec_p = U1 + mu1[:, :, None] * mu1[:, None, :]
                if second is not None:
                    second[j] = np.einsum("p,pqk->qk", w, sec_p)
                if mu2 is not None:
                    mu2 += variable_weights[j][:, None, None] * sec_p
        return mu2

    partial = map_effect_blocks(_block, J, n_threads)
    mu2_total = None
    if variable_weights is not None:
        mu2_total = np.sum(np.stack(partial, axis=0), axis=0)
    return _PassTotals(mean=mean, mean2=mean2, neg=neg, zero=zero, second=second, mu2=mu2_total)


def _common_pass(
    bhat: np.ndarray,
    se: StandardErrors,
    V: np.ndarray,
    L: np.ndarray | None,
    A: np.ndarray | None,
    u_stack: np.ndarray,
    Vinv: np.ndarray | None,
    U0: np.ndarray | None,
    weights: np.ndarray,
    accumulate_second: bool,
    variable_weights: np.ndarray | None,
) -> _PassTotals:
    J = bhat.shape[0]
    P = u_stack.shape[0]
    Q = bhat.shape[1] if A is None else A.shape[0]

    if not (se.is_common_original() and se.is_common_alpha()):
        raise ValueError("Common-covariance posterior called with non-common standard errors")

    mean = np.zeros((J, Q), dtype=float)
    mean2 = np.zeros((J, Q), dtype=float)
    neg = np.zeros((J, Q), dtype=float)
    zero = np.zeros((J, Q), dtype=float)
    second = np.zeros((J, Q, Q), dtype=float) if accumulate_second else None
    mu2 = None if variable_weights is None else np.zeros((P, Q, Q), dtype=float)
    if J == 0:
        return _PassTotals(mean=mean, mean2=mean2, neg=neg, zero=zero, second=second, mu2=mu2)

    if Vinv is None:
        Vinv = np.linalg.inv(get_cov(se.get_original()[0], V, L))
    s_alpha = se.get()
    a0 = s_alpha[0]

    for p in range(P):
        U0_p = posterior_cov(Vinv, u_stack[p]) if U0 is None else U0[p]
        mu = posterior_mean_matrix(bhat, Vinv, U0_p)
        with np.errstate(all="ignore"):
            mu1 = mu * s_alpha
            U1 = U0_p * a0[:, None] * a0[None, :]
            if A is not None:
                mu1 = mu1 @ A.T
                U1 = A @ U1 @ A.T
        mu1 = np.where(np.isfinite(mu1), mu1, 0.0)
        U1 = np.where(np.isfinite(U1), U1, 0.0)

        var = np.maximum(np.diag(U1), 0.0)
        m2, ng, zr = _component_row_stats(mu1, np.broadcast_to(var, mu1.shape))
        w = weights[:, p][:, None]
        mean += w * mu1
        mean2 += w * m2
        neg += w * ng
        zero += w * zr

        if second is not None or mu2 is not None:
            sec_p = U1[None, :, :] + np.einsum("jq,jk->jqk", mu1, mu1)
            if second is not None:
                second += weights[:, p][:, None, None] * sec_p
            if mu2 is not None:
                mu2[p] = np.einsum("j,jqk->qk", variable_weights[:, p], sec_p)

    return _PassTotals(mean=mean, mean2=mean2, neg=neg, zero=zero, second=second, mu2=mu2)


def _finalize(totals: _PassTotals, center_cov: bool) -> PosteriorMatrices:
    J, Q = totals.mean.shape
    res_post_var = np.maximum(0.0, totals.mean2 - totals.mean * totals.mean)
    res_post_sd = np.sqrt(res_post_var)
    res_lfsr = compute_lfsr(totals.neg, totals.zero)

    if totals.second is None:
        res_post_cov = np.zeros((Q, Q, J), dtype=float)
    else:
        sec = totals.second
        if center_cov:
            sec = sec - np.einsum("jq,jk->jqk", totals.mean, totals.mean)
        res_post_cov = np.transpose(sec, (1, 2, 0))

    return PosteriorMatrices(
        posterior_mean=totals.mean,
        posterior_sd=res_post_sd,
        posterior_var=res_post_var,
        negative_prob=totals.neg,
        zero_prob=totals.zero,
        lfsr=res_lfsr,
        lfdr=totals.zero,
        posterior_cov=res_post_cov,
    )


def _engine_inputs(
    Bhat: np.ndarray,
    Ulist: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
    Shat: np.ndarray | float | None,
    Shat_alpha: np.ndarray | float | None,
    Shat_orig: np.ndarray | None,
    V: np.ndarray | None,
    L: np.ndarray | None,
) -> tuple[np.ndarray, StandardErrors, np.ndarray, np.ndarray | None, np.ndarray, list[str]]:
    bhat = _as_2d_float_array(Bhat, "Bhat")
    J, R = bhat.shape
    se = StandardErrors.build((J, R), Shat=Shat, Shat_alpha=Shat_alpha, Shat_orig=Shat_orig)
    R0 = se.get_original().shape[1]

    if L is not None:
        L = np.asarray(L, dtype=float)
        if L.shape != (R, R0):
            raise ValueError(f"L must have shape {(R, R0)}, got {L.shape}")
    elif R0 != R:
        raise ValueError(f"Shat_orig must have {R} columns when L is not given, got {R0}")

    vmat = np.eye(R0, dtype=float) if V is None else np.asarray(V, dtype=float)
    if vmat.shape != (R0, R0):
        raise ValueError(f"V must have shape {(R0, R0)}, got {vmat.shape}")

    u_stack, names = stack_Ulist(Ulist, R=R)
    return bhat, se, vmat, L, u_stack, names


class PosteriorMASH:
    """Posterior summaries under a mixture of multivariate normal priors.

    Parameters
    ----------
    Bhat : np.ndarray
        Effect estimates, shape ``(J, R)``.
    Ulist : list, dict or np.ndarray
        Prior covariance matrices, ``P`` of shape ``(R, R)``.
    Shat, Shat_alpha, Shat_orig : np.ndarray, optional
        Standard errors, see :class:`~pymashcore.data.StandardErrors`.
        ``Shat`` defaults to ones.
    V : np.ndarray, optional
        Residual correlation, identity by default.
    L : np.ndarray, optional
        Baseline transform applied to the scaled residual covariance;
        ``Shat_orig`` then lives in the untransformed space.
    A : np.ndarray, optional
        ``(Q, R)`` embedding applied to posterior means and covariances.
    Vinv : np.ndarray, optional
        Precomputed inverse likelihood covariances, ``(J, R, R)`` for
        :meth:`compute_posterior` or ``(R, R)`` for
        :meth:`compute_posterior_comcov`.
    U0 : np.ndarray, optional
        Precomputed posterior covariances, ``(J, P, R, R)`` or ``(P, R, R)``
        respectively.
    n_threads : int, optional
        Worker threads for the per-effect path; see
        :func:`~pymashcore.check_threading`.
    """

    def __init__(
        self,
        Bhat: np.ndarray,
        Ulist: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
        Shat: np.ndarray | float | None = None,
        Shat_alpha: np.ndarray | float | None = None,
        Shat_orig: np.ndarray | None = None,
        V: np.ndarray | None = None,
        L: np.ndarray | None = None,
        A: np.ndarray | None = None,
        *,
        Vinv: np.ndarray | None = None,
        U0: np.ndarray | None = None,
        n_threads: int | None = None,
    ) -> None:
        self.Bhat, self.se, self.V, self.L, self.U, self.names = _engine_inputs(
            Bhat, Ulist, Shat, Shat_alpha, Shat_orig, V, L
        )
        R = self.n_conditions
        if A is not None:
            A = np.asarray(A, dtype=float)
            if A.ndim != 2 or A.shape[1] != R:
                raise ValueError(f"A must have shape (Q, {R})")
        self.A = A
        self.Vinv = None if Vinv is None else np.asarray(Vinv, dtype=float)
        self.U0 = None if U0 is None else np.asarray(U0, dtype=float)
        self.n_threads = resolve_n_threads(n_threads)

    @classmethod
    def from_data(
        cls,
        data: EffectData,
        Ulist: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
        A: np.ndarray | None = None,
        **kwargs,
    ) -> "PosteriorMASH":
        return cls(
            data.Bhat,
            Ulist,
            Shat=data.Shat,
            Shat_alpha=data.Shat_alpha,
            Shat_orig=data.Shat_orig if data.L is not None else None,
            V=data.V,
            L=data.L,
            A=A,
            **kwargs,
        )

    @property
    def n_effects(self) -> int:
        return int(self.Bhat.shape[0])

    @property
    def n_conditions(self) -> int:
        return int(self.Bhat.shape[1])

    @property
    def n_components(self) -> int:
        return int(self.U.shape[0])

    def _check_report_type(self, report_type: int) -> ReportType:
        try:
            return ReportType(int(report_type))
        except ValueError as exc:
            raise ValueError(f"report_type must be one of 1, 2, 3, 4, got {report_type!r}") from exc

    def compute_posterior(
        self,
        posterior_weights: np.ndarray,
        report_type: int = ReportType.STANDARD,
    ) -> PosteriorMatrices:
        """Posterior summaries with an effect-specific likelihood covariance.

        ``posterior_weights`` has shape ``(J, P)``: the probability of each
        mixture component for each effect.
        """
        report = self._check_report_type(report_type)
        J, R, P = self.n_effects, self.n_conditions, self.n_components
        weights = _check_weights(posterior_weights, J, P, "posterior_weights")
        Vinv = _check_cube(self.Vinv, (J, R, R), "Vinv")
        U0 = _check_cube(self.U0, (J, P, R, R), "U0")

        totals = _general_pass(
            self.Bhat,
            self.se,
            self.V,
            self.L,
            self.A,
            self.U,
            Vinv,
            U0,
            weights,
            accumulate_second=report in (ReportType.SECOND_MOMENT, ReportType.FULL_COV),
            variable_weights=None,
            n_threads=self.n_threads,
        )
        return _finalize(totals, center_cov=report is ReportType.FULL_COV)

    def compute_posterior_comcov(
        self,
        posterior_weights: np.ndarray,
        report_type: int = ReportType.STANDARD,
    ) -> PosteriorMatrices:
        """Posterior summaries when every effect shares one likelihood covariance."""
        report = self._check_report_type(report_type)
        J, R, P = self.n_effects, self.n_conditions, self.n_components
        weights = _check_weights(posterior_weights, J, P, "posterior_weights")
        Vinv = _common_vinv(self.Vinv, R)
        U0 = _check_cube(self.U0, (P, R, R), "U0")

        totals = _common_pass(
            self.Bhat,
            self.se,
            self.V,
            self.L,
            self.A,
            self.U,
            Vinv,
            U0,
            weights,
            accumulate_second=report in (ReportType.SECOND_MOMENT, ReportType.FULL_COV),
            variable_weights=None,
        )
        return _finalize(totals, center_cov=report is ReportType.FULL_COV)


def _common_vinv(Vinv: np.ndarray | None, R: int) -> np.ndarray | None:
    if Vinv is None:
        return None
    if Vinv.ndim == 3 and Vinv.shape[0] >= 1:
        Vinv = Vinv[0]
    return _check_cube(Vinv, (R, R), "Vinv")


def compute_posterior_matrices(
    data: EffectData,
    Ulist: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
    posterior_weights: np.ndarray,
    A: np.ndarray | None = None,
    output_posterior_cov: bool = False,
    n_threads: int | None = None,
) -> PosteriorMatrices:
    engine = PosteriorMASH.from_data(data, Ulist, A=A, n_threads=n_threads)
    report = ReportType.FULL_COV if output_posterior_cov else ReportType.STANDARD

    if data.is_common_cov():
        res = engine.compute_posterior_comcov(posterior_weights, report)
    else:
        res = engine.compute_posterior(posterior_weights, report)

    if not output_posterior_cov:
        res = replace(res, posterior_cov=None)
    return res


__all__ = [
    "ReportType",
    "PosteriorMatrices",
    "PosteriorMASH",
    "compute_posterior_weights",
    "compute_posterior_matrices",
]
