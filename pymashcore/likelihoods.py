from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import warnings

import numpy as np

from ._numerics import dmvnorm, dmvnorm_mat, dnorm, factorize_whitening
from ._threading import map_effect_blocks, resolve_n_threads
from .covariances import get_cov, stack_Ulist
from .data import EffectData, _as_2d_float_array


class CovarianceMode(Enum):
    """How the likelihood covariance varies across effects.

    ``GENERAL`` builds a covariance per effect; ``COMMON`` assumes every
    effect shares the standard-error pattern of the first one and factorizes
    once per mixture component.
    """

    GENERAL = "general"
    COMMON = "common"


@dataclass
class RelativeLikelihoodResult:
    loglik_matrix: np.ndarray
    lfactors: np.ndarray


def _resolve_inputs(
    Bhat: np.ndarray,
    Shat: np.ndarray | float | None,
    V: np.ndarray | None,
    L: np.ndarray | None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray | None]:
    bhat = _as_2d_float_array(Bhat, "Bhat")
    J, Q = bhat.shape
    if L is not None:
        L = np.asarray(L, dtype=float)
        if L.ndim != 2 or L.shape[0] != Q:
            raise ValueError(f"L must have shape ({Q}, R)")
        R = L.shape[1]
    else:
        R = Q
    if Shat is None:
        shat = np.ones((J, R), dtype=float)
    else:
        shat = _as_2d_float_array(Shat, "Shat", shape=(J, R))
    if shat.shape != (J, R):
        raise ValueError(f"Shat must have shape {(J, R)}, got {shat.shape}")
    vmat = np.eye(R, dtype=float) if V is None else np.asarray(V, dtype=float)
    if vmat.shape != (R, R):
        raise ValueError(f"V must have shape {(R, R)}, got {vmat.shape}")
    return bhat, shat, vmat, L


def calc_lik(
    Bhat: np.ndarray,
    Shat: np.ndarray | float | None,
    V: np.ndarray | None,
    Ulist: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
    L: np.ndarray | None = None,
    log: bool = False,
    mode: CovarianceMode = CovarianceMode.GENERAL,
    n_threads: int | None = None,
) -> np.ndarray:
    """Compute the JxP matrix of component likelihoods p(bhat_j | U_p, V_j).

    ``Bhat`` has one effect per row. The covariance of effect ``j`` is
    ``get_cov(Shat[j], V, L)``; with ``mode=COMMON`` only ``Shat[0]`` is used.
    """
    bhat, shat, vmat, L = _resolve_inputs(Bhat, Shat, V, L)
    J, Q = bhat.shape
    u_stack, _ = stack_Ulist(Ulist, R=Q)
    P = u_stack.shape[0]
    mean = np.zeros(Q, dtype=float)
    lik = np.zeros((J, P), dtype=float)

    if mode is CovarianceMode.COMMON:
        sigma = get_cov(shat[0], vmat, L)
        for p in range(P):
            lik[:, p] = dmvnorm_mat(bhat, mean, sigma + u_stack[p], log=True)
    elif mode is CovarianceMode.GENERAL:

        def _block(start: int, stop: int) -> None:
            for j in range(start, stop):
                sigma = get_cov(shat[j], vmat, L)
                for p in range(P):
                    lik[j, p] = dmvnorm(bhat[j], mean, sigma + u_stack[p], log=True)

        map_effect_blocks(_block, J, resolve_n_threads(n_threads))
    else:
        raise ValueError(f"unknown covariance mode: {mode!r}")

    if log:
        return lik
    return np.exp(lik)


def prepare_rooti(
    Shat: np.ndarray,
    V: np.ndarray | None,
    Ulist: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
    L: np.ndarray | None = None,
    mode: CovarianceMode = CovarianceMode.GENERAL,
) -> np.ndarray:
    """Precompute whitening matrices for :func:`calc_lik_rooti`.

    ``Shat`` is the ``(J, R)`` standard-error matrix. Returns shape
    ``(P, Q, Q)`` for ``COMMON`` and ``(J, P, Q, Q)`` for ``GENERAL``
    (``Q = R`` unless ``L`` is given). Point-mass components have no
    whitening matrix, so a singular ``Sigma_j + U_p`` raises.
    """
    S = _as_2d_float_array(Shat, "Shat")
    J, R = S.shape
    Q = R if L is None else np.asarray(L).shape[0]
    _, shat, vmat, L = _resolve_inputs(np.zeros((J, Q)), S, V, L)
    u_stack, _ = stack_Ulist(Ulist, R=Q)
    P = u_stack.shape[0]

    def _whiten(sigma: np.ndarray, j: int, p: int) -> np.ndarray:
        fac = factorize_whitening(sigma)
        if fac.singular:
            raise ValueError(f"covariance for effect {j}, component {p} is singular; no whitening matrix exists")
        return fac.rooti

    if mode is CovarianceMode.COMMON:
        sigma = get_cov(shat[0], vmat, L)
        return np.stack([_whiten(sigma + u_stack[p], 0, p) for p in range(P)], axis=0)
    if mode is not CovarianceMode.GENERAL:
        raise ValueError(f"unknown covariance mode: {mode!r}")
    out = np.empty((J, P, Q, Q), dtype=float)
    for j in range(J):
        sigma = get_cov(shat[j], vmat, L)
        for p in range(P):
            out[j, p] = _whiten(sigma + u_stack[p], j, p)
    return out


def calc_lik_rooti(
    Bhat: np.ndarray,
    rooti: np.ndarray,
    log: bool = False,
    mode: CovarianceMode = CovarianceMode.GENERAL,
) -> np.ndarray:
    """Likelihood matrix from precomputed whitening matrices (no factorization)."""
    bhat = _as_2d_float_array(Bhat, "Bhat")
    J, R = bhat.shape
    rooti = np.asarray(rooti, dtype=float)
    mean = np.zeros(R, dtype=float)

    if mode is CovarianceMode.COMMON:
        if rooti.ndim != 3 or rooti.shape[1:] != (R, R):
            raise ValueError(f"rooti must have shape (P, {R}, {R}) in common mode")
        P = rooti.shape[0]
        lik = np.empty((J, P), dtype=float)
        for p in range(P):
            lik[:, p] = dmvnorm_mat(bhat, mean, rooti[p], log=True, whitened=True)
    elif mode is CovarianceMode.GENERAL:
        if rooti.ndim != 4 or rooti.shape[0] != J or rooti.shape[2:] != (R, R):
            raise ValueError(f"rooti must have shape ({J}, P, {R}, {R}) in general mode")
        P = rooti.shape[1]
        lik = np.empty((J, P), dtype=float)
        for j in range(J):
            for p in range(P):
                lik[j, p] = dmvnorm(bhat[j], mean, rooti[j, p], log=True, whitened=True)
    else:
        raise ValueError(f"unknown covariance mode: {mode!r}")

    if log:
        return lik
    return np.exp(lik)


def calc_lik_univariate(
    bhat: np.ndarray,
    shat: np.ndarray | float,
    v: float,
    U: np.ndarray,
    log: bool = False,
) -> np.ndarray:
    """JxP likelihoods of scalar effects under scalar prior variances ``U``."""
    b = np.asarray(bhat, dtype=float).ravel()
    s = np.broadcast_to(np.asarray(shat, dtype=float), b.shape)
    u = np.asarray(U, dtype=float).ravel()
    if u.size == 0:
        raise ValueError("U cannot be empty")
    sigma = s * s * float(v)
    return dnorm(b[:, None], 0.0, sigma[:, None] + u[None, :], log=log)


def calc_lik_vector(bhat: np.ndarray, V: np.ndarray, Ulist: list[np.ndarray], log: bool = False) -> np.ndarray:
    bhat = np.asarray(bhat, dtype=float)
    u_stack, _ = stack_Ulist(Ulist, R=bhat.size)
    mean = np.zeros_like(bhat)
    out = np.array([dmvnorm(bhat, mean, u_stack[p] + V, log=True) for p in range(u_stack.shape[0])])
    if log:
        return out
    return np.exp(out)


def calc_lik_matrix(
    data: EffectData,
    Ulist: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
    log: bool = False,
    mode: CovarianceMode | None = None,
    n_threads: int | None = None,
) -> np.ndarray:
    """Likelihood matrix for an :class:`EffectData`, picking the common path when possible."""
    if mode is None:
        mode = CovarianceMode.COMMON if data.standard_errors().is_common_original() else CovarianceMode.GENERAL
    S = data.Shat_orig if data.L is not None else data.Shat
    res = calc_lik(data.Bhat, S, data.V, Ulist, L=data.L, log=log, mode=mode, n_threads=n_threads)

    if np.any(~np.isfinite(res)):
        cols = np.where(np.any(~np.isfinite(res), axis=0))[0]
        if cols.size > 0:
            warnings.warn(
                "Some mixture components produced non-finite likelihoods; "
                f"columns: {', '.join(map(str, cols.tolist()))}",
                RuntimeWarning,
                stacklevel=2,
            )

    return res


def calc_relative_lik_matrix(
    data: EffectData,
    Ulist: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
    mode: CovarianceMode | None = None,
    n_threads: int | None = None,
) -> RelativeLikelihoodResult:
    matrix_llik = calc_lik_matrix(data, Ulist, log=True, mode=mode, n_threads=n_threads)
    lfactors = np.max(matrix_llik, axis=1)
    with np.errstate(invalid="ignore"):
        matrix_llik = matrix_llik - lfactors[:, None]
    return RelativeLikelihoodResult(loglik_matrix=matrix_llik, lfactors=lfactors)


__all__ = [
    "CovarianceMode",
    "RelativeLikelihoodResult",
    "calc_lik",
    "prepare_rooti",
    "calc_lik_rooti",
    "calc_lik_univariate",
    "calc_lik_vector",
    "calc_lik_matrix",
    "calc_relative_lik_matrix",
]
