from __future__ import annotations

from collections.abc import Iterable

import numpy as np


def _to_ulist(Ulist: dict[str, np.ndarray] | Iterable[np.ndarray] | np.ndarray) -> tuple[list[str], list[np.ndarray]]:
    if isinstance(Ulist, dict):
        names = list(Ulist.keys())
        mats = [np.asarray(x, dtype=float) for x in Ulist.values()]
    elif isinstance(Ulist, np.ndarray) and Ulist.ndim == 3:
        mats = [np.asarray(Ulist[p], dtype=float) for p in range(Ulist.shape[0])]
        names = [str(i + 1) for i in range(len(mats))]
    else:
        mats = [np.asarray(x, dtype=float) for x in Ulist]
        names = [str(i + 1) for i in range(len(mats))]
    return names, mats


def stack_Ulist(
    Ulist: dict[str, np.ndarray] | Iterable[np.ndarray] | np.ndarray,
    R: int | None = None,
) -> tuple[np.ndarray, list[str]]:
    """Stack prior covariance matrices into a ``(P, R, R)`` array.

    Accepts a dict of named matrices, a list of matrices, or a 3D array with
    components along the first axis. Returns the stack and component names.
    """
    names, mats = _to_ulist(Ulist)
    if not mats:
        raise ValueError("Ulist cannot be empty")
    if R is None:
        R = mats[0].shape[0] if mats[0].ndim == 2 else -1
    for name, U in zip(names, mats):
        if U.ndim != 2 or U.shape[0] != U.shape[1]:
            raise ValueError(f"Ulist[{name}] must be a square matrix")
        if U.shape[0] != R:
            raise ValueError(f"Ulist[{name}] must have shape ({R}, {R}), got {U.shape}")
        if not np.all(np.isfinite(U)):
            raise ValueError(f"Ulist[{name}] must be finite")
    return np.stack(mats, axis=0), names


def get_cov(s: np.ndarray, V: np.ndarray, L: np.ndarray | None = None) -> np.ndarray:
    """Return ``diag(s) @ V @ diag(s)``, mapped through ``L`` when given."""
    s = np.asarray(s, dtype=float)
    svs = V * s[:, None] * s[None, :]
    if L is None:
        return svs
    return L @ svs @ L.T


def posterior_cov(Vinv: np.ndarray, U: np.ndarray) -> np.ndarray:
    """Posterior covariance ``U (Vinv U + I)^{-1}`` of b given bhat ~ N(b, V), b ~ N(0, U)."""
    R = U.shape[0]
    with np.errstate(all="ignore"):
        system = Vinv @ U + np.eye(R)
    try:
        solved = np.linalg.solve(system, np.eye(R))
    except np.linalg.LinAlgError:
        return np.zeros_like(U, dtype=float)
    with np.errstate(all="ignore"):
        out = U @ solved
    return np.where(np.isfinite(out), out, 0.0)


def posterior_mean(bhat: np.ndarray, Vinv: np.ndarray, U1: np.ndarray) -> np.ndarray:
    return U1 @ (Vinv @ bhat)


def posterior_mean_matrix(Bhat: np.ndarray, Vinv: np.ndarray, U1: np.ndarray) -> np.ndarray:
    # rows of Bhat are effects: (U1 Vinv b_j)' for every j
    with np.errstate(all="ignore"):
        out = Bhat @ (U1 @ Vinv).T
    return np.where(np.isfinite(out), out, 0.0)


__all__ = [
    "stack_Ulist",
    "get_cov",
    "posterior_cov",
    "posterior_mean",
    "posterior_mean_matrix",
]
