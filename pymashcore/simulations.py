from __future__ import annotations

import numpy as np

from .covariances import get_cov, stack_Ulist


def simulate_mixture(
    n_effects: int,
    Ulist: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
    pi: np.ndarray | None = None,
    Shat: np.ndarray | float = 1.0,
    V: np.ndarray | None = None,
    seed: int | None = None,
) -> dict[str, np.ndarray]:
    """Simulate effects from a normal mixture prior observed with noise.

    Each true effect ``b_j`` is drawn from ``N(0, U_p)`` with component ``p``
    chosen according to ``pi`` (uniform by default), and observed as
    ``bhat_j ~ N(b_j, diag(s_j) V diag(s_j))``.

    Returns
    -------
    dict
        ``{"B": true_effects, "Bhat": observed, "Shat": standard_errors,
        "component": component_index}``.

    Examples
    --------
    >>> sim = simulate_mixture(200, [np.zeros((3, 3)), np.eye(3)], seed=1)
    >>> sim["Bhat"].shape
    (200, 3)
    """
    u_stack, _ = stack_Ulist(Ulist)
    P, R = u_stack.shape[0], u_stack.shape[1]
    rng = np.random.default_rng(seed)

    if pi is None:
        pi = np.full(P, 1.0 / P, dtype=float)
    pi = np.asarray(pi, dtype=float)
    if pi.shape != (P,) or np.any(pi < 0) or not np.isclose(np.sum(pi), 1.0):
        raise ValueError("pi must be a probability vector with one entry per component")

    shat = np.asarray(Shat, dtype=float)
    if shat.ndim == 0:
        shat = np.full((n_effects, R), float(shat))
    if shat.shape != (n_effects, R):
        raise ValueError(f"Shat must be scalar or have shape {(n_effects, R)}")
    vmat = np.eye(R, dtype=float) if V is None else np.asarray(V, dtype=float)

    comp = rng.choice(P, size=n_effects, p=pi)
    B = np.zeros((n_effects, R), dtype=float)
    Bhat = np.zeros((n_effects, R), dtype=float)
    for j in range(n_effects):
        B[j] = rng.multivariate_normal(np.zeros(R), u_stack[comp[j]], check_valid="ignore", method="eigh")
        noise_cov = get_cov(shat[j], vmat)
        Bhat[j] = B[j] + rng.multivariate_normal(np.zeros(R), noise_cov, check_valid="ignore", method="eigh")

    return {"B": B, "Bhat": Bhat, "Shat": shat, "component": comp}


__all__ = ["simulate_mixture"]
