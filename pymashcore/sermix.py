"""Mixture-prior posteriors for a multivariate single-effect regression.

Inside an iterative single-effect-regression solver each "effect" is a
candidate variable. Besides the posterior summaries of :mod:`pymashcore.posterior`
this engine performs the EM M-step for a scalar multiplier on each prior
covariance: with ``Uinv`` the inverses of the prior shapes,

    prior_scalar[p] = tr(Uinv[p] @ sum_j alpha[j, p] E[b b' | j, p]) / R

where ``alpha`` are the posterior inclusion (variable) weights.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ._threading import resolve_n_threads
from .posterior import (
    PosteriorMatrices,
    _check_cube,
    _check_weights,
    _common_pass,
    _common_vinv,
    _engine_inputs,
    _finalize,
    _general_pass,
)


@dataclass
class SERPosterior:
    posterior: PosteriorMatrices
    prior_scalar: np.ndarray | None = None


class MVSERMix:
    """Single-effect-regression posterior engine with optional prior-scalar EM.

    Takes the same inputs as :class:`~pymashcore.posterior.PosteriorMASH`
    without the baseline transform and embedding. Supplying ``Uinv``
    (``(P, R, R)``) switches on the prior-scalar update.
    """

    def __init__(
        self,
        Bhat: np.ndarray,
        Ulist: dict[str, np.ndarray] | list[np.ndarray] | np.ndarray,
        Shat: np.ndarray | float | None = None,
        Shat_alpha: np.ndarray | float | None = None,
        Shat_orig: np.ndarray | None = None,
        V: np.ndarray | None = None,
        *,
        Vinv: np.ndarray | None = None,
        U0: np.ndarray | None = None,
        Uinv: np.ndarray | None = None,
        n_threads: int | None = None,
    ) -> None:
        self.Bhat, self.se, self.V, _, self.U, self.names = _engine_inputs(
            Bhat, Ulist, Shat, Shat_alpha, Shat_orig, V, None
        )
        self.Vinv = None if Vinv is None else np.asarray(Vinv, dtype=float)
        self.U0 = None if U0 is None else np.asarray(U0, dtype=float)
        self.Uinv = None if Uinv is None else np.asarray(Uinv, dtype=float)
        self.n_threads = resolve_n_threads(n_threads)

    @property
    def n_effects(self) -> int:
        return int(self.Bhat.shape[0])

    @property
    def n_conditions(self) -> int:
        return int(self.Bhat.shape[1])

    @property
    def n_components(self) -> int:
        return int(self.U.shape[0])

    def _prepare(
        self,
        posterior_weights: np.ndarray,
        posterior_variable_weights: np.ndarray | None,
    ) -> tuple[np.ndarray, np.ndarray | None, np.ndarray | None]:
        J, R, P = self.n_effects, self.n_conditions, self.n_components
        weights = _check_weights(posterior_weights, J, P, "posterior_weights")
        Uinv = _check_cube(self.Uinv, (P, R, R), "Uinv")
        variable_weights = None
        if Uinv is not None:
            if posterior_variable_weights is None:
                raise ValueError("posterior_variable_weights is required when Uinv is set")
            variable_weights = _check_weights(posterior_variable_weights, J, P, "posterior_variable_weights")
        return weights, variable_weights, Uinv

    def _prior_scalar(self, Uinv: np.ndarray | None, mu2: np.ndarray | None) -> np.ndarray | None:
        if Uinv is None:
            return None
        return np.einsum("pqk,pkq->p", Uinv, mu2) / self.n_conditions

    def compute_posterior(
        self,
        posterior_weights: np.ndarray,
        posterior_variable_weights: np.ndarray | None = None,
    ) -> SERPosterior:
        """Posterior summaries (with full covariance) and the prior-scalar update.

        Both weight matrices have shape ``(J, P)``.
        """
        weights, variable_weights, Uinv = self._prepare(posterior_weights, posterior_variable_weights)
        J, R, P = self.n_effects, self.n_conditions, self.n_components
        totals = _general_pass(
            self.Bhat,
            self.se,
            self.V,
            None,
            None,
            self.U,
            _check_cube(self.Vinv, (J, R, R), "Vinv"),
            _check_cube(self.U0, (J, P, R, R), "U0"),
            weights,
            accumulate_second=True,
            variable_weights=variable_weights,
            n_threads=self.n_threads,
        )
        return SERPosterior(
            posterior=_finalize(totals, center_cov=True),
            prior_scalar=self._prior_scalar(Uinv, totals.mu2),
        )

    def compute_posterior_comcov(
        self,
        posterior_weights: np.ndarray,
        posterior_variable_weights: np.ndarray | None = None,
    ) -> SERPosterior:
        weights, variable_weights, Uinv = self._prepare(posterior_weights, posterior_variable_weights)
        R, P = self.n_conditions, self.n_components
        totals = _common_pass(
            self.Bhat,
            self.se,
            self.V,
            None,
            None,
            self.U,
            _common_vinv(self.Vinv, R),
            _check_cube(self.U0, (P, R, R), "U0"),
            weights,
            accumulate_second=True,
            variable_weights=variable_weights,
        )
        return SERPosterior(
            posterior=_finalize(totals, center_cov=True),
            prior_scalar=self._prior_scalar(Uinv, totals.mu2),
        )


__all__ = ["SERPosterior", "MVSERMix"]
