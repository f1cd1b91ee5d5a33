"""Posterior engine for multivariate adaptive shrinkage (mash).

Densities
---------
dnorm, dmvnorm, dmvnorm_mat
    Univariate and multivariate normal densities; a covariance that cannot
    be factorized is treated as a point mass at the mean.
factorize_whitening
    Cholesky-based whitening matrix, or a singular marker.
pnorm
    Normal CDF with log and upper-tail variants.

Covariance algebra
------------------
get_cov
    ``diag(s) V diag(s)``, optionally mapped through a baseline transform.
posterior_cov, posterior_mean
    Conjugate normal posterior covariance and mean.

Data setup
----------
set_effect_data
    Validate Bhat/Shat and apply the alpha (z-score) transform.
baseline_contrast, set_contrast
    Common-baseline contrasts.
StandardErrors
    Standard errors used for the likelihood and for output rescaling.

Likelihoods
-----------
calc_lik, calc_lik_rooti, calc_lik_univariate
    Effects x components likelihood matrices (raw covariances, precomputed
    whitening matrices, scalar effects).
prepare_rooti
    Precompute whitening matrices for repeated likelihood evaluation.
calc_lik_matrix, calc_relative_lik_matrix
    Likelihood matrix for an :class:`EffectData`.

Posteriors
----------
PosteriorMASH
    Posterior mean/sd/covariance and sign probabilities under a mixture prior.
MVSERMix
    The same for a single-effect regression, with the prior-scalar EM update.
PosteriorASH
    Univariate closed-form version.
compute_posterior_weights, compute_posterior_matrices
    Functional helpers around :class:`PosteriorMASH`.

Extreme deconvolution
---------------------
TEEM, teem_wrapper
    Truncated-eigenvalue extreme deconvolution.

Simulation
----------
simulate_mixture
    Draw effects from a normal mixture prior observed with noise.
"""

from importlib.metadata import version as _get_version

try:
    __version__ = _get_version("pymashcore")
except Exception:
    __version__ = "0.0.0"

from ._numerics import (
    Whitening,
    compute_lfsr,
    dmvnorm,
    dmvnorm_mat,
    dnorm,
    factorize_whitening,
    pnorm,
)
from ._threading import check_threading
from .ash import PosteriorASH, UnivariatePosterior
from .covariances import get_cov, stack_Ulist, posterior_cov, posterior_mean, posterior_mean_matrix
from .data import EffectData, StandardErrors, baseline_contrast, set_contrast, set_effect_data
from .ed import TEEM, TeemResult, teem_wrapper
from .likelihoods import (
    CovarianceMode,
    RelativeLikelihoodResult,
    calc_lik,
    calc_lik_matrix,
    calc_lik_rooti,
    calc_lik_univariate,
    calc_lik_vector,
    calc_relative_lik_matrix,
    prepare_rooti,
)
from .posterior import (
    PosteriorMASH,
    PosteriorMatrices,
    ReportType,
    compute_posterior_matrices,
    compute_posterior_weights,
)
from .sermix import MVSERMix, SERPosterior
from .simulations import simulate_mixture

__all__ = [
    "Whitening",
    "factorize_whitening",
    "dnorm",
    "dmvnorm",
    "dmvnorm_mat",
    "pnorm",
    "compute_lfsr",
    "check_threading",
    "get_cov",
    "stack_Ulist",
    "posterior_cov",
    "posterior_mean",
    "posterior_mean_matrix",
    "EffectData",
    "StandardErrors",
    "set_effect_data",
    "baseline_contrast",
    "set_contrast",
    "CovarianceMode",
    "RelativeLikelihoodResult",
    "calc_lik",
    "prepare_rooti",
    "calc_lik_rooti",
    "calc_lik_univariate",
    "calc_lik_vector",
    "calc_lik_matrix",
    "calc_relative_lik_matrix",
    "ReportType",
    "PosteriorMatrices",
    "PosteriorMASH",
    "compute_posterior_weights",
    "compute_posterior_matrices",
    "MVSERMix",
    "SERPosterior",
    "PosteriorASH",
    "UnivariatePosterior",
    "TEEM",
    "TeemResult",
    "teem_wrapper",
    "simulate_mixture",
]
