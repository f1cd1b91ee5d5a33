from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ._numerics import factorize_whitening
from .covariances import get_cov

# standard error given to missing entries; large enough that they carry no information
MISSING_SE = 1e6


@dataclass
class StandardErrors:
    """Standard errors held by the posterior engines.

    ``Shat`` is the measurement standard error, ``Shat_alpha`` rescales
    posterior outputs (ones unless effects were standardized) and
    ``Shat_orig`` overrides ``Shat`` when building the likelihood covariance,
    which is needed when effects are reported on a transformed scale.
    """

    Shat: np.ndarray
    Shat_alpha: np.ndarray
    Shat_orig: np.ndarray | None = None

    @classmethod
    def ones(cls, J: int, R: int) -> "StandardErrors":
        return cls(Shat=np.ones((J, R), dtype=float), Shat_alpha=np.ones((J, R), dtype=float))

    @classmethod
    def build(
        cls,
        shape: tuple[int, int],
        Shat: np.ndarray | float | None = None,
        Shat_alpha: np.ndarray | float | None = None,
        Shat_orig: np.ndarray | None = None,
    ) -> "StandardErrors":
        """Validate the three matrices against ``shape``; omitted ones default to ones."""
        J, _ = shape
        se = cls.ones(*shape)
        if Shat is not None:
            se.Shat = _as_2d_float_array(Shat, "Shat", shape=shape)
        if Shat_alpha is not None:
            se.Shat_alpha = _as_2d_float_array(Shat_alpha, "Shat_alpha", shape=shape)
        for name in ("Shat", "Shat_alpha"):
            got = getattr(se, name).shape
            if got != shape:
                raise ValueError(f"{name} must have shape {shape}, got {got}")
        if Shat_orig is not None:
            orig = _as_2d_float_array(Shat_orig, "Shat_orig")
            if orig.shape[0] != J:
                raise ValueError(f"Shat_orig must have {J} rows, got {orig.shape[0]}")
            se.Shat_orig = orig
        return se

    def get(self) -> np.ndarray:
        return self.Shat_alpha

    def get_original(self) -> np.ndarray:
        if self.Shat_orig is None:
            return self.Shat
        return self.Shat_orig

    def is_common_original(self) -> bool:
        return _rows_all_close(self.get_original())

    def is_common_alpha(self) -> bool:
        return _rows_all_close(self.Shat_alpha)


def _rows_all_close(S: np.ndarray) -> bool:
    if S.shape[0] <= 1:
        return True
    return bool(np.all(np.isclose(S, S[0], equal_nan=True), axis=1).all())


@dataclass
class EffectData:
    """Effect estimates and error model, created by :func:`set_effect_data`.

    - ``Bhat``: effect-size matrix ``(J, R)`` (possibly alpha-scaled)
    - ``Shat``: standard-error matrix ``(J, R)`` (possibly alpha-scaled)
    - ``Shat_alpha``: output rescaling, ones unless ``alpha != 0``
    - ``V``: residual correlation ``(R0, R0)``
    - ``L`` / ``Shat_orig``: set by :func:`set_contrast`; the covariance of
      effect ``j`` is then ``L diag(Shat_orig[j]) V diag(Shat_orig[j]) L'``
    """

    Bhat: np.ndarray
    Shat: np.ndarray
    Shat_alpha: np.ndarray
    V: np.ndarray
    alpha: float = 0.0
    L: np.ndarray | None = None
    Shat_orig: np.ndarray | None = None

    @property
    def n_effects(self) -> int:
        return int(self.Bhat.shape[0])

    @property
    def n_conditions(self) -> int:
        return int(self.Bhat.shape[1])

    def standard_errors(self) -> StandardErrors:
        return StandardErrors(
            Shat=self.Shat,
            Shat_alpha=self.Shat_alpha,
            Shat_orig=self.Shat_orig if self.L is not None else None,
        )

    def get_cov(self, j: int) -> np.ndarray:
        """Return the likelihood covariance matrix for effect j."""
        if j < 0 or j >= self.n_effects:
            raise IndexError("j out of bounds")
        return get_cov(self.standard_errors().get_original()[j], self.V, self.L)

    def is_common_cov(self) -> bool:
        se = self.standard_errors()
        return se.is_common_original() and se.is_common_alpha()


def _as_2d_float_array(x: np.ndarray | float, name: str, shape: tuple[int, int] | None = None) -> np.ndarray:
    arr = np.array(x, dtype=float)
    if arr.ndim == 0:
        if shape is None:
            raise ValueError(f"{name} scalar requires target shape")
        arr = np.full(shape, float(arr), dtype=float)
    if arr.ndim != 2:
        raise ValueError(f"{name} must be a 2D array")
    return arr


def _check_correlation(V: np.ndarray | None, R: int) -> np.ndarray:
    if V is None:
        return np.eye(R, dtype=float)
    V = np.asarray(V, dtype=float)
    if V.shape != (R, R):
        raise ValueError(f"V must have shape {(R, R)}, got {V.shape}")
    if not np.all(np.isfinite(V)) or not np.allclose(V, V.T, atol=1e-10, rtol=0.0):
        raise ValueError("V must be a finite symmetric matrix")
    if factorize_whitening(V).singular:
        raise ValueError("V must be positive definite")
    return V


def set_effect_data(
    Bhat: np.ndarray,
    Shat: np.ndarray | float | None = None,
    alpha: float = 0.0,
    V: np.ndarray | None = None,
) -> EffectData:
    """Build an :class:`EffectData` from effect estimates and standard errors.

    Parameters
    ----------
    Bhat : np.ndarray
        Observed effects, shape ``(J, R)``. NaN marks a missing entry.
    Shat : np.ndarray or float, optional
        Standard errors, ``(J, R)`` or a scalar; ones by default.
    alpha : float
        Effects are modelled on the ``Bhat / Shat**alpha`` scale, so
        ``alpha=1`` works with z-scores. ``Shat_alpha = Shat**alpha`` maps
        posterior summaries back to the scale of ``Bhat``.
    V : np.ndarray, optional
        Residual correlation among conditions, identity by default.

    Entries missing in either ``Bhat`` or ``Shat`` enter the model as
    ``bhat = 0`` with standard error ``MISSING_SE`` and no rescaling.
    """
    bhat = _as_2d_float_array(Bhat, "Bhat")
    se = StandardErrors.build(bhat.shape, Shat=Shat)
    shat = se.Shat

    if np.any(np.isinf(bhat)) or np.any(np.isinf(shat)):
        raise ValueError("Bhat and Shat cannot contain Inf values")
    missing = np.isnan(bhat) | np.isnan(shat)
    if np.any(shat[~missing] <= 0.0):
        raise ValueError("Shat must be positive wherever Bhat is observed")
    vmat = _check_correlation(V, bhat.shape[1])

    # Shat / Shat**alpha == Shat**(1 - alpha)
    se.Shat_alpha = np.where(missing, 1.0, shat**alpha)
    se.Shat = np.where(missing, MISSING_SE, shat / se.Shat_alpha)
    bhat = np.where(missing, 0.0, bhat / se.Shat_alpha)

    return EffectData(Bhat=bhat, Shat=se.Shat, Shat_alpha=se.Shat_alpha, V=vmat, alpha=float(alpha))


def baseline_contrast(R: int, ref: int = 0) -> np.ndarray:
    """``(R-1, R)`` transform taking every other condition minus condition ``ref``."""
    if not 0 <= ref < R:
        raise ValueError(f"ref must be a condition index in [0, {R}), got {ref}")
    L = np.zeros((R - 1, R), dtype=float)
    L[np.arange(R - 1), np.delete(np.arange(R), ref)] = 1.0
    L[:, ref] = -1.0
    return L


def set_contrast(data: EffectData, L: np.ndarray) -> EffectData:
    """Move effect data into the space of the baseline transform ``L``.

    The original standard errors become ``Shat_orig``, from which the
    likelihood covariance ``L diag(s) V diag(s) L'`` of each effect is built;
    ``Shat`` holds the marginal standard errors of the transformed effects.
    """
    L = np.asarray(L, dtype=float)
    if L.ndim != 2 or L.shape[1] != data.n_conditions:
        raise ValueError(f"L must have shape (Q, {data.n_conditions}), got {L.shape}")
    if data.L is not None:
        raise ValueError("The data is already configured for contrast analysis")

    orig = np.array(data.Shat, copy=True)
    LS = L[None, :, :] * orig[:, None, :]
    var = np.einsum("jqa,ab,jqb->jq", LS, data.V, LS)
    return EffectData(
        Bhat=data.Bhat @ L.T,
        Shat=np.sqrt(np.maximum(var, 0.0)),
        Shat_alpha=np.ones((data.n_effects, L.shape[0]), dtype=float),
        V=data.V,
        alpha=0.0,
        L=L,
        Shat_orig=orig,
    )


__all__ = [
    "MISSING_SE",
    "StandardErrors",
    "EffectData",
    "set_effect_data",
    "baseline_contrast",
    "set_contrast",
]
