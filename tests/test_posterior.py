from __future__ import annotations

import numpy as np
import pytest
from scipy.stats import norm

from pymashcore._numerics import compute_lfsr, pnorm
from pymashcore.covariances import get_cov, posterior_cov
from pymashcore.data import set_effect_data
from pymashcore.likelihoods import calc_lik_matrix
from pymashcore.posterior import (
    PosteriorMASH,
    ReportType,
    compute_posterior_matrices,
    compute_posterior_weights,
)


def _random_corr(R: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    m = rng.normal(size=(R, R))
    c = m @ m.T + 0.2 * np.eye(R)
    d = np.sqrt(np.diag(c))
    return c / np.outer(d, d)


def _random_weights(J: int, P: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    W = rng.uniform(size=(J, P))
    return W / np.sum(W, axis=1, keepdims=True)


def _posterior_numpy_ref(
    Bhat: np.ndarray,
    Shat: np.ndarray,
    V: np.ndarray,
    Ulist: list[np.ndarray],
    posterior_weights: np.ndarray,
):
    J, R = Bhat.shape
    P = len(Ulist)

    res_post_mean = np.zeros((J, R), dtype=float)
    res_post_mean2 = np.zeros((J, R), dtype=float)
    res_post_zero = np.zeros((J, R), dtype=float)
    res_post_neg = np.zeros((J, R), dtype=float)
    post_sec_w_sum = np.zeros((J, R, R), dtype=float)

    Vinv_stack = np.linalg.inv(np.stack([get_cov(Shat[j], V) for j in range(J)]))
    Vinv_bhat = np.matmul(Vinv_stack, Bhat[..., None]).squeeze(-1)
    eye_r = np.tile(np.eye(R, dtype=float), (J, 1, 1))

    for p in range(P):
        U = Ulist[p]
        solved = np.linalg.solve(np.matmul(Vinv_stack, U) + eye_r, eye_r)
        U1 = np.matmul(U, solved)
        mu1 = np.matmul(U1, Vinv_bhat[..., None]).squeeze(-1)
        post_var = np.maximum(0.0, np.diagonal(U1, axis1=1, axis2=2))

        w = posterior_weights[:, p][:, None]
        res_post_mean += w * mu1
        res_post_mean2 += w * (mu1 * mu1 + post_var)

        null_cond = post_var == 0.0
        res_post_zero += w * null_cond

        neg_prob = pnorm(0.0, mean=mu1, sd=np.sqrt(np.maximum(post_var, np.finfo(float).tiny)))
        res_post_neg += w * np.where(null_cond, 0.0, neg_prob)

        post_sec_w_sum += posterior_weights[:, p][:, None, None] * (U1 + np.einsum("jq,jk->jqk", mu1, mu1))

    res_post_var = np.maximum(0.0, res_post_mean2 - res_post_mean * res_post_mean)
    post_cov = np.transpose(
        post_sec_w_sum - np.einsum("jq,jk->jqk", res_post_mean, res_post_mean),
        (1, 2, 0),
    )
    return {
        "mean": res_post_mean,
        "sd": np.sqrt(res_post_var),
        "neg": res_post_neg,
        "zero": res_post_zero,
        "lfsr": compute_lfsr(res_post_neg, res_post_zero),
        "cov": post_cov,
    }


def _mixed_ulist(R: int, seed: int) -> list[np.ndarray]:
    v = np.random.default_rng(seed).normal(size=R)
    return [np.zeros((R, R), dtype=float), np.outer(v, v), np.eye(R, dtype=float)]


def test_single_effect_single_component_closed_form():
    engine = PosteriorMASH(np.array([[1.0, 0.0]]), [np.eye(2)], Shat=1.0, V=np.eye(2))
    res = engine.compute_posterior(np.array([[1.0]]))

    np.testing.assert_allclose(res.posterior_mean, [[0.5, 0.0]], atol=1e-12)
    np.testing.assert_allclose(res.posterior_var, [[0.5, 0.5]], atol=1e-12)
    np.testing.assert_allclose(res.posterior_sd, np.sqrt([[0.5, 0.5]]), atol=1e-12)
    np.testing.assert_allclose(res.negative_prob, [[norm.cdf(-0.5 / np.sqrt(0.5)), 0.5]], atol=1e-12)
    np.testing.assert_array_equal(res.zero_prob, [[0.0, 0.0]])
    np.testing.assert_allclose(res.lfsr, [[norm.cdf(-0.5 / np.sqrt(0.5)), 0.5]], atol=1e-12)
    np.testing.assert_array_equal(res.lfdr, res.zero_prob)
    assert res.posterior_cov.shape == (2, 2, 1)
    assert np.all(res.posterior_cov == 0.0)


def test_general_posterior_matches_numpy_reference():
    rng = np.random.default_rng(41)
    J, R = 16, 4
    Bhat = rng.normal(size=(J, R))
    Shat = np.exp(rng.normal(scale=0.2, size=(J, R)))
    V = _random_corr(R, seed=12)
    Ulist = _mixed_ulist(R, seed=13)
    W = _random_weights(J, len(Ulist), seed=14)

    res = PosteriorMASH(Bhat, Ulist, Shat=Shat, V=V).compute_posterior(W, ReportType.FULL_COV)
    ref = _posterior_numpy_ref(Bhat, Shat, V, Ulist, W)

    np.testing.assert_allclose(res.posterior_mean, ref["mean"], atol=1e-10)
    np.testing.assert_allclose(res.posterior_sd, ref["sd"], atol=1e-8)
    np.testing.assert_allclose(res.negative_prob, ref["neg"], atol=1e-10)
    np.testing.assert_allclose(res.zero_prob, ref["zero"], atol=1e-12)
    np.testing.assert_allclose(res.lfsr, ref["lfsr"], atol=1e-10)
    np.testing.assert_allclose(res.posterior_cov, ref["cov"], atol=1e-10)


@pytest.mark.parametrize("with_embedding", [False, True])
def test_common_and_general_paths_agree(with_embedding):
    rng = np.random.default_rng(7)
    J, R = 12, 4
    Bhat = rng.normal(size=(J, R))
    Shat = np.tile(np.exp(rng.normal(scale=0.2, size=R)), (J, 1))
    Shat_alpha = np.tile(np.array([1.0, 2.0, 0.5, 1.5]), (J, 1))
    V = _random_corr(R, seed=8)
    Ulist = _mixed_ulist(R, seed=9)
    W = _random_weights(J, len(Ulist), seed=10)
    A = rng.normal(size=(2, R)) if with_embedding else None

    engine = PosteriorMASH(Bhat, Ulist, Shat=Shat, Shat_alpha=Shat_alpha, V=V, A=A)
    general = engine.compute_posterior(W, ReportType.FULL_COV)
    common = engine.compute_posterior_comcov(W, ReportType.FULL_COV)

    for field in ("posterior_mean", "posterior_sd", "negative_prob", "zero_prob", "lfsr", "posterior_cov"):
        np.testing.assert_allclose(getattr(common, field), getattr(general, field), atol=1e-10, err_msg=field)


def test_zero_component_weight_lands_in_zero_prob():
    rng = np.random.default_rng(15)
    J, R = 5, 3
    W = _random_weights(J, 2, seed=16)
    engine = PosteriorMASH(rng.normal(size=(J, R)), [np.zeros((R, R)), np.eye(R)])
    res = engine.compute_posterior(W)
    np.testing.assert_allclose(res.zero_prob, np.repeat(W[:, [0]], R, axis=1), atol=1e-15)


def test_zero_prior_collapses_posterior():
    Bhat = np.array([[3.0, -2.0], [0.1, 0.4]])
    res = PosteriorMASH(Bhat, [np.zeros((2, 2))]).compute_posterior(np.ones((2, 1)))
    assert np.all(res.posterior_mean == 0.0)
    assert np.all(res.posterior_var == 0.0)
    assert np.all(res.negative_prob == 0.0)
    assert np.all(res.zero_prob == 1.0)
    assert np.all(res.lfsr == 1.0)


def test_report_types_gate_covariance_output():
    rng = np.random.default_rng(17)
    J, R = 6, 3
    Bhat = rng.normal(size=(J, R))
    Ulist = _mixed_ulist(R, seed=18)
    W = _random_weights(J, len(Ulist), seed=19)
    engine = PosteriorMASH(Bhat, Ulist, Shat=np.exp(rng.normal(scale=0.2, size=(J, R))))

    mean_only = engine.compute_posterior(W, ReportType.MEAN)
    standard = engine.compute_posterior(W, ReportType.STANDARD)
    second = engine.compute_posterior(W, ReportType.SECOND_MOMENT)
    full = engine.compute_posterior(W, ReportType.FULL_COV)

    for res in (mean_only, standard):
        assert res.posterior_cov.shape == (R, R, J)
        assert np.all(res.posterior_cov == 0.0)

    np.testing.assert_allclose(standard.posterior_mean, full.posterior_mean)
    outer = np.einsum("jq,jk->qkj", full.posterior_mean, full.posterior_mean)
    np.testing.assert_allclose(full.posterior_cov, second.posterior_cov - outer, atol=1e-12)
    np.testing.assert_allclose(
        np.diagonal(full.posterior_cov, axis1=0, axis2=1),
        full.posterior_var,
        atol=1e-10,
    )
    np.testing.assert_allclose(full.posterior_cov, np.transpose(full.posterior_cov, (1, 0, 2)), atol=1e-12)


def test_embedding_maps_mean_and_covariance():
    rng = np.random.default_rng(20)
    J, R = 8, 3
    Bhat = rng.normal(size=(J, R))
    Shat = np.exp(rng.normal(scale=0.2, size=(J, R)))
    Ulist = _mixed_ulist(R, seed=21)
    W = _random_weights(J, len(Ulist), seed=22)
    A = np.array([[1.0, -1.0, 0.0], [0.5, 0.5, 1.0]])

    plain = PosteriorMASH(Bhat, Ulist, Shat=Shat).compute_posterior(W, ReportType.FULL_COV)
    embedded = PosteriorMASH(Bhat, Ulist, Shat=Shat, A=A).compute_posterior(W, ReportType.FULL_COV)

    np.testing.assert_allclose(embedded.posterior_mean, plain.posterior_mean @ A.T, atol=1e-12)
    for j in range(J):
        expected = A @ plain.posterior_cov[:, :, j] @ A.T
        np.testing.assert_allclose(embedded.posterior_cov[:, :, j], expected, atol=1e-10)


def test_shat_alpha_rescales_outputs():
    rng = np.random.default_rng(23)
    J, R = 7, 2
    Bhat = rng.normal(size=(J, R))
    Ulist = [np.eye(R), np.array([[2.0, 0.5], [0.5, 1.0]])]
    W = _random_weights(J, 2, seed=24)
    alpha = np.exp(rng.normal(scale=0.5, size=(J, R)))

    base = PosteriorMASH(Bhat, Ulist).compute_posterior(W)
    scaled = PosteriorMASH(Bhat, Ulist, Shat=1.0, Shat_alpha=alpha).compute_posterior(W)

    np.testing.assert_allclose(scaled.posterior_mean, alpha * base.posterior_mean, atol=1e-12)
    np.testing.assert_allclose(scaled.posterior_sd, alpha * base.posterior_sd, atol=1e-12)
    np.testing.assert_allclose(scaled.negative_prob, base.negative_prob, atol=1e-12)


def test_precomputed_vinv_and_u0_give_same_result():
    rng = np.random.default_rng(25)
    J, R = 9, 3
    Bhat = rng.normal(size=(J, R))
    Shat = np.exp(rng.normal(scale=0.2, size=(J, R)))
    V = _random_corr(R, seed=26)
    Ulist = _mixed_ulist(R, seed=27)
    W = _random_weights(J, len(Ulist), seed=28)

    Vinv = np.linalg.inv(np.stack([get_cov(Shat[j], V) for j in range(J)]))
    U0 = np.stack([[posterior_cov(Vinv[j], U) for U in Ulist] for j in range(J)])

    raw = PosteriorMASH(Bhat, Ulist, Shat=Shat, V=V).compute_posterior(W, ReportType.FULL_COV)
    cached = PosteriorMASH(Bhat, Ulist, Shat=Shat, V=V, Vinv=Vinv, U0=U0).compute_posterior(W, ReportType.FULL_COV)
    np.testing.assert_allclose(cached.posterior_mean, raw.posterior_mean, atol=1e-12)
    np.testing.assert_allclose(cached.posterior_cov, raw.posterior_cov, atol=1e-12)

    Shat_common = np.tile(Shat[0], (J, 1))
    Vinv0 = np.linalg.inv(get_cov(Shat[0], V))
    U0_common = np.stack([posterior_cov(Vinv0, U) for U in Ulist])
    raw_c = PosteriorMASH(Bhat, Ulist, Shat=Shat_common, V=V).compute_posterior_comcov(W)
    cached_c = PosteriorMASH(Bhat, Ulist, Shat=Shat_common, V=V, Vinv=Vinv0, U0=U0_common).compute_posterior_comcov(W)
    np.testing.assert_allclose(cached_c.posterior_mean, raw_c.posterior_mean, atol=1e-12)
    np.testing.assert_allclose(cached_c.lfsr, raw_c.lfsr, atol=1e-12)


def test_threaded_posterior_matches_single_thread():
    rng = np.random.default_rng(29)
    J, R = 300, 3
    Bhat = rng.normal(size=(J, R))
    Shat = np.exp(rng.normal(scale=0.2, size=(J, R)))
    Ulist = _mixed_ulist(R, seed=30)
    W = _random_weights(J, len(Ulist), seed=31)

    single = PosteriorMASH(Bhat, Ulist, Shat=Shat, n_threads=1).compute_posterior(W, ReportType.FULL_COV)
    threaded = PosteriorMASH(Bhat, Ulist, Shat=Shat, n_threads=4).compute_posterior(W, ReportType.FULL_COV)
    np.testing.assert_array_equal(single.posterior_mean, threaded.posterior_mean)
    np.testing.assert_array_equal(single.lfsr, threaded.lfsr)
    np.testing.assert_array_equal(single.posterior_cov, threaded.posterior_cov)


def test_posterior_rejects_bad_inputs():
    engine = PosteriorMASH(np.zeros((3, 2)), [np.eye(2), np.ones((2, 2))], Shat=np.ones((3, 2)))
    with pytest.raises(ValueError, match="effects x components"):
        engine.compute_posterior(np.ones((2, 3)))
    with pytest.raises(ValueError, match="report_type"):
        engine.compute_posterior(np.full((3, 2), 0.5), report_type=5)
    with pytest.raises(ValueError, match="negative"):
        engine.compute_posterior(np.array([[1.5, -0.5]] * 3))
    with pytest.raises(ValueError, match="U0 must have shape"):
        PosteriorMASH(np.zeros((3, 2)), [np.eye(2)], U0=np.zeros((3, 2, 2))).compute_posterior(np.ones((3, 1)))
    with pytest.raises(ValueError, match="A must have shape"):
        PosteriorMASH(np.zeros((3, 2)), [np.eye(2)], A=np.eye(3))


def test_comcov_rejects_effect_specific_standard_errors():
    Shat = np.array([[1.0, 1.0], [2.0, 1.0]])
    engine = PosteriorMASH(np.zeros((2, 2)), [np.eye(2)], Shat=Shat)
    with pytest.raises(ValueError, match="non-common"):
        engine.compute_posterior_comcov(np.ones((2, 1)))


def test_compute_posterior_weights_normalizes_rows():
    W = compute_posterior_weights(np.array([0.5, 0.5]), np.array([[1.0, 3.0], [2.0, 2.0]]))
    np.testing.assert_allclose(W, [[0.25, 0.75], [0.5, 0.5]])


def test_compute_posterior_matrices_from_effect_data():
    rng = np.random.default_rng(32)
    J, R = 20, 3
    data = set_effect_data(rng.normal(size=(J, R)), Shat=0.7)
    Ulist = _mixed_ulist(R, seed=33)
    pi = np.array([0.5, 0.25, 0.25])
    W = compute_posterior_weights(pi, calc_lik_matrix(data, Ulist))

    res = compute_posterior_matrices(data, Ulist, W)
    assert res.posterior_cov is None
    assert res.posterior_mean.shape == (J, R)
    assert np.all((res.lfsr >= 0.0) & (res.lfsr <= 1.0))

    with_cov = compute_posterior_matrices(data, Ulist, W, output_posterior_cov=True)
    general = PosteriorMASH.from_data(data, Ulist).compute_posterior(W, ReportType.FULL_COV)
    np.testing.assert_allclose(with_cov.posterior_mean, general.posterior_mean, atol=1e-12)
    np.testing.assert_allclose(with_cov.posterior_cov, general.posterior_cov, atol=1e-12)


@pytest.mark.parametrize("common", [False, True])
def test_posterior_summaries_stay_in_range(common):
    rng = np.random.default_rng(34)
    J, R = 40, 4
    Bhat = rng.normal(scale=3.0, size=(J, R))
    if common:
        Shat = np.tile(np.exp(rng.normal(scale=0.5, size=R)), (J, 1))
    else:
        Shat = np.exp(rng.normal(scale=0.5, size=(J, R)))
    V = _random_corr(R, seed=35)
    v = rng.normal(size=R)
    Ulist = _mixed_ulist(R, seed=36) + [np.diag([0.0, 1.0, 0.0, 2.0]), 10.0 * np.outer(v, v) + np.eye(R)]
    W = _random_weights(J, len(Ulist), seed=37)

    engine = PosteriorMASH(Bhat, Ulist, Shat=Shat, V=V)
    run = engine.compute_posterior_comcov if common else engine.compute_posterior
    res = run(W, ReportType.FULL_COV)

    assert np.all(res.posterior_var >= 0.0)
    assert np.all(res.posterior_sd >= 0.0)
    for field in ("negative_prob", "zero_prob", "lfsr"):
        values = getattr(res, field)
        assert np.all((values >= 0.0) & (values <= 1.0 + 1e-12)), field
    assert np.all(res.negative_prob + res.zero_prob <= 1.0 + 1e-12)


@pytest.mark.parametrize("report_type", list(ReportType))
def test_empty_batch_returns_empty_outputs(report_type):
    engine = PosteriorMASH(np.zeros((0, 2)), [np.eye(2)])
    for run in (engine.compute_posterior, engine.compute_posterior_comcov):
        res = run(np.zeros((0, 1)), report_type)
        assert res.posterior_mean.shape == (0, 2)
        assert res.lfsr.shape == (0, 2)
        assert res.posterior_cov.shape == (2, 2, 0)
