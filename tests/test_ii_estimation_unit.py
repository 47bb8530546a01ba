# tests/test_ii_estimation_unit.py
import numpy as np
import pandas as pd
import pytest
import utils_ii as u

import II_estimation as ii
from config_ii import DataColumnsII, IIConfig, PathsII
from ii_core import (
    NumericOverflowError,
    ObservedSample,
    SingularDesignError,
    add_constant_np,
    make_crn_draws,
    ols_np,
)


def _context(sample, n_sims=4, seed=0):
    noise = make_crn_draws(sample.n_obs, n_sims, np.sqrt(1.5), base_seed=seed)
    return ii.build_ii_context(sample, noise)


# ---------------------------------------------------------------------
# Context and Wald distance
# ---------------------------------------------------------------------


def test_wald_distance_known_values():
    assert ii.wald_distance([1.0, 2.0], [1.0, 2.0]) == 0.0
    assert ii.wald_distance([0.0, 0.0], [3.0, 4.0]) == pytest.approx(25.0)
    assert ii.wald_distance([3.0, 4.0], [0.0, 0.0]) == pytest.approx(25.0)


def test_build_ii_context_caches_observed_fit(small_sample):
    ctx = _context(small_sample, n_sims=3)
    assert ctx.n_sims == 3
    assert ctx.n_params == 3
    assert np.allclose(ctx.beta_hat, ols_np(small_sample.X, small_sample.y))
    assert not ctx.beta_hat.flags.writeable
    assert not ctx.noise.flags.writeable
    assert ctx.design_tf.shape == (small_sample.n_obs, 3)
    assert ctx.noise_tf.dtype == u.DTYPE


def test_build_ii_context_noise_shape_mismatch(small_sample):
    with pytest.raises(ValueError):
        ii.build_ii_context(small_sample, np.zeros((small_sample.n_obs + 1, 2)))
    with pytest.raises(ValueError):
        ii.build_ii_context(small_sample, np.zeros(small_sample.n_obs))


def test_build_ii_context_singular_design():
    rng = np.random.default_rng(0)
    x = rng.normal(size=50)
    sample = ObservedSample(X=np.column_stack([x, 2.0 * x]), y=rng.normal(size=50))
    with pytest.raises(SingularDesignError):
        ii.build_ii_context(sample, np.zeros((50, 2)))


# ---------------------------------------------------------------------
# Criterion
# ---------------------------------------------------------------------


@pytest.mark.parametrize("backend", ["tf", "numpy"])
def test_criterion_zero_when_simulation_reproduces_observed_fit(backend):
    rng = np.random.default_rng(1)
    X = rng.normal(size=(500, 2))
    theta_star = np.array([0.3, 0.2, -0.1])
    # No noise anywhere: every simulated dataset equals the observed one.
    sample = ObservedSample(X=X, y=np.exp(add_constant_np(X) @ theta_star))
    ctx = ii.build_ii_context(sample, np.zeros((500, 5)))
    crit = ii.IICriterion(ctx, backend=backend)

    assert crit(theta_star) == pytest.approx(0.0, abs=1e-20)
    assert crit(theta_star + np.array([0.0, 0.1, 0.0])) > 1e-4


def test_criterion_non_negative(small_sample):
    crit = ii.IICriterion(_context(small_sample))
    rng = np.random.default_rng(2)
    for theta in rng.uniform(-1.0, 1.0, size=(20, 3)):
        val = crit(theta)
        assert np.isfinite(val)
        assert val >= 0.0
    assert crit.n_evals == 20


def test_criterion_backends_agree(small_sample):
    ctx = _context(small_sample, n_sims=4)
    crit_tf = ii.IICriterion(ctx, backend="tf")
    crit_np = ii.IICriterion(ctx, backend="numpy")

    for theta in ([0.5, 0.3, -0.2], [0.0, 0.0, 0.0], [1.0, -0.5, 0.4]):
        b_tf = crit_tf.simulated_aux_estimates(theta)
        b_np = crit_np.simulated_aux_estimates(theta)
        assert b_tf.shape == (4, 3)
        assert np.allclose(b_tf, b_np, rtol=1e-9, atol=1e-12)
        assert crit_tf(theta) == pytest.approx(crit_np(theta), rel=1e-8, abs=1e-14)


def test_criterion_is_average_of_per_draw_fits(small_sample):
    ctx = _context(small_sample, n_sims=3)
    crit = ii.IICriterion(ctx, backend="numpy")
    theta = np.array([0.4, 0.1, 0.1])

    betas = [
        ols_np(small_sample.X, np.exp(ctx.design @ theta) + ctx.noise[:, m])
        for m in range(3)
    ]
    beta_tilde = np.mean(betas, axis=0)
    assert np.allclose(crit.simulated_aux_mean(theta), beta_tilde, atol=1e-12)
    assert crit(theta) == pytest.approx(np.sum((ctx.beta_hat - beta_tilde) ** 2), rel=1e-10)


def test_criterion_deterministic_across_calls(small_sample):
    crit = ii.IICriterion(_context(small_sample))
    theta = np.array([0.5, 0.3, -0.2])
    assert crit(theta) == crit(theta)


def test_criterion_contexts_are_independent(small_sample):
    crit_a = ii.IICriterion(_context(small_sample, seed=1))
    theta = np.array([0.5, 0.3, -0.2])
    before = crit_a(theta)

    crit_b = ii.IICriterion(_context(small_sample, seed=2))
    assert crit_b(theta) != before
    assert crit_a(theta) == before


@pytest.mark.parametrize("backend", ["tf", "numpy"])
def test_criterion_overflow_returns_inf_then_raises(small_sample, backend):
    crit = ii.IICriterion(_context(small_sample), backend=backend, max_nonfinite_streak=3)
    bad = np.array([800.0, 0.0, 0.0])

    assert crit(bad) == float("inf")
    assert crit(bad) == float("inf")
    with pytest.raises(NumericOverflowError):
        crit(bad)
    assert crit.n_nonfinite == 3


@pytest.mark.parametrize("backend", ["tf", "numpy"])
def test_criterion_overflowing_wald_distance_counts_towards_streak(small_sample, backend):
    crit = ii.IICriterion(_context(small_sample), backend=backend, max_nonfinite_streak=3)
    # exp(700) is finite but its square is not.
    near_limit = np.array([700.0, 0.0, 0.0])

    assert crit(near_limit) == float("inf")
    assert crit(near_limit) == float("inf")
    with pytest.raises(NumericOverflowError):
        crit(near_limit)
    assert crit.n_nonfinite == 3


def test_criterion_finite_value_resets_overflow_streak(small_sample):
    crit = ii.IICriterion(_context(small_sample), max_nonfinite_streak=2)
    bad = np.array([800.0, 0.0, 0.0])
    good = np.array([0.5, 0.3, -0.2])

    assert crit(bad) == float("inf")
    assert np.isfinite(crit(good))
    assert crit(bad) == float("inf")
    assert crit.n_nonfinite == 2


def test_criterion_rejects_wrong_theta_length(small_sample):
    crit = ii.IICriterion(_context(small_sample))
    with pytest.raises(ValueError):
        crit(np.array([0.1, 0.2]))


def test_criterion_rejects_unknown_backend(small_sample):
    with pytest.raises(ValueError):
        ii.IICriterion(_context(small_sample), backend="jax")


def test_criterion_propagates_singular_design_from_simulated_fit(small_sample, monkeypatch):
    def _singular(*args, **kwargs):
        raise SingularDesignError("collinear")

    crit = ii.IICriterion(_context(small_sample), backend="numpy")
    monkeypatch.setattr(ii, "ols_np", _singular)
    with pytest.raises(SingularDesignError):
        crit(np.array([0.5, 0.3, -0.2]))


def test_criterion_monte_carlo_consistency(synthetic_sample, theta_true):
    crit = ii.IICriterion(_context(synthetic_sample, n_sims=50, seed=3))
    at_truth = crit(theta_true)
    perturbed = crit(theta_true + np.array([0.0, 0.2, 0.0]))

    assert at_truth < 0.02
    assert perturbed > 0.1

    def _spread(n_sims):
        betas = [
            ii.IICriterion(_context(synthetic_sample, n_sims=n_sims, seed=100 + s)).simulated_aux_mean(theta_true)
            for s in range(10)
        ]
        return np.std(betas, axis=0, ddof=1).mean()

    assert _spread(40) < 0.5 * _spread(2)


# ---------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------


def _quadratic(x):
    return float(np.sum((np.asarray(x) - np.array([1.0, -2.0, 3.0])) ** 2))


def test_minimize_nelder_mead_quadratic():
    out = ii.minimize_nelder_mead(_quadratic, np.zeros(3), tol=1e-10, max_iterations=5000)
    assert out["success"] is True
    assert np.allclose(out["theta_hat"], [1.0, -2.0, 3.0], atol=1e-6)
    assert out["loss"] < 1e-10
    assert out["n_fev"] >= out["n_iter"] > 0


def test_minimize_nelder_mead_respects_iteration_budget():
    out = ii.minimize_nelder_mead(_quadratic, np.zeros(3), tol=1e-8, max_iterations=1)
    assert out["success"] is False
    assert out["n_iter"] == 1
    assert np.isfinite(out["loss"])


def test_minimize_nelder_mead_prints_progress(capsys):
    ii.minimize_nelder_mead(_quadratic, np.zeros(3), max_iterations=20, print_every=5)
    captured = capsys.readouterr().out
    assert "iter     5" in captured
    assert "loss=" in captured


# ---------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------


def test_estimate_ii_end_to_end_recovers_truth(synthetic_sample, theta_true):
    out = ii.estimate_ii(synthetic_sample, IIConfig())

    assert out["success"] is True
    assert out["loss"] < 1e-6
    assert np.all(np.abs(out["theta_hat"] - theta_true) < 0.05)
    assert np.allclose(out["theta0"], out["beta_hat"])
    assert np.allclose(out["beta_tilde"], out["beta_hat"], atol=1e-3)
    assert out["n_sims"] == 10


def test_estimate_ii_iteration_budget_is_not_fatal(small_sample, capsys):
    out = ii.estimate_ii(small_sample, IIConfig(optimizer_max_iterations=1))
    assert out["success"] is False
    assert out["n_iter"] == 1
    assert "did not converge" in capsys.readouterr().out


def test_estimate_ii_singular_observed_design():
    rng = np.random.default_rng(4)
    x = rng.normal(size=40)
    sample = ObservedSample(X=np.column_stack([x, x]), y=rng.normal(size=40))
    with pytest.raises(SingularDesignError, match="observed data"):
        ii.estimate_ii(sample, IIConfig(n_sims=2))


def test_estimate_ii_persistent_overflow_aborts(small_sample):
    cfg = IIConfig(n_sims=2, max_nonfinite_streak=5)
    with pytest.raises(NumericOverflowError, match="Criterion evaluation failed"):
        ii.estimate_ii(small_sample, cfg, theta0=np.array([800.0, 0.0, 0.0]))


def test_estimate_ii_uses_given_noise(small_sample):
    noise = make_crn_draws(small_sample.n_obs, 3, 0.5, base_seed=9)
    out = ii.estimate_ii(small_sample, IIConfig(optimizer_max_iterations=5), noise=noise)
    assert out["n_sims"] == 3


def test_run_ii_estimation_over_replications(synthetic_ii_csv, tmp_path, theta_true):
    paths = PathsII(data_csv=synthetic_ii_csv, results_csv=str(tmp_path / "out" / "est.csv"))
    cfg = IIConfig(save_results=True)
    ctx = ii.run_ii_estimation(paths=paths, cols=DataColumnsII(), cfg=cfg)

    res_df = ctx["res_df"]
    assert list(res_df["rep"]) == [0, 1]
    for col in ("theta0_hat", "theta1_hat", "theta2_hat", "loss", "n_iter", "n_fev", "success"):
        assert col in res_df.columns
    assert np.allclose(ctx["theta_true"], theta_true)
    assert len(ctx["fits"]) == 2

    saved = pd.read_csv(paths.results_csv)
    assert len(saved) == 2


def test_run_ii_estimation_limits_replications(synthetic_ii_csv):
    cfg = IIConfig(n_reps_eval=1, optimizer_max_iterations=10)
    ctx = ii.run_ii_estimation(paths=PathsII(data_csv=synthetic_ii_csv), cfg=cfg)
    assert ctx["rep_ids_eval"] == [0]
    assert len(ctx["res_df"]) == 1


def test_run_ii_estimation_single_dataset_without_rep_column(tmp_path, small_sample):
    p = tmp_path / "single.csv"
    pd.DataFrame(
        {"x1": small_sample.X[:, 0], "x2": small_sample.X[:, 1], "y": small_sample.y}
    ).to_csv(p, index=False)

    ctx = ii.run_ii_estimation(paths=PathsII(data_csv=str(p)), cfg=IIConfig(optimizer_max_iterations=10))
    assert ctx["theta_true"] is None
    assert ctx["rep_ids_eval"] == [0]
    assert len(ctx["res_df"]) == 1
