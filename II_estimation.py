"""Indirect-inference estimation: criterion, Nelder-Mead search, and driver."""

import os
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from scipy.optimize import minimize

from config_ii import IIConfig, PathsII, DataColumnsII
from utils_ii import tf, NP_DTYPE, to_tensor
from ii_core import (
    NumericOverflowError,
    SingularDesignError,
    ObservedSample,
    add_constant_np,
    as_design_tf,
    check_full_column_rank,
    guard_exp_argument,
    load_ii_data,
    make_crn_draws,
    ols_batch_tf,
    ols_np,
    sample_from_df,
    select_rep_ids,
    simulate_structural_np,
    simulate_structural_tf,
)

PATHS = PathsII()
COLS = DataColumnsII()
II_CFG = IIConfig()


# ---------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class IIRunContext:
    """Immutable state shared by every criterion evaluation of one run."""
    sample: ObservedSample
    design: np.ndarray          # (n, k + 1), intercept first
    noise: np.ndarray           # (n, M) frozen draws
    beta_hat: np.ndarray        # (k + 1,) auxiliary fit on observed data
    design_tf: tf.Tensor
    noise_tf: tf.Tensor

    @property
    def n_sims(self) -> int:
        return int(self.noise.shape[1])

    @property
    def n_params(self) -> int:
        return int(self.design.shape[1])


def build_ii_context(sample: ObservedSample, noise) -> IIRunContext:
    """Fit the auxiliary model on observed data and freeze the run state.

    Args:
      sample: Observed covariates and response.
      noise: Frozen noise draws of shape (n, M).

    Returns:
      IIRunContext for criterion evaluations.

    Raises:
      ValueError: If the draws do not have one row per observation.
      SingularDesignError: If [1, X] does not have full column rank.
    """
    noise = np.asarray(noise, dtype=NP_DTYPE)
    if noise.ndim != 2 or noise.shape[0] != sample.n_obs or noise.shape[1] < 1:
        raise ValueError(
            f"Noise draws must have shape ({sample.n_obs}, M>=1), got {noise.shape}"
        )

    design = add_constant_np(sample.X)
    check_full_column_rank(design)
    beta_hat = ols_np(sample.X, sample.y, add_constant=True)

    design.setflags(write=False)
    beta_hat.setflags(write=False)
    if noise.flags.writeable:
        noise = noise.copy()
        noise.setflags(write=False)

    return IIRunContext(
        sample=sample,
        design=design,
        noise=noise,
        beta_hat=beta_hat,
        design_tf=as_design_tf(sample.X),
        noise_tf=to_tensor(noise),
    )


# ---------------------------------------------------------------------
# Criterion
# ---------------------------------------------------------------------


def wald_distance(beta_tilde, beta_hat):
    """Identity-weighted Wald distance sum((beta_hat - beta_tilde)^2)."""
    diff = np.asarray(beta_hat, dtype=NP_DTYPE) - np.asarray(beta_tilde, dtype=NP_DTYPE)
    return float(np.sum(diff * diff))


def simulated_aux_estimates_np(ctx: IIRunContext, theta):
    """Simulate M datasets at theta and fit OLS to each, one draw at a time.

    Returns:
      np.ndarray of shape (M, k + 1).
    """
    X = ctx.sample.X
    betas = np.empty((ctx.n_sims, ctx.n_params), dtype=NP_DTYPE)
    for m in range(ctx.n_sims):
        y_sim = simulate_structural_np(X, ctx.noise[:, m], theta)
        betas[m] = ols_np(X, y_sim, add_constant=True)
    return betas


@tf.function
def simulated_aux_estimates_tf(design_tf, noise_tf, theta_tf):
    """Simulate all M datasets at theta and fit OLS to each in one pass.

    Args:
      design_tf: Design tensor (n, k + 1).
      noise_tf: Frozen noise draws (n, M).
      theta_tf: Structural parameters (k + 1,).

    Returns:
      tf.Tensor of shape (M, k + 1).
    """
    y_sim = simulate_structural_tf(design_tf, noise_tf, theta_tf)
    return ols_batch_tf(design_tf, y_sim)


class IICriterion:
    """Indirect-inference objective theta -> ||beta_hat - beta_tilde(theta)||^2.

    beta_tilde(theta) averages the OLS fits on the M datasets simulated with
    the frozen draws of the run context, so the criterion is a deterministic
    function of theta.

    Evaluations whose structural index overflows, or whose averaged fit is
    not finite, return +inf. After `max_nonfinite_streak` such evaluations in
    a row a NumericOverflowError is raised.
    """

    def __init__(self, ctx: IIRunContext, backend="tf", max_nonfinite_streak=50):
        if backend not in ("tf", "numpy"):
            raise ValueError(f"backend must be 'tf' or 'numpy', got {backend!r}")
        self.ctx = ctx
        self.backend = backend
        self.max_nonfinite_streak = int(max_nonfinite_streak)
        self.n_evals = 0
        self.n_nonfinite = 0
        self._streak = 0

    def simulated_aux_estimates(self, theta):
        theta = np.asarray(theta, dtype=NP_DTYPE).reshape(-1)
        if theta.shape[0] != self.ctx.n_params:
            raise ValueError(
                f"theta has length {theta.shape[0]}, expected {self.ctx.n_params}"
            )
        if self.backend == "numpy":
            return simulated_aux_estimates_np(self.ctx, theta)

        guard_exp_argument(self.ctx.design @ theta)
        betas = simulated_aux_estimates_tf(
            self.ctx.design_tf,
            self.ctx.noise_tf,
            to_tensor(theta),
        )
        return betas.numpy().astype(NP_DTYPE)

    def simulated_aux_mean(self, theta):
        """beta_tilde(theta): element-wise mean of the M simulated fits."""
        return self.simulated_aux_estimates(theta).mean(axis=0)

    def evaluate(self, theta):
        self.n_evals += 1
        # Indices just below EXP_ARG_MAX give finite fits whose squares overflow.
        with np.errstate(over="ignore", invalid="ignore"):
            try:
                beta_tilde = self.simulated_aux_mean(theta)
            except NumericOverflowError as e:
                return self._nonfinite(theta, str(e))

            if not np.all(np.isfinite(beta_tilde)):
                return self._nonfinite(theta, "simulated auxiliary estimates are not finite")

            loss = wald_distance(beta_tilde, self.ctx.beta_hat)

        if not np.isfinite(loss):
            return self._nonfinite(theta, "Wald distance overflows")

        self._streak = 0
        return loss

    __call__ = evaluate

    def _nonfinite(self, theta, reason):
        self.n_nonfinite += 1
        self._streak += 1
        if self._streak >= self.max_nonfinite_streak:
            raise NumericOverflowError(
                f"Criterion was non-finite for {self._streak} consecutive evaluations "
                f"(last theta={np.asarray(theta).tolist()}): {reason}"
            )
        return float("inf")


# ---------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------


def minimize_nelder_mead(
    fun,
    theta0,
    tol=1e-8,
    max_iterations=None,
    max_fev=None,
    adaptive=False,
    print_every=0,
):
    """Minimize `fun` with the Nelder-Mead simplex started at theta0.

    Args:
      fun: Objective mapping a parameter vector to a float.
      theta0: Starting point.
      tol: Absolute tolerance on simplex size and on function values.
      max_iterations: Iteration budget; scipy's default (200 * dim) if None.
      max_fev: Function-evaluation budget; unlimited if None.
      adaptive: Use dimension-adapted simplex coefficients.
      print_every: Print progress every this many iterations (0 = silent).

    Returns:
      dict with theta_hat, loss, n_iter, n_fev, success, and message. Running
      out of budget gives success=False; it is not an error.
    """
    theta0 = np.asarray(theta0, dtype=NP_DTYPE).reshape(-1)
    options = dict(xatol=float(tol), fatol=float(tol), adaptive=bool(adaptive))
    if max_iterations is not None:
        options["maxiter"] = int(max_iterations)
    if max_fev is not None:
        options["maxfev"] = int(max_fev)

    it = [0]

    # scipy passes the current best vertex and its value by keyword name.
    def _progress(intermediate_result):
        it[0] += 1
        if it[0] % int(print_every) == 0:
            print(
                f"    iter {it[0]:5d}: loss={float(intermediate_result.fun):.4e}, "
                f"theta={np.array2string(np.asarray(intermediate_result.x), precision=4)}"
            )

    res = minimize(
        fun,
        theta0,
        method="Nelder-Mead",
        options=options,
        callback=_progress if print_every else None,
    )

    return dict(
        theta_hat=np.asarray(res.x, dtype=NP_DTYPE),
        loss=float(res.fun),
        n_iter=int(res.nit),
        n_fev=int(res.nfev),
        success=bool(res.success),
        message=str(res.message),
    )


# ---------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------


def estimate_ii(sample: ObservedSample, cfg: Optional[IIConfig] = None, noise=None, theta0=None, rep_id=0):
    """Estimate theta for one observed sample.

    Args:
      sample: Observed data.
      cfg: IIConfig; defaults to the module-level II_CFG.
      noise: Optional frozen draws (n, M); drawn from cfg.seed + rep_id if None.
      theta0: Optional starting point; the observed OLS fit if None.
      rep_id: Replication identifier used to shift the noise seed.

    Returns:
      dict with theta_hat, loss, n_iter, n_fev, success, message, theta0,
      beta_hat, and beta_tilde (the averaged simulated fit at theta_hat).

    Raises:
      SingularDesignError: If the observed design is rank deficient.
      NumericOverflowError: If no finite criterion value can be found.
    """
    cfg = cfg or II_CFG
    if noise is None:
        noise = make_crn_draws(
            sample.n_obs,
            cfg.n_sims,
            cfg.noise_std,
            base_seed=cfg.seed,
            rep_id=rep_id,
        )

    try:
        ctx = build_ii_context(sample, noise)
    except SingularDesignError as e:
        raise SingularDesignError(f"Auxiliary fit on observed data failed: {e}") from e

    crit = IICriterion(
        ctx,
        backend=cfg.backend,
        max_nonfinite_streak=cfg.max_nonfinite_streak,
    )
    theta_start = ctx.beta_hat.copy() if theta0 is None else np.asarray(theta0, dtype=NP_DTYPE)

    try:
        opt = minimize_nelder_mead(
            crit,
            theta_start,
            tol=cfg.optimizer_tolerance,
            max_iterations=cfg.optimizer_max_iterations,
            max_fev=cfg.optimizer_max_fev,
            adaptive=cfg.adaptive,
            print_every=cfg.print_every,
        )
    except SingularDesignError as e:
        raise SingularDesignError(f"Criterion evaluation failed: {e}") from e
    except NumericOverflowError as e:
        raise NumericOverflowError(f"Criterion evaluation failed: {e}") from e

    if not np.isfinite(opt["loss"]):
        raise NumericOverflowError(
            "Criterion evaluation failed: no finite criterion value found "
            f"starting from theta0={theta_start.tolist()}"
        )
    if not opt["success"]:
        print(f"  WARNING: Nelder-Mead did not converge: {opt['message']}")

    out = dict(opt)
    out.update(
        theta0=theta_start,
        beta_hat=np.array(ctx.beta_hat),
        beta_tilde=crit.simulated_aux_mean(opt["theta_hat"]),
        n_sims=ctx.n_sims,
    )
    return out


def run_ii_estimation(paths=None, cols=None, cfg=None):
    """Run indirect-inference estimation over the replications in a CSV.

    A CSV without a replication column is treated as a single dataset with
    rep id 0.

    Args:
      paths: Optional PathsII; defaults to the module-level PATHS.
      cols: Optional DataColumnsII; defaults to the module-level COLS.
      cfg: Optional IIConfig; defaults to the module-level II_CFG.

    Returns:
      dict with res_df (one row per replication), theta_true (or None),
      rep_ids_eval, and the per-replication result dicts.
    """
    paths = paths or PATHS
    cols = cols or COLS
    cfg = cfg or II_CFG

    print("Indirect-inference settings:")
    print(cfg)
    print("Loading observed data from", paths.data_csv)
    df, theta_true = load_ii_data(paths.data_csv, cols)
    if theta_true is not None:
        print(f"Detected true parameters from CSV: theta_true={theta_true.tolist()}")

    if cols.rep in df.columns:
        rep_ids_eval = select_rep_ids(df, cols.rep, cfg.n_reps_eval)
        print(
            f"Total replications in data: {df[cols.rep].nunique()}; "
            f"using {len(rep_ids_eval)}.\n"
        )
    else:
        rep_ids_eval = [0]

    rows, fits = [], []
    for idx, rep_id in enumerate(rep_ids_eval, start=1):
        print(f"=== Replication {rep_id} ({idx}/{len(rep_ids_eval)}) ===")
        df_rep = df[df[cols.rep] == rep_id] if cols.rep in df.columns else df
        sample = sample_from_df(df_rep, cols)
        out = estimate_ii(sample, cfg, rep_id=int(rep_id))
        fits.append(out)

        row = dict(rep=int(rep_id))
        for j, name in enumerate(sample.param_names):
            row[f"theta{j}_hat"] = float(out["theta_hat"][j])
        row.update(
            loss=out["loss"],
            n_iter=out["n_iter"],
            n_fev=out["n_fev"],
            success=out["success"],
        )
        rows.append(row)
        print(
            "  Estimates: "
            + ", ".join(
                f"{name}={val:.4f}" for name, val in zip(sample.param_names, out["theta_hat"])
            )
            + f", loss={out['loss']:.4e}, iters={out['n_iter']}, fev={out['n_fev']}\n"
        )

    res_df = pd.DataFrame(rows).sort_values("rep").reset_index(drop=True)
    print("Estimation results (first few rows):")
    print(res_df.head())

    if cfg.save_results:
        out_dir = os.path.dirname(paths.results_csv)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        res_df.to_csv(paths.results_csv, index=False)
        print("Saved estimates to", paths.results_csv)

    return dict(
        res_df=res_df,
        theta_true=theta_true,
        rep_ids_eval=rep_ids_eval,
        fits=fits,
    )
