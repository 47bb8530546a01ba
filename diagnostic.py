"""Monte Carlo metrics and criterion diagnostics for indirect inference."""

import os

import numpy as np
import pandas as pd

from config_ii import DiagnosticConfigII
from ii_core import make_crn_draws
from II_estimation import IICriterion, build_ii_context


def metric1_bias_sd_rmse(estimates, true_value):
    """Compute mean, bias, standard deviation, and RMSE of an estimator.

    Args:
      estimates:
        1D array-like of estimates from Monte Carlo replications.
      true_value:
        True scalar parameter value.

    Returns:
      A tuple (mean_hat, bias, sd, rmse).
    """
    est = np.asarray(estimates, dtype=float)
    mean_hat = est.mean()
    bias = mean_hat - true_value
    sd = est.std(ddof=1) if est.size > 1 else float("nan")
    rmse = np.sqrt(((est - true_value) ** 2).mean())
    return mean_hat, bias, sd, rmse


def run_metric_1(res_df, theta_true, label="II"):
    """Print and return bias/SD/RMSE for every theta component over replications.

    Args:
      res_df:
        DataFrame with columns 'theta0_hat', 'theta1_hat', ... per replication.
      theta_true:
        True parameter vector.
      label:
        Text label identifying the estimator.

    Returns:
      DataFrame with one row per parameter.
    """
    print(f"\n=== Metric 1: {label} estimator performance over replications ===")
    rows = []
    for j, true in enumerate(np.asarray(theta_true, dtype=float)):
        est = res_df[f"theta{j}_hat"].to_numpy()
        mean_hat, bias, sd, rmse = metric1_bias_sd_rmse(est, true)
        print(
            f"theta{j}: mean={mean_hat:.8f}, true={true:.8f}, "
            f"bias={bias:.3e}, SD={sd:.3e}, RMSE={rmse:.3e}"
        )
        rows.append(dict(param=f"theta{j}", mean=mean_hat, true=true, bias=bias, sd=sd, rmse=rmse))
    return pd.DataFrame(rows)


def criterion_profile(criterion, theta_hat, half_width=0.25, n_points=41):
    """Evaluate the criterion along each coordinate axis through theta_hat.

    Args:
      criterion: Callable theta -> float (e.g. an IICriterion).
      theta_hat: Centre of the slices.
      half_width: Each slice spans theta_hat[j] +/- half_width.
      n_points: Number of grid points per slice.

    Returns:
      DataFrame with columns param, value, loss.
    """
    theta_hat = np.asarray(theta_hat, dtype=np.float64)
    rows = []
    for j in range(theta_hat.shape[0]):
        grid = np.linspace(theta_hat[j] - half_width, theta_hat[j] + half_width, int(n_points))
        for v in grid:
            theta = theta_hat.copy()
            theta[j] = v
            rows.append(dict(param=j, value=float(v), loss=float(criterion(theta))))
    return pd.DataFrame(rows)


def plot_criterion_profile(profile_df, theta_hat, theta_true=None, save_path=None, show=False):
    """Plot the criterion slices produced by criterion_profile.

    Returns:
      The matplotlib Figure.
    """
    import matplotlib.pyplot as plt

    params = sorted(profile_df["param"].unique())
    fig, axes = plt.subplots(1, len(params), figsize=(4 * len(params), 3.5), squeeze=False)
    for ax, j in zip(axes[0], params):
        sub = profile_df[profile_df["param"] == j]
        ax.plot(sub["value"], sub["loss"], lw=1.5)
        ax.axvline(theta_hat[j], color="k", ls="--", lw=1, label="estimate")
        if theta_true is not None:
            ax.axvline(theta_true[j], color="r", ls=":", lw=1, label="true")
        ax.set_xlabel(f"theta{j}")
        ax.set_ylabel("Wald criterion")
        ax.grid(True, alpha=0.3)
    axes[0][0].legend()
    fig.suptitle("Indirect-inference criterion profile")
    fig.tight_layout()

    if save_path:
        out_dir = os.path.dirname(save_path)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        fig.savefig(save_path, dpi=120)
        print("Saved criterion profile to", save_path)
    if show:
        plt.show()
    return fig


def monte_carlo_consistency(
    sample,
    theta_true,
    cfg=None,
    noise_std=np.sqrt(1.5),
    backend="tf",
    max_nonfinite_streak=50,
):
    """Criterion at the true and at a perturbed theta for increasing M.

    For each M and each of cfg.consistency_n_seeds seed families, builds a
    run context with fresh frozen draws and evaluates the criterion at
    theta_true and at theta_true + perturbation (every component shifted).

    Returns:
      DataFrame with one row per M: mean/std of the criterion at the truth,
      mean criterion at the perturbed point, and the average (over
      components) across-seed std of beta_tilde at the truth.
    """
    cfg = cfg or DiagnosticConfigII()
    theta_true = np.asarray(theta_true, dtype=np.float64)
    theta_pert = theta_true + float(cfg.consistency_perturbation)

    rows = []
    for n_sims in cfg.consistency_n_sims:
        loss_true, loss_pert, betas = [], [], []
        for s in range(int(cfg.consistency_n_seeds)):
            noise = make_crn_draws(
                sample.n_obs,
                n_sims,
                noise_std,
                base_seed=cfg.consistency_seed_base,
                rep_id=1000 * int(n_sims) + s,
            )
            crit = IICriterion(
                build_ii_context(sample, noise),
                backend=backend,
                max_nonfinite_streak=max_nonfinite_streak,
            )
            loss_true.append(crit(theta_true))
            loss_pert.append(crit(theta_pert))
            betas.append(crit.simulated_aux_mean(theta_true))

        betas = np.asarray(betas)
        rows.append(
            dict(
                n_sims=int(n_sims),
                loss_true_mean=float(np.mean(loss_true)),
                loss_true_std=float(np.std(loss_true, ddof=1)) if len(loss_true) > 1 else float("nan"),
                loss_perturbed_mean=float(np.mean(loss_pert)),
                beta_tilde_sd=float(np.std(betas, axis=0, ddof=1).mean()) if len(betas) > 1 else float("nan"),
            )
        )

    out = pd.DataFrame(rows)
    print("=== Monte Carlo consistency of the criterion ===")
    print(out.to_string(index=False))
    return out
