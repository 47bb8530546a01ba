"""Simulate synthetic datasets from the exponential-mean structural model.

Covariates are drawn iid normal, the response is y = exp([1, X] theta) + u
with u ~ N(0, noise_std^2), and each replication is written to a long-format
CSV together with the true theta.
"""

import argparse
import os

import numpy as np
import pandas as pd

from config_ii import DataColumnsII, DataGenConfigII
from ii_core import simulate_structural_np


def simulate_dataset(theta_true, n_obs, noise_std, x_std=1.0, seed=0):
    """Simulate one dataset under the structural model.

    Args:
        theta_true: True structural parameters (intercept first); the number
            of covariates is len(theta_true) - 1.
        n_obs: Number of observations.
        noise_std: Standard deviation of the additive noise.
        x_std: Standard deviation of the normal covariates.
        seed: Seed for this dataset.

    Returns:
        tuple: (X, y) as float64 arrays of shapes (n_obs, k) and (n_obs,).
    """
    theta_true = np.asarray(theta_true, dtype=np.float64)
    k = theta_true.shape[0] - 1
    rng = np.random.default_rng(int(seed))

    X = rng.normal(0.0, float(x_std), size=(int(n_obs), k))
    u = rng.normal(0.0, float(noise_std), size=int(n_obs))
    y = simulate_structural_np(X, u, theta_true)
    return X, y


def dataset_to_dataframe(X, y, rep_index, theta_true, cols=None):
    """Convert one simulated dataset into a long-format DataFrame.

    Args:
        X: Covariates (n, k).
        y: Response (n,).
        rep_index: Integer index of the replication.
        theta_true: True parameters written alongside every row.
        cols: DataColumnsII; needs one covariate name per column of X.

    Returns:
        pandas.DataFrame with columns rep, covariates, response, and
        theta_true_0 ... theta_true_k.
    """
    cols = cols or DataColumnsII()
    if len(cols.covariates) != X.shape[1]:
        raise ValueError(
            f"Need {X.shape[1]} covariate names, got {list(cols.covariates)}"
        )

    data = {cols.rep: np.full(X.shape[0], rep_index, dtype=int)}
    for j, name in enumerate(cols.covariates):
        data[name] = X[:, j]
    data[cols.response] = y
    for j, val in enumerate(np.asarray(theta_true, dtype=np.float64)):
        data[f"{cols.theta_true_prefix}{j}"] = float(val)
    return pd.DataFrame(data)


def simulate_replications(cfg=None, cols=None):
    """Simulate cfg.n_reps independent datasets stacked in one DataFrame."""
    cfg = cfg or DataGenConfigII()
    cols = cols or DataColumnsII()

    frames = []
    for rep in range(int(cfg.n_reps)):
        # Shift the base seed so each replication has independent randomness.
        X, y = simulate_dataset(
            cfg.theta_true,
            cfg.n_obs,
            cfg.noise_std,
            x_std=cfg.x_std,
            seed=cfg.seed + rep,
        )
        frames.append(dataset_to_dataframe(X, y, rep, cfg.theta_true, cols))
    return pd.concat(frames, ignore_index=True)


def write_dataset(out_path, cfg=None, cols=None):
    """Simulate all replications and write them to out_path."""
    cfg = cfg or DataGenConfigII()
    df = simulate_replications(cfg, cols)

    out_dir = os.path.dirname(out_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    df.to_csv(out_path, index=False)

    print("Simulation settings:")
    print(f"  n_obs      = {cfg.n_obs}")
    print(f"  n_reps     = {cfg.n_reps}")
    print(f"  theta_true = {list(cfg.theta_true)}")
    print(f"  noise_std  = {cfg.noise_std:.4f}")
    print(f"  -> wrote {len(df):,} rows to {out_path}")
    return df


def main(argv=None):
    """Write a synthetic dataset to CSV."""
    defaults = DataGenConfigII()
    parser = argparse.ArgumentParser(description="Simulate indirect-inference datasets.")
    parser.add_argument("--out", default="data_ii.csv", help="Output CSV path.")
    parser.add_argument("--n-obs", type=int, default=defaults.n_obs)
    parser.add_argument("--n-reps", type=int, default=defaults.n_reps)
    parser.add_argument("--seed", type=int, default=defaults.seed)
    args = parser.parse_args(argv)

    cfg = DataGenConfigII(n_obs=args.n_obs, n_reps=args.n_reps, seed=args.seed)
    return write_dataset(args.out, cfg)


if __name__ == "__main__":
    main()
