"""Common building blocks for indirect inference.

Holds the auxiliary-model estimator (OLS), the structural simulator
y = exp([1, X] theta) + u, the frozen common-random-number draws, and the
observed-data container and CSV loader.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from utils_ii import tf, NP_DTYPE, to_tensor
from config_ii import DataColumnsII


# Largest argument for which exp() is representable in float64.
EXP_ARG_MAX = float(np.log(np.finfo(np.float64).max))


class SingularDesignError(np.linalg.LinAlgError):
    """The OLS design matrix does not have full column rank."""


class NumericOverflowError(FloatingPointError):
    """exp() of the structural linear index overflows float64."""


# ---------------------------------------------------------------------
# Observed data
# ---------------------------------------------------------------------


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a, dtype=NP_DTYPE, copy=True)
    a.setflags(write=False)
    return a


@dataclass(frozen=True, eq=False)
class ObservedSample:
    """Covariates X (n, k) and response y (n,), frozen for the whole run."""
    X: np.ndarray
    y: np.ndarray
    covariate_names: Tuple[str, ...] = ()
    response_name: str = "y"

    def __post_init__(self) -> None:
        X = np.asarray(self.X, dtype=NP_DTYPE)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if X.ndim != 2:
            raise ValueError(f"X must be 1-D or 2-D, got shape {X.shape}")
        y = np.asarray(self.y, dtype=NP_DTYPE).reshape(-1)
        if y.shape[0] != X.shape[0]:
            raise ValueError(
                f"X and y have inconsistent samples: {X.shape[0]} vs {y.shape[0]}"
            )
        if not (np.all(np.isfinite(X)) and np.all(np.isfinite(y))):
            raise ValueError("Observed data contain non-finite values.")

        names = tuple(self.covariate_names) or tuple(
            f"x{j + 1}" for j in range(X.shape[1])
        )
        if len(names) != X.shape[1]:
            raise ValueError(
                f"Got {len(names)} covariate names for {X.shape[1]} columns."
            )

        # frozen dataclass: bypass __setattr__ to store the normalised arrays
        object.__setattr__(self, "X", _readonly(X))
        object.__setattr__(self, "y", _readonly(y))
        object.__setattr__(self, "covariate_names", names)

    @property
    def n_obs(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_covariates(self) -> int:
        return int(self.X.shape[1])

    @property
    def param_names(self) -> Tuple[str, ...]:
        """Names of the auxiliary/structural coefficients, intercept first."""
        return ("const",) + self.covariate_names


def load_ii_data(data_csv: str, cols: Optional[DataColumnsII] = None):
    """Load observed data and, if present, the true theta used to simulate it.

    The CSV must contain the covariate and response columns named in `cols`.
    Columns '<theta_true_prefix>0', '<theta_true_prefix>1', ... are optional;
    when present each must hold a single unique value.

    Args:
      data_csv: Path to the CSV file.
      cols: DataColumnsII with column names; defaults to DataColumnsII().

    Returns:
      A tuple (df, theta_true) where theta_true is a float64 array or None.

    Raises:
      ValueError: If required columns are missing or the true-theta columns
        hold more than one value.
    """
    cols = cols or DataColumnsII()
    df = pd.read_csv(data_csv)

    required = list(cols.covariates) + [cols.response]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"CSV {data_csv} is missing columns {missing}.")

    theta_cols = sorted(
        (c for c in df.columns if c.startswith(cols.theta_true_prefix)),
        key=lambda c: int(c[len(cols.theta_true_prefix):]),
    )
    if not theta_cols:
        return df, None

    theta_true = []
    for c in theta_cols:
        vals = df[c].unique()
        # One dataset has one underlying theta.
        if len(vals) != 1:
            raise ValueError(f"Expected single true value in column {c}, got {vals}")
        theta_true.append(float(vals[0]))
    return df, np.asarray(theta_true, dtype=NP_DTYPE)


def sample_from_df(df, cols: Optional[DataColumnsII] = None) -> ObservedSample:
    """Build an ObservedSample from the covariate and response columns of df."""
    cols = cols or DataColumnsII()
    return ObservedSample(
        X=df[list(cols.covariates)].to_numpy(dtype=NP_DTYPE),
        y=df[cols.response].to_numpy(dtype=NP_DTYPE),
        covariate_names=tuple(cols.covariates),
        response_name=cols.response,
    )


def select_rep_ids(df, rep_col: str, n_reps_eval):
    """Select a subset of replication IDs from a DataFrame.

    Args:
      df: pandas DataFrame containing stacked replications.
      rep_col: Column name identifying replications.
      n_reps_eval: Maximum number of IDs to return. If None or larger than the
        number of unique IDs, all IDs are returned.

    Returns:
      A sorted list of replication IDs.
    """
    rep_ids = sorted(df[rep_col].unique())
    if n_reps_eval is None or int(n_reps_eval) >= len(rep_ids):
        return rep_ids
    return rep_ids[: int(n_reps_eval)]


# ---------------------------------------------------------------------
# Common random numbers
# ---------------------------------------------------------------------


def make_crn_draws(n_obs, n_sims, noise_std, base_seed=238476, rep_id=0):
    """Generate the frozen noise draws used for every criterion evaluation.

    Args:
      n_obs: Number of observations n.
      n_sims: Number of simulated datasets M.
      noise_std: Standard deviation of the additive normal noise.
      base_seed: Base seed for the RNG; rep_id is added to this.
      rep_id: Replication identifier used to shift the base seed.

    Returns:
      Read-only np.ndarray of shape (n_obs, n_sims).
    """
    n_obs, n_sims = int(n_obs), int(n_sims)
    if n_obs < 1:
        raise ValueError(f"n_obs must be >= 1, got {n_obs}")
    if n_sims < 1:
        raise ValueError(f"n_sims must be >= 1, got {n_sims}")
    if not (noise_std >= 0.0):
        raise ValueError(f"noise_std must be >= 0, got {noise_std}")

    rng = np.random.default_rng(int(base_seed) + int(rep_id))
    u = rng.normal(0.0, float(noise_std), size=(n_obs, n_sims))
    return _readonly(u)


# ---------------------------------------------------------------------
# Auxiliary model: OLS
# ---------------------------------------------------------------------


def add_constant_np(X):
    """Prepend a column of ones to X (n, k) -> (n, k + 1)."""
    X = np.asarray(X, dtype=NP_DTYPE)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    return np.column_stack([np.ones(X.shape[0], dtype=NP_DTYPE), X])


def check_full_column_rank(design) -> None:
    """Raise SingularDesignError unless design'design is invertible."""
    n, p = design.shape
    if p == 0:
        raise ValueError("Design matrix has no columns.")
    if n < p:
        raise SingularDesignError(
            f"Design matrix has {n} rows but {p} columns; OLS is not identified."
        )
    rank = int(np.linalg.matrix_rank(design))
    if rank < p:
        raise SingularDesignError(
            f"Design matrix has rank {rank} < {p} columns (collinear covariates)."
        )


def ols_np(X, y, add_constant=True):
    """Ordinary least squares coefficients.

    Solves the least-squares problem with an orthogonal factorisation
    (numpy.linalg.lstsq) rather than inverting X'X.

    Args:
      X: Covariates of shape (n, k) or (n,).
      y: Response of shape (n,).
      add_constant: Prepend an intercept column when True.

    Returns:
      np.ndarray of shape (k + 1,) with the intercept first, or (k,) without it.

    Raises:
      SingularDesignError: If the design does not have full column rank.
      ValueError: If X and y have different numbers of rows.
    """
    X = np.asarray(X, dtype=NP_DTYPE)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    y = np.asarray(y, dtype=NP_DTYPE).reshape(-1)
    if X.shape[0] != y.shape[0]:
        raise ValueError(
            f"X and y have inconsistent samples: {X.shape[0]} vs {y.shape[0]}"
        )

    design = add_constant_np(X) if add_constant else X
    check_full_column_rank(design)
    coef, _, _, _ = np.linalg.lstsq(design, y, rcond=None)
    return coef


def ols_batch_tf(X1_tf, Y_tf):
    """OLS of every column of Y_tf on the shared design X1_tf.

    Args:
      X1_tf: Design tensor of shape (n, p), intercept column included.
      Y_tf: Response tensor of shape (n, M).

    Returns:
      tf.Tensor of shape (M, p), one coefficient vector per column.
    """
    # Complete orthogonal decomposition; the design rank is checked once
    # when the run context is built.
    coef = tf.linalg.lstsq(X1_tf, Y_tf, fast=False)
    return tf.transpose(coef)


# ---------------------------------------------------------------------
# Structural model: y = exp([1, X] theta) + u
# ---------------------------------------------------------------------


def guard_exp_argument(index) -> None:
    """Raise NumericOverflowError if exp(index) is not representable."""
    index = np.asarray(index, dtype=NP_DTYPE)
    if index.size == 0:
        return
    idx_max = float(np.max(index))
    # NaN fails the comparison as well.
    if not (idx_max <= EXP_ARG_MAX):
        raise NumericOverflowError(
            f"Structural linear index reaches {idx_max:.4g} > {EXP_ARG_MAX:.4g}; "
            "exp() overflows."
        )


def simulate_structural_np(X, u, theta):
    """Simulate one response vector from the structural model.

    Args:
      X: Covariates of shape (n, k).
      u: Noise column of shape (n,).
      theta: Structural parameters of shape (k + 1,), intercept first.

    Returns:
      np.ndarray of shape (n,) equal to exp([1, X] theta) + u.
    """
    design = add_constant_np(X)
    theta = np.asarray(theta, dtype=NP_DTYPE).reshape(-1)
    u = np.asarray(u, dtype=NP_DTYPE).reshape(-1)
    if theta.shape[0] != design.shape[1]:
        raise ValueError(
            f"theta has length {theta.shape[0]}, expected {design.shape[1]} "
            "(intercept + one per covariate)."
        )
    if u.shape[0] != design.shape[0]:
        raise ValueError(
            f"Noise column has length {u.shape[0]}, expected {design.shape[0]}."
        )

    index = design @ theta
    guard_exp_argument(index)
    return np.exp(index) + u


def simulate_structural_tf(X1_tf, U_tf, theta_tf):
    """Simulate all M response vectors at once.

    Args:
      X1_tf: Design tensor of shape (n, p), intercept column included.
      U_tf: Noise draws of shape (n, M).
      theta_tf: Structural parameters of shape (p,).

    Returns:
      tf.Tensor of shape (n, M).
    """
    index = tf.linalg.matvec(X1_tf, theta_tf)
    return tf.exp(index)[:, None] + U_tf


def as_design_tf(X):
    """Intercept-augmented design as a float64 TensorFlow constant."""
    return to_tensor(add_constant_np(X))
