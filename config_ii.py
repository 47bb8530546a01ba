# Configuration for indirect-inference estimation, data generation, and diagnostics.

import math
from dataclasses import dataclass
from typing import Optional, Tuple


# True structural parameters of the tutorial dataset (intercept, x1, x2).
THETA_TRUE_TUTORIAL: Tuple[float, float, float] = (
    0.9279139553540544,
    0.2408481106524355,
    0.4354059904502885,
)


# ---------------------------------------------------------------------
# Paths and column names
# ---------------------------------------------------------------------


@dataclass
class PathsII:
    data_csv: str = "data_ii.csv"
    results_csv: str = "ii_results/ii_estimates.csv"
    plot_dir: str = "ii_results"


@dataclass
class DataColumnsII:
    covariates: Tuple[str, ...] = ("x1", "x2")
    response: str = "y"
    # optional; only present in multi-replication CSVs
    rep: str = "rep"
    theta_true_prefix: str = "theta_true_"


# ---------------------------------------------------------------------
# Estimator configuration
# ---------------------------------------------------------------------


@dataclass
class IIConfig:
    """Indirect-inference estimator settings."""
    n_sims: int = 10                       # M, simulated datasets per criterion call
    noise_std: float = math.sqrt(1.5)      # std of the additive structural noise
    seed: int = 238476                     # base seed for the frozen noise draws
    backend: str = "tf"                    # "tf" (vectorised) or "numpy" (loop over draws)

    # Nelder-Mead
    optimizer_tolerance: float = 1e-8      # used for both xatol and fatol
    optimizer_max_iterations: Optional[int] = 5000
    optimizer_max_fev: Optional[int] = None
    adaptive: bool = False

    # consecutive +inf evaluations tolerated before aborting
    max_nonfinite_streak: int = 50

    print_every: int = 0
    n_reps_eval: Optional[int] = None
    save_results: bool = False

    def __post_init__(self) -> None:
        if int(self.n_sims) < 1:
            raise ValueError(f"n_sims must be >= 1, got {self.n_sims}")
        if not (self.noise_std >= 0.0):
            raise ValueError(f"noise_std must be >= 0, got {self.noise_std}")
        if self.backend not in ("tf", "numpy"):
            raise ValueError(f"backend must be 'tf' or 'numpy', got {self.backend!r}")
        if not (self.optimizer_tolerance > 0.0):
            raise ValueError(
                f"optimizer_tolerance must be > 0, got {self.optimizer_tolerance}"
            )
        if self.optimizer_max_iterations is not None and int(self.optimizer_max_iterations) < 1:
            raise ValueError(
                "optimizer_max_iterations must be >= 1 or None, "
                f"got {self.optimizer_max_iterations}"
            )
        if self.optimizer_max_fev is not None and int(self.optimizer_max_fev) < 1:
            raise ValueError(
                f"optimizer_max_fev must be >= 1 or None, got {self.optimizer_max_fev}"
            )
        if int(self.max_nonfinite_streak) < 1:
            raise ValueError(
                f"max_nonfinite_streak must be >= 1, got {self.max_nonfinite_streak}"
            )


# ---------------------------------------------------------------------
# Synthetic data generation
# ---------------------------------------------------------------------


@dataclass
class DataGenConfigII:
    n_obs: int = 1000
    n_reps: int = 1
    theta_true: Tuple[float, ...] = THETA_TRUE_TUTORIAL
    x_std: float = 1.0                     # covariates drawn iid N(0, x_std^2)
    noise_std: float = math.sqrt(1.5)
    seed: int = 243587


# ---------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------


@dataclass
class DiagnosticConfigII:
    profile_half_width: float = 0.25
    profile_points: int = 41

    consistency_n_sims: Tuple[int, ...] = (1, 5, 10, 50)
    consistency_n_seeds: int = 10
    consistency_perturbation: float = 0.2
    consistency_seed_base: int = 777
