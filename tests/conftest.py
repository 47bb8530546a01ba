# tests/conftest.py
import os

# Must be set before importing matplotlib.pyplot in tests/modules
os.environ.setdefault("MPLBACKEND", "Agg")
os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")

import matplotlib
matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt

import numpy as np
import pytest

# IMPORTANT: import utils_ii first so it sets TF env (CPU-only) before TF loads
import utils_ii as u  # noqa: F401

from config_ii import THETA_TRUE_TUTORIAL, DataColumnsII, DataGenConfigII
from ii_core import ObservedSample


@pytest.fixture(autouse=True)
def _no_matplotlib_show(monkeypatch):
    """Avoid blocking/hanging tests due to plt.show()."""
    monkeypatch.setattr(plt, "show", lambda *args, **kwargs: None)


@pytest.fixture(scope="session")
def theta_true():
    return np.asarray(THETA_TRUE_TUTORIAL, dtype=np.float64)


@pytest.fixture(scope="session")
def synthetic_sample(theta_true):
    """n = 3000 draws from the structural model at the tutorial's theta."""
    from data_generation import simulate_dataset

    X, y = simulate_dataset(theta_true, n_obs=3000, noise_std=np.sqrt(1.5), seed=2024)
    return ObservedSample(X=X, y=y, covariate_names=("x1", "x2"))


@pytest.fixture(scope="session")
def small_sample():
    """Small noisy sample (n = 60) for fast unit tests."""
    rng = np.random.default_rng(0)
    X = rng.normal(size=(60, 2))
    y = np.exp(0.5 + 0.3 * X[:, 0] - 0.2 * X[:, 1]) + rng.normal(0.0, 0.5, size=60)
    return ObservedSample(X=X, y=y)


@pytest.fixture(scope="session")
def synthetic_ii_csv(tmp_path_factory):
    """Two replications of 400 observations each."""
    from data_generation import simulate_replications

    df = simulate_replications(DataGenConfigII(n_obs=400, n_reps=2, seed=11), DataColumnsII())
    out_dir = tmp_path_factory.mktemp("data")
    csv_path = out_dir / "data_ii.csv"
    df.to_csv(csv_path, index=False)
    return str(csv_path)
