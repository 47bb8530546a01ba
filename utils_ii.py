# Shared TensorFlow setup and seeding used by the estimator, the data
# generator, and the diagnostics.

import os
import random

import numpy as np

# ---------------------------------------------------------------------
# TensorFlow setup: CPU only, float64 everywhere
# ---------------------------------------------------------------------

os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "1")
os.environ.setdefault("CUDA_VISIBLE_DEVICES", "-1")

import tensorflow as tf  # noqa: E402

try:
    tf.config.set_visible_devices([], "GPU")
except Exception:
    # If no GPU is present or the runtime forbids device configuration,
    # we continue on CPU.
    pass

# The criterion is driven towards zero by the simplex, so float32 round-off
# would dominate near the optimum.
DTYPE = tf.float64
NP_DTYPE = np.float64


# ---------------------------------------------------------------------
# Global seeding helper
# ---------------------------------------------------------------------


def set_global_seed(seed: int) -> None:
    """Set seeds for Python, NumPy, and TensorFlow."""
    random.seed(seed)
    np.random.seed(seed)
    tf.random.set_seed(seed)


def to_tensor(x, dtype=DTYPE):
    """Return a TensorFlow constant with the given value and dtype."""
    return tf.constant(np.asarray(x, dtype=NP_DTYPE), dtype=dtype)
