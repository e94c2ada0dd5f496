"""Shared type aliases for the pln_optim package."""

from collections.abc import Callable

import numpy as np
import pandas as pd

# Array-like inputs accepted by the public API.
ArrayLike = np.ndarray | pd.DataFrame | pd.Series

# Objective callback: (parameters, gradient-out) -> objective value.
ObjectiveAndGrad = Callable[[np.ndarray, np.ndarray], float]
