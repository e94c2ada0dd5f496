"""Input compatibility layer for pandas inputs.

All public API functions accept NumPy arrays.  This module adds
transparent support for pandas objects: when a user passes a
``pandas.DataFrame`` or ``pandas.Series`` (for example a count table
with named species columns) it is converted to a float64 NumPy array
at the boundary so that the kernels, which operate on plain arrays,
remain unchanged.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd


def _as_float_array(obj: Any, *, name: str = "input", ndim: int | None = None) -> np.ndarray:
    """Convert *obj* to a contiguous float64 :class:`numpy.ndarray`.

    Accepted types:
        * ``numpy.ndarray`` and nested sequences — converted via
          :func:`numpy.asarray`.
        * ``pandas.DataFrame`` / ``pandas.Series`` — converted via
          ``.to_numpy(dtype=float)``.

    Args:
        obj: Array-like input.
        name: Label used in error messages (e.g. ``"Y"`` or ``"w"``).
        ndim: Required number of dimensions, or ``None`` to accept any.

    Returns:
        A C-contiguous float64 array.

    Raises:
        TypeError: If *obj* cannot be interpreted as a numeric array.
        ValueError: If the dimensionality does not match *ndim*.
    """
    if isinstance(obj, (pd.DataFrame, pd.Series)):
        arr = obj.to_numpy(dtype=float)
    else:
        try:
            arr = np.asarray(obj, dtype=float)
        except (TypeError, ValueError) as exc:
            msg = f"'{name}' must be numeric array-like, got {type(obj).__name__}."
            raise TypeError(msg) from exc

    if ndim is not None and arr.ndim != ndim:
        msg = f"'{name}' must be {ndim}-dimensional, got shape {arr.shape}."
        raise ValueError(msg)
    return np.ascontiguousarray(arr)
