"""Validated data matrices shared by every kernel.

:class:`CountData` bundles the responses ``Y`` (n×p counts), covariates
``X`` (n×d), offsets ``O`` (n×p) and observation weights ``w`` (n,)
after checking the invariants the kernels rely on.  Quantities that do
not depend on the parameters (the weight total ``w̄`` and the per-row
log-factorial surrogate) are computed once here instead of once per
objective evaluation.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from typing import Any

import numpy as np

from ._compat import _as_float_array
from ._math import log_factorial


@dataclass(frozen=True, eq=False)
class CountData:
    """Responses, covariates, offsets and weights of one run.

    Construct with :meth:`from_arrays`, which validates and converts.

    Attributes:
        Y: Counts ``(n, p)``.
        X: Covariates ``(n, d)``; ``d`` may be zero.
        O: Offsets ``(n, p)``.
        w: Observation weights ``(n,)``.  A weight of zero excludes the
            row from every objective and gradient.
    """

    Y: np.ndarray
    X: np.ndarray
    O: np.ndarray  # noqa: E741
    w: np.ndarray

    @classmethod
    def from_arrays(
        cls,
        Y: Any,
        X: Any,
        O: Any = None,  # noqa: E741
        w: Any = None,
    ) -> CountData:
        """Validate and convert the data matrices.

        Args:
            Y: Non-negative integer counts, shape ``(n, p)``; integer
                values stored as floats are accepted.
            X: Covariates, shape ``(n, d)``.
            O: Offsets, shape ``(n, p)``; zeros when omitted.
            w: Non-negative weights, shape ``(n,)``; ones when omitted.

        Raises:
            ValueError: On any shape or value violation; the message
                names the offending field.
        """
        Y_arr = _as_float_array(Y, name="Y", ndim=2)
        X_arr = _as_float_array(X, name="X", ndim=2)
        n, p = Y_arr.shape
        O_arr = np.zeros((n, p)) if O is None else _as_float_array(O, name="O", ndim=2)
        w_arr = np.ones(n) if w is None else _as_float_array(w, name="w", ndim=1)

        if X_arr.shape[0] != n:
            msg = f"X has {X_arr.shape[0]} rows but Y has {n}."
            raise ValueError(msg)
        if O_arr.shape != (n, p):
            msg = f"O has shape {O_arr.shape} but Y has shape {(n, p)}."
            raise ValueError(msg)
        if w_arr.shape[0] != n:
            msg = f"w has {w_arr.shape[0]} entries but Y has {n} rows."
            raise ValueError(msg)
        for name, arr in (("Y", Y_arr), ("X", X_arr), ("O", O_arr), ("w", w_arr)):
            if not np.all(np.isfinite(arr)):
                msg = f"{name} contains NaN or infinite values."
                raise ValueError(msg)
        if np.any(Y_arr < 0):
            msg = "Y must contain non-negative counts."
            raise ValueError(msg)
        if np.any(Y_arr != np.floor(Y_arr)):
            msg = "Y must contain integer counts."
            raise ValueError(msg)
        if np.any(w_arr < 0):
            msg = "w must contain non-negative weights."
            raise ValueError(msg)
        if not w_arr.sum() > 0:
            msg = "w must sum to a positive value."
            raise ValueError(msg)
        return cls(Y=Y_arr, X=X_arr, O=O_arr, w=w_arr)

    @property
    def n(self) -> int:
        return self.Y.shape[0]

    @property
    def p(self) -> int:
        return self.Y.shape[1]

    @property
    def d(self) -> int:
        return self.X.shape[1]

    @cached_property
    def w_bar(self) -> float:
        """Total weight ``Σ w``."""
        return float(self.w.sum())

    @cached_property
    def logfact(self) -> np.ndarray:
        """Per-row log-factorial surrogate ``Σ_j log(Y_ij!)``, shape ``(n,)``."""
        return log_factorial(self.Y)
