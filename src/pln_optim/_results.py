"""Typed result object for optimisation runs.

:class:`FitResult` is a frozen dataclass that provides:

* **Attribute access** — ``result.Sigma``, ``result.status``, etc.
* **Dict-like access** — ``result["Sigma"]``, ``result.get("key")``,
  ``"key" in result`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python and the status
  reported by name.

Results are a snapshot of a completed run and are not mutated after
creation; the arrays they hold are owned by the result (copied out of
the optimizer's flat buffer).
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar

import numpy as np
import pandas as pd

from .optimizer import OptimizationStatus

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Convert the arrays and NumPy scalars of a result to plain Python.

    ``parameters`` is a dict of arrays and ``Omega`` may be ``None``;
    both pass through unchanged apart from the array conversion.
    """
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.bool_)):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Bracket access to :class:`FitResult` fields.

    ``result["Sigma"]`` and ``result.get("Omega")`` read the same
    attributes as ``result.Sigma``; ``"loglik" in result`` tests for a
    field.  :meth:`to_dict` reports ``status`` by its NLopt name and
    leaves out the observation weights.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "status": lambda s: s.name,
    }

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"weights"})

    def __getitem__(self, key: str) -> Any:
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Plain, JSON-serialisable dictionary of the result fields."""
        out: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            value = getattr(self, f.name)
            serializer = self._SERIALIZERS.get(f.name)
            if serializer is not None:
                value = serializer(value)
            out[f.name] = _numpy_to_python(value)
        return out


# ------------------------------------------------------------------ #
# FitResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FitResult(_DictAccessMixin):
    """Outcome of one variational optimisation run.

    Returned by :func:`pln_optim.optimize` and the per-variant entry
    points.  A run that hit an evaluation or time cap is still a
    result: check :attr:`converged` before trusting the estimates.

    All fields are accessible both as attributes (``result.Sigma``)
    and via dict syntax (``result["Sigma"]``).

    Attributes:
        variant: Registry name of the covariance variant.
        status: Termination status reported by the optimizer.
        iterations: Number of objective evaluations.
        objective: Final negative ELBO (without the ``log y!`` term).
        parameters: Final value of every optimised block, by name.
        Z: Linear predictor ``O + XΘᵀ + latent mean`` ``(n, p)``.
        A: Fitted Poisson means ``(n, p)``.
        Sigma: Latent covariance ``(p, p)``.
        Omega: Latent precision ``(p, p)``, or ``None`` for the
            rank-constrained variant.
        loglik: Per-observation ELBO ``(n,)``, including the
            log-factorial term; ``0.0`` on zero-weight rows.
        weights: Observation weights of the run (not serialised).
    """

    variant: str
    status: OptimizationStatus
    iterations: int
    objective: float
    parameters: dict[str, np.ndarray]
    Z: np.ndarray
    A: np.ndarray
    Sigma: np.ndarray
    Omega: np.ndarray | None
    loglik: np.ndarray
    weights: np.ndarray = field(repr=False)

    @property
    def converged(self) -> bool:
        return self.status.converged

    @property
    def loglik_total(self) -> float:
        """Weighted sum of :attr:`loglik` over observations with positive weight."""
        active = self.weights > 0
        return float(np.sum(self.weights[active] * self.loglik[active]))

    def loglik_frame(self) -> pd.DataFrame:
        """Per-observation log-likelihood as a DataFrame.

        Columns are ``weight`` and ``loglik``; the index is the row
        position in the input data.
        """
        return pd.DataFrame(
            {"weight": self.weights, "loglik": self.loglik},
            index=pd.RangeIndex(len(self.loglik), name="observation"),
        )
