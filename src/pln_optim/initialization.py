"""Default starting values for the parameter blocks of every variant.

The variational objective is non-convex, and a sensible start matters
more than the choice of local algorithm.  The defaults follow the
usual PLN recipe:

* ``Theta`` — regression of ``log(1 + Y) − O`` on ``X``, either by
  weighted least squares (``method="lm"``, sklearn
  ``LinearRegression``) or by one Poisson GLM per response with the
  offsets (``method="glm"``, statsmodels).
* ``M`` — the regression residuals on the log scale.
* ``S`` — a small constant scale (``0.1``); a vector for the
  spherical variants.
* ``B`` (rank variant) — the leading ``q`` principal axes of the
  residuals scaled by the square root of their explained variance,
  with the standardized principal scores as ``M``.

For the VE-step variants ``Theta`` is a fixed input, so only ``M`` and
``S`` are returned.
"""

from __future__ import annotations

import warnings
from typing import Any

import numpy as np
import statsmodels.api as sm
from sklearn.decomposition import PCA
from sklearn.linear_model import LinearRegression
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning as SmConvergenceWarning,
)
from statsmodels.tools.sm_exceptions import PerfectSeparationWarning

from ._compat import _as_float_array
from ._typing import ArrayLike
from .data import CountData
from .variants import CovarianceVariant

_MAIN_VARIANTS = ("full", "spherical", "diagonal", "rank", "sparse")
_VESTEP_VARIANTS = ("vestep_full", "vestep_diagonal", "vestep_spherical")
_SPHERICAL_SCALE = ("spherical", "vestep_spherical")


def _theta_lm(data: CountData, log_y: np.ndarray) -> np.ndarray:
    active = data.w > 0
    model = LinearRegression(fit_intercept=False)
    model.fit(data.X[active], log_y[active], sample_weight=data.w[active])
    return np.asarray(model.coef_, dtype=float).reshape(data.p, data.d)


def _theta_glm(data: CountData) -> np.ndarray:
    active = data.w > 0
    theta = np.empty((data.p, data.d))
    with warnings.catch_warnings():
        # Responses that are all zero or separate perfectly still give
        # usable (if large) starting coefficients.
        warnings.filterwarnings("ignore", category=RuntimeWarning)
        warnings.filterwarnings("ignore", category=SmConvergenceWarning)
        warnings.filterwarnings("ignore", category=PerfectSeparationWarning)
        for j in range(data.p):
            model = sm.GLM(
                data.Y[active, j],
                data.X[active],
                family=sm.families.Poisson(),
                offset=data.O[active, j],
                var_weights=data.w[active],
            ).fit(disp=0)
            theta[j] = np.asarray(model.params, dtype=float)
    return theta


def _loadings(residuals: np.ndarray, data: CountData, rank: int) -> tuple[np.ndarray, np.ndarray]:
    """``(B, M)`` from the leading *rank* principal components of *residuals*."""
    if not 1 <= rank <= min(data.p, int(np.count_nonzero(data.w > 0))):
        msg = f"rank must be between 1 and min(p, active rows), got {rank}."
        raise ValueError(msg)
    pca = PCA(n_components=rank)
    pca.fit(residuals[data.w > 0])
    spread = np.sqrt(np.maximum(pca.explained_variance_, np.finfo(float).eps))
    B = pca.components_.T * spread
    M = pca.transform(residuals) / spread
    return B, M


def initial_parameters(
    variant: str | CovarianceVariant,
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None = None,  # noqa: E741
    w: ArrayLike | None = None,
    *,
    rank: int | None = None,
    theta: ArrayLike | None = None,
    method: str = "lm",
    scale: float = 0.1,
) -> dict[str, np.ndarray]:
    """Starting blocks for :func:`pln_optim.optimize`.

    Args:
        variant: Variant name (or instance) the blocks are for.
        Y: Counts ``(n, p)``.
        X: Covariates ``(n, d)``.
        O: Offsets ``(n, p)``; zeros when omitted.
        w: Observation weights ``(n,)``; ones when omitted.  Rows with
            zero weight do not influence ``Theta`` or ``B``.
        rank: Latent dimension ``q``; required for ``"rank"``.
        theta: Fixed ``(p, d)`` coefficients; required for the VE-step
            variants.
        method: ``"lm"`` (least squares on ``log(1 + Y)``) or
            ``"glm"`` (per-response Poisson GLMs).
        scale: Initial value of every element of ``S``.

    Returns:
        ``name -> array`` in the variant's packing order.

    Raises:
        ValueError: Unknown variant or method, missing ``rank`` or
            ``theta``, or a non-positive *scale*.
    """
    name = variant.name if isinstance(variant, CovarianceVariant) and not isinstance(variant, str) else variant
    if name not in _MAIN_VARIANTS + _VESTEP_VARIANTS:
        msg = f"No default initialisation for variant {name!r}."
        raise ValueError(msg)
    if method not in ("lm", "glm"):
        msg = f"method must be 'lm' or 'glm', got {method!r}."
        raise ValueError(msg)
    if not scale > 0:
        msg = f"scale must be positive, got {scale!r}."
        raise ValueError(msg)

    data = CountData.from_arrays(Y, X, O, w)
    log_y = np.log1p(data.Y) - data.O

    blocks: dict[str, Any] = {}
    if name in _VESTEP_VARIANTS:
        if theta is None:
            msg = f"{name}: theta is required to initialise a VE-step."
            raise ValueError(msg)
        Theta = _as_float_array(theta, name="theta", ndim=2)
        if Theta.shape != (data.p, data.d):
            msg = f"{name}: theta has shape {Theta.shape}, expected {(data.p, data.d)}."
            raise ValueError(msg)
    else:
        if data.d == 0:
            Theta = np.zeros((data.p, 0))
        elif method == "lm":
            Theta = _theta_lm(data, log_y)
        else:
            Theta = _theta_glm(data)
        blocks["Theta"] = Theta

    residuals = log_y - data.X @ Theta.T

    if name == "rank":
        if rank is None:
            msg = "rank: the latent dimension `rank` is required."
            raise ValueError(msg)
        B, M = _loadings(residuals, data, int(rank))
        blocks["B"] = B
        blocks["M"] = M
        blocks["S"] = np.full((data.n, B.shape[1]), float(scale))
    elif name in _SPHERICAL_SCALE:
        blocks["M"] = residuals
        blocks["S"] = np.full(data.n, float(scale))
    else:
        blocks["M"] = residuals
        blocks["S"] = np.full((data.n, data.p), float(scale))
    return blocks
