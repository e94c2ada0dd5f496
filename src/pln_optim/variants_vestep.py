"""Variational E-step variants: model parameters held fixed.

A VE-step optimises only the variational parameters ``M, S`` of new (or
held-out) observations under an already fitted model, i.e. with the
regression coefficients ``Θ`` and the precision ``Ω`` supplied by the
caller.  Three structurings are available:

* ``vestep_full`` — the full ``Ω`` is used as is.
* ``vestep_diagonal`` — only ``diag(Ω)`` is used (``ω_j``).
* ``vestep_spherical`` — only ``Ω[0, 0]`` is used (``ω``), and ``S``
  is one scale per observation.

The latent penalty is the Gaussian cross-entropy under the fixed
precision, with the constant ``−½ w̄ (log|Ω| + p)`` so that the
per-row log-likelihood sums to the negative objective.  The reported
``Sigma`` is the weighted latent second moment of the refitted rows;
``Omega`` is the fixed input.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np

from ._math import weight_rows, weighted_total
from .data import CountData
from .variants import (
    Blocks,
    GradBlocks,
    SparseVariant,
    _check_block_shapes,
    _check_scale,
    _PoissonLayer,
    register_variant,
)


def _as_theta(theta: Any, label: str) -> np.ndarray:
    arr = np.array(theta, dtype=float)
    if arr.ndim != 2:
        msg = f"{label}: Theta must be a (p, d) matrix, got shape {arr.shape}."
        raise ValueError(msg)
    return arr


def _check_theta(label: str, theta: np.ndarray, data: CountData) -> None:
    if theta.shape != (data.p, data.d):
        msg = f"{label}: Theta has shape {theta.shape}, expected {(data.p, data.d)}."
        raise ValueError(msg)


@dataclass(frozen=True, eq=False)
class VEStepFullVariant(SparseVariant):
    """VE-step under the full fixed precision ``Ω``.

    Attributes:
        omega: Symmetric positive-definite ``(p, p)`` precision.
        theta: Fixed regression coefficients ``(p, d)``.
    """

    theta: np.ndarray = field(default=None)

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.theta is None:
            msg = f"{self.name}: Theta is required."
            raise TypeError(msg)
        object.__setattr__(self, "theta", _as_theta(self.theta, self.name))

    @property
    def name(self) -> str:
        return "vestep_full"

    @property
    def block_names(self) -> tuple[str, ...]:
        return ("M", "S")

    def _theta(self, blocks: Blocks) -> np.ndarray:
        return self.theta

    def validate(self, blocks: Blocks, data: CountData) -> None:
        n, p = data.n, data.p
        _check_theta(self.name, self.theta, data)
        if self.omega.shape != (p, p):
            msg = f"{self.name}: Omega has shape {self.omega.shape}, expected {(p, p)}."
            raise ValueError(msg)
        _check_block_shapes(self.name, blocks, {"M": (n, p), "S": (n, p)})
        _check_scale(self.name, blocks["S"], data)


@dataclass(frozen=True, eq=False)
class VEStepDiagonalVariant(_PoissonLayer):
    """VE-step using only the diagonal ``ω_j = Ω_jj`` of the precision."""

    omega: np.ndarray
    theta: np.ndarray

    def __post_init__(self) -> None:
        omega = np.array(self.omega, dtype=float)
        if omega.ndim != 2 or omega.shape[0] != omega.shape[1]:
            msg = f"{self.name}: Omega must be a square matrix, got shape {omega.shape}."
            raise ValueError(msg)
        if np.any(np.diag(omega) <= 0):
            msg = f"{self.name}: the diagonal of Omega must be positive."
            raise ValueError(msg)
        object.__setattr__(self, "omega", omega)
        object.__setattr__(self, "theta", _as_theta(self.theta, self.name))

    @property
    def name(self) -> str:
        return "vestep_diagonal"

    @property
    def block_names(self) -> tuple[str, ...]:
        return ("M", "S")

    def _theta(self, blocks: Blocks) -> np.ndarray:
        return self.theta

    def validate(self, blocks: Blocks, data: CountData) -> None:
        n, p = data.n, data.p
        _check_theta(self.name, self.theta, data)
        if self.omega.shape != (p, p):
            msg = f"{self.name}: Omega has shape {self.omega.shape}, expected {(p, p)}."
            raise ValueError(msg)
        _check_block_shapes(self.name, blocks, {"M": (n, p), "S": (n, p)})
        _check_scale(self.name, blocks["S"], data)

    def _latent_objective(self, blocks: Blocks, grads: GradBlocks, data: CountData, A: np.ndarray) -> float:
        M, S = blocks["M"], blocks["S"]
        S2 = S * S
        omega = np.diag(self.omega)
        weight_rows(data.w, M * omega + A - data.Y, out=grads["M"])
        weight_rows(data.w, S * omega + S * A - 1.0 / S, out=grads["S"])
        return (
            -0.5 * weighted_total(data.w, np.log(S2))
            + 0.5 * weighted_total(data.w, (M * M + S2) * omega)
            - 0.5 * data.w_bar * (float(np.log(omega).sum()) + data.p)
        )

    def _latent_loglik(self, blocks: Blocks, data: CountData) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        M, S = blocks["M"], blocks["S"]
        S2 = S * S
        omega = np.diag(self.omega)
        rows = (
            0.5 * np.log(S2).sum(axis=1)
            - 0.5 * ((M * M + S2) * omega).sum(axis=1)
            + 0.5 * (float(np.log(omega).sum()) + data.p)
        )
        sigma = weight_rows(data.w, M * M + S2).sum(axis=0) / data.w_bar
        return rows, np.diag(sigma), np.diag(omega)


@dataclass(frozen=True, eq=False)
class VEStepSphericalVariant(_PoissonLayer):
    """VE-step with the scalar precision ``ω = Ω[0, 0]``; ``S`` is ``(n,)``."""

    omega: np.ndarray
    theta: np.ndarray

    def __post_init__(self) -> None:
        omega = np.atleast_2d(np.array(self.omega, dtype=float))
        if omega.ndim != 2 or omega.shape[0] != omega.shape[1]:
            msg = f"{self.name}: Omega must be a square matrix, got shape {omega.shape}."
            raise ValueError(msg)
        if not omega[0, 0] > 0:
            msg = f"{self.name}: Omega[0, 0] must be positive."
            raise ValueError(msg)
        object.__setattr__(self, "omega", omega)
        object.__setattr__(self, "theta", _as_theta(self.theta, self.name))

    @property
    def name(self) -> str:
        return "vestep_spherical"

    @property
    def block_names(self) -> tuple[str, ...]:
        return ("M", "S")

    def _theta(self, blocks: Blocks) -> np.ndarray:
        return self.theta

    def validate(self, blocks: Blocks, data: CountData) -> None:
        n, p = data.n, data.p
        _check_theta(self.name, self.theta, data)
        _check_block_shapes(self.name, blocks, {"M": (n, p), "S": (n,)})
        _check_scale(self.name, blocks["S"], data)

    def variance_term(self, blocks: Blocks) -> np.ndarray:
        S = blocks["S"]
        return (S * S)[:, None]

    def _latent_objective(self, blocks: Blocks, grads: GradBlocks, data: CountData, A: np.ndarray) -> float:
        M, S = blocks["M"], blocks["S"]
        p = data.p
        S2 = S * S
        omega = float(self.omega[0, 0])
        weight_rows(data.w, M * omega + A - data.Y, out=grads["M"])
        weight_rows(data.w, S * A.sum(axis=1) - p / S + p * omega * S, out=grads["S"])
        return (
            -0.5 * p * weighted_total(data.w, np.log(S2))
            + 0.5 * omega * (weighted_total(data.w, M * M) + p * weighted_total(data.w, S2))
            - 0.5 * data.w_bar * p * (np.log(omega) + 1.0)
        )

    def _latent_loglik(self, blocks: Blocks, data: CountData) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        M, S = blocks["M"], blocks["S"]
        p = data.p
        S2 = S * S
        omega = float(self.omega[0, 0])
        rows = (
            0.5 * p * np.log(S2)
            - 0.5 * omega * ((M * M).sum(axis=1) + p * S2)
            + 0.5 * p * (np.log(omega) + 1.0)
        )
        sigma2 = (weighted_total(data.w, M * M) + p * weighted_total(data.w, S2)) / (p * data.w_bar)
        return rows, sigma2 * np.eye(p), omega * np.eye(p)


register_variant("vestep_full", VEStepFullVariant)
register_variant("vestep_diagonal", VEStepDiagonalVariant)
register_variant("vestep_spherical", VEStepSphericalVariant)
