"""Covariance variants: objective, analytic gradient and post-solve derivations.

The ``CovarianceVariant`` protocol defines the interface every
Poisson-lognormal covariance structuring implements.  It decouples the
model-specific mathematics (which blocks are optimised, how the latent
variance enters the Poisson mean, the Gaussian-layer penalty, the
closed-form covariance) from the optimization driver in
``fitting.py``, which programs against the protocol only.

Model
~~~~~
For observation ``i`` and response ``j``::

    W_i ~ N(0, Σ)                    latent Gaussian layer
    Y_ij | W_i ~ Poisson(exp(O_ij + x_iᵀθ_j + W_ij))

The posterior of ``W_i`` is approximated by ``N(M_i, diag(S_i²))``.
Each variant minimises the weighted negative ELBO (up to the
``Σ w log y!`` constant)::

    J = Σ_i w_i Σ_j (A_ij − Y_ij·Z_ij) + latent-layer terms

with ``Z = O + XΘᵀ + M`` and ``A = exp(Z + ½·S²)`` the variational
first moment of the Poisson mean.  The scale block ``S`` only ever
enters through ``S²``, so any non-zero value is a valid variance and
no bound constraints are needed.

=============================  =============  ==========================
Variant                        Packed blocks  Latent-layer terms
=============================  =============  ==========================
``FullVariant``                Θ, M, S        −½Σw log S² + ½ w̄ log|Σ̂|
``SphericalVariant``           Θ, M, S(n,)    −½pΣw log S² + ½ p w̄ log σ̂²
``DiagonalVariant``            Θ, M, S        −½Σw log S² + ½ w̄ Σ log σ̂²_j
``RankVariant``                Θ, B, M, S     ½Σw (M² + S² − log S² − 1)
``SparseVariant``              Θ, M, S        −½Σw log S² + ½ tr(Ω nΣ̂) + c
=============================  =============  ==========================

``Σ̂`` (and ``σ̂²``) are the closed-form maximisers for the current
``M, S`` (``nΣ̂ = MᵀWM + diag(wᵀS²)`` and ``Σ̂ = nΣ̂ / w̄``), so the
covariance never appears in the packed vector.  The rank-constrained
variant instead carries the loading ``B`` (p×q) and a standard-normal
prior on q-dimensional latent positions; ``Σ = B·E[WWᵀ]·Bᵀ`` is only
derived after the run.  ``SparseVariant`` holds an externally
estimated precision ``Ω`` fixed.

Zero-weight rows are masked with exact zeros in every sum and
gradient (see :func:`pln_optim._math.weight_rows`).

Extensibility
~~~~~~~~~~~~~
New variants implement the protocol and are registered in
``_VARIANTS`` via :func:`register_variant`; the VE-step variants in
``variants_vestep.py`` register themselves the same way.
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import numpy as np

from ._math import spd_inverse_logdet, weight_rows, weighted_total
from .data import CountData

Blocks = Mapping[str, np.ndarray]
GradBlocks = MutableMapping[str, np.ndarray]

# ------------------------------------------------------------------ #
# CovarianceVariant protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class CovarianceVariant(Protocol):
    """Interface that every covariance variant must implement.

    Attributes:
        name: Registry identifier (e.g. ``"full"``, ``"rank"``).
        block_names: Packed blocks in packing order.
    """

    @property
    def name(self) -> str: ...

    @property
    def block_names(self) -> tuple[str, ...]: ...

    def validate(self, blocks: Blocks, data: CountData) -> None:
        """Raise ``ValueError`` if *blocks* do not fit *data*.

        Called once before the flat vector is built, so that a shape
        mismatch fails with a message naming the block instead of
        misaligning the packed layout.
        """
        ...

    def objective_and_grad(self, blocks: Blocks, grads: GradBlocks, data: CountData) -> float:
        """Return the objective and write every block's gradient.

        Args:
            blocks: ``name -> array`` views of the current iterate.
            grads: ``name -> array`` views of the gradient buffer, same
                shapes as *blocks*; overwritten in place.
            data: The run's data matrices.
        """
        ...

    def derive(self, blocks: Blocks, data: CountData) -> dict[str, Any]:
        """Post-solve quantities from the final blocks.

        Returns:
            Dict with ``"Z"`` (linear predictor), ``"A"`` (fitted
            Poisson means), ``"Sigma"``, ``"Omega"`` (``None`` when
            undefined) and ``"loglik"`` (per-observation ELBO).
        """
        ...


# ------------------------------------------------------------------ #
# Shared Poisson layer
# ------------------------------------------------------------------ #
#
# Every variant shares the same Poisson part of the objective and the
# same regression gradient; they differ in how the latent mean and
# variance enter ``Z`` / ``A`` and in the Gaussian-layer terms.
# Subclasses provide:
#
#   latent_mean(blocks)          -> (n, p) contribution to Z
#   variance_term(blocks)        -> (n, p) or (n, 1) term in A's exponent
#   _latent_objective(...)       -> latent terms of J, writes M/S/B grads
#   _latent_loglik(...)          -> per-row latent ELBO terms, Σ, Ω


def _check_block_shapes(
    variant: str,
    blocks: Blocks,
    expected: Mapping[str, tuple[int, ...]],
) -> None:
    for name, shape in expected.items():
        if name not in blocks:
            msg = f"{variant}: missing initial block '{name}'."
            raise ValueError(msg)
        actual = np.shape(blocks[name])
        if actual != shape:
            msg = f"{variant}: block '{name}' has shape {actual}, expected {shape}."
            raise ValueError(msg)


def _check_scale(variant: str, S: np.ndarray, data: CountData) -> None:
    if np.any(np.asarray(S)[data.w > 0] == 0):
        msg = f"{variant}: block 'S' must be non-zero on rows with positive weight."
        raise ValueError(msg)


def _unit_scale_on_excluded(blocks: Blocks, data: CountData) -> Blocks:
    """*blocks* with ``S`` replaced by ``1.0`` on zero-weight rows.

    The latent terms evaluate ``1/S`` and ``log S²`` elementwise before
    the row mask applies; ``S`` may be zero on excluded rows.
    """
    excluded = data.w == 0
    if not excluded.any():
        return blocks
    S = np.array(blocks["S"], dtype=float)
    S[excluded] = 1.0
    return {**blocks, "S": S}


class _PoissonLayer:
    """Poisson-layer objective and gradient shared by all variants."""

    def _theta(self, blocks: Blocks) -> np.ndarray:
        return blocks["Theta"]

    def latent_mean(self, blocks: Blocks) -> np.ndarray:
        return blocks["M"]

    def variance_term(self, blocks: Blocks) -> np.ndarray:
        S = blocks["S"]
        return S * S

    def _moments(self, blocks: Blocks, data: CountData) -> tuple[np.ndarray, np.ndarray]:
        Z = data.O + data.X @ self._theta(blocks).T + self.latent_mean(blocks)
        A = np.exp(Z + 0.5 * self.variance_term(blocks))
        return Z, A

    def objective_and_grad(self, blocks: Blocks, grads: GradBlocks, data: CountData) -> float:
        Z, A = self._moments(blocks, data)
        value = weighted_total(data.w, A - data.Y * Z)
        if "Theta" in grads:
            np.matmul(weight_rows(data.w, A - data.Y).T, data.X, out=grads["Theta"])
        return value + self._latent_objective(_unit_scale_on_excluded(blocks, data), grads, data, A)

    def derive(self, blocks: Blocks, data: CountData) -> dict[str, Any]:
        """Post-solve quantities; ``loglik`` is ``0.0`` on zero-weight rows."""
        Z, A = self._moments(blocks, data)
        latent_rows, sigma, omega = self._latent_loglik(_unit_scale_on_excluded(blocks, data), data)
        loglik = (data.Y * Z - A).sum(axis=1) + latent_rows - data.logfact
        loglik = np.where(data.w > 0, loglik, 0.0)
        return {"Z": Z, "A": A, "Sigma": sigma, "Omega": omega, "loglik": loglik}

    def _latent_objective(self, blocks: Blocks, grads: GradBlocks, data: CountData, A: np.ndarray) -> float:
        raise NotImplementedError

    def _latent_loglik(self, blocks: Blocks, data: CountData) -> tuple[np.ndarray, np.ndarray, np.ndarray | None]:
        raise NotImplementedError


def _second_moment(M: np.ndarray, S2: np.ndarray, w: np.ndarray) -> np.ndarray:
    """Weighted latent second moment ``MᵀWM + diag(wᵀS²)``."""
    return M.T @ weight_rows(w, M) + np.diag(weight_rows(w, S2).sum(axis=0))


def _invert_covariance(variant: str, sigma: np.ndarray) -> tuple[np.ndarray, float]:
    try:
        return spd_inverse_logdet(sigma)
    except np.linalg.LinAlgError as exc:
        msg = f"{variant}: estimated covariance is not positive definite ({exc})."
        raise np.linalg.LinAlgError(msg) from exc


def _precision_gradients(
    blocks: Blocks,
    grads: GradBlocks,
    data: CountData,
    A: np.ndarray,
    omega: np.ndarray,
) -> None:
    """M and S gradients shared by every variant with a p×p precision."""
    M, S = blocks["M"], blocks["S"]
    weight_rows(data.w, M @ omega + A - data.Y, out=grads["M"])
    weight_rows(data.w, S * np.diag(omega) + S * A - 1.0 / S, out=grads["S"])


def _precision_loglik(
    M: np.ndarray,
    S2: np.ndarray,
    omega: np.ndarray,
    logdet_omega: float,
) -> np.ndarray:
    p = omega.shape[0]
    return (
        0.5 * np.log(S2).sum(axis=1)
        - 0.5 * ((M @ omega) * M).sum(axis=1)
        - 0.5 * S2 @ np.diag(omega)
        + 0.5 * (logdet_omega + p)
    )


# ------------------------------------------------------------------ #
# Full covariance
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class FullVariant(_PoissonLayer):
    """Unrestricted covariance, estimated in closed form each evaluation.

    ``Σ̂ = (MᵀWM + diag(wᵀS²)) / w̄`` and ``Ω = Σ̂⁻¹`` (Cholesky); the
    latent penalty is ``½ w̄ log|Σ̂|``.  A ``Σ̂`` that is not positive
    definite raises :class:`numpy.linalg.LinAlgError`.
    """

    @property
    def name(self) -> str:
        return "full"

    @property
    def block_names(self) -> tuple[str, ...]:
        return ("Theta", "M", "S")

    def validate(self, blocks: Blocks, data: CountData) -> None:
        n, p, d = data.n, data.p, data.d
        _check_block_shapes(self.name, blocks, {"Theta": (p, d), "M": (n, p), "S": (n, p)})
        _check_scale(self.name, blocks["S"], data)

    def _latent_objective(self, blocks: Blocks, grads: GradBlocks, data: CountData, A: np.ndarray) -> float:
        M, S = blocks["M"], blocks["S"]
        S2 = S * S
        sigma = _second_moment(M, S2, data.w) / data.w_bar
        omega, logdet_sigma = _invert_covariance(self.name, sigma)
        _precision_gradients(blocks, grads, data, A, omega)
        return -0.5 * weighted_total(data.w, np.log(S2)) + 0.5 * data.w_bar * logdet_sigma

    def _latent_loglik(self, blocks: Blocks, data: CountData) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        M, S = blocks["M"], blocks["S"]
        S2 = S * S
        sigma = _second_moment(M, S2, data.w) / data.w_bar
        omega, logdet_sigma = _invert_covariance(self.name, sigma)
        return _precision_loglik(M, S2, omega, -logdet_sigma), sigma, omega


# ------------------------------------------------------------------ #
# Spherical covariance
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class SphericalVariant(_PoissonLayer):
    """Covariance ``σ²·I`` with one variational scale per observation.

    ``S`` is a length-n vector; ``σ̂² = (Σ w‖M_i‖² + p Σ w S_i²) / (p w̄)``.
    """

    @property
    def name(self) -> str:
        return "spherical"

    @property
    def block_names(self) -> tuple[str, ...]:
        return ("Theta", "M", "S")

    def validate(self, blocks: Blocks, data: CountData) -> None:
        n, p, d = data.n, data.p, data.d
        _check_block_shapes(self.name, blocks, {"Theta": (p, d), "M": (n, p), "S": (n,)})
        _check_scale(self.name, blocks["S"], data)

    def variance_term(self, blocks: Blocks) -> np.ndarray:
        S = blocks["S"]
        return (S * S)[:, None]

    @staticmethod
    def _sigma2(M: np.ndarray, S2: np.ndarray, data: CountData) -> float:
        return (weighted_total(data.w, M * M) + data.p * weighted_total(data.w, S2)) / (data.p * data.w_bar)

    def _latent_objective(self, blocks: Blocks, grads: GradBlocks, data: CountData, A: np.ndarray) -> float:
        M, S = blocks["M"], blocks["S"]
        p = data.p
        S2 = S * S
        sigma2 = self._sigma2(M, S2, data)
        weight_rows(data.w, M / sigma2 + A - data.Y, out=grads["M"])
        weight_rows(data.w, S * A.sum(axis=1) - p / S + p * S / sigma2, out=grads["S"])
        return -0.5 * p * weighted_total(data.w, np.log(S2)) + 0.5 * p * data.w_bar * np.log(sigma2)

    def _latent_loglik(self, blocks: Blocks, data: CountData) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        M, S = blocks["M"], blocks["S"]
        p = data.p
        S2 = S * S
        sigma2 = self._sigma2(M, S2, data)
        rows = (
            -0.5 * (M * M).sum(axis=1) / sigma2
            - 0.5 * p * S2 / sigma2
            + 0.5 * p * np.log(S2 / sigma2)
            + 0.5 * p
        )
        return rows, sigma2 * np.eye(p), np.eye(p) / sigma2


# ------------------------------------------------------------------ #
# Diagonal covariance
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class DiagonalVariant(_PoissonLayer):
    """Diagonal covariance ``diag(σ²_1, …, σ²_p)``, closed form per column."""

    @property
    def name(self) -> str:
        return "diagonal"

    @property
    def block_names(self) -> tuple[str, ...]:
        return ("Theta", "M", "S")

    def validate(self, blocks: Blocks, data: CountData) -> None:
        n, p, d = data.n, data.p, data.d
        _check_block_shapes(self.name, blocks, {"Theta": (p, d), "M": (n, p), "S": (n, p)})
        _check_scale(self.name, blocks["S"], data)

    @staticmethod
    def _sigma2(M: np.ndarray, S2: np.ndarray, data: CountData) -> np.ndarray:
        return weight_rows(data.w, M * M + S2).sum(axis=0) / data.w_bar

    def _latent_objective(self, blocks: Blocks, grads: GradBlocks, data: CountData, A: np.ndarray) -> float:
        M, S = blocks["M"], blocks["S"]
        S2 = S * S
        sigma2 = self._sigma2(M, S2, data)
        weight_rows(data.w, M / sigma2 + A - data.Y, out=grads["M"])
        weight_rows(data.w, S / sigma2 + S * A - 1.0 / S, out=grads["S"])
        return -0.5 * weighted_total(data.w, np.log(S2)) + 0.5 * data.w_bar * float(np.log(sigma2).sum())

    def _latent_loglik(self, blocks: Blocks, data: CountData) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        M, S = blocks["M"], blocks["S"]
        S2 = S * S
        sigma2 = self._sigma2(M, S2, data)
        rows = (
            0.5 * np.log(S2).sum(axis=1)
            - 0.5 * ((M * M + S2) / sigma2).sum(axis=1)
            - 0.5 * float(np.log(sigma2).sum())
            + 0.5 * data.p
        )
        return rows, np.diag(sigma2), np.diag(1.0 / sigma2)


# ------------------------------------------------------------------ #
# Rank-constrained covariance
# ------------------------------------------------------------------ #
#
# Z = O + XΘᵀ + MBᵀ with q-dimensional latent positions M under a
# standard-normal prior.  The pair (B, M) is only identified up to an
# orthogonal rotation of the latent space; nothing normalises it during
# the run, the initial values pick the representative.


@dataclass(frozen=True, eq=False)
class RankVariant(_PoissonLayer):
    """Rank-q covariance ``Σ = B·E[WWᵀ]·Bᵀ`` through a p×q loading ``B``.

    The rank q is the column count of the initial ``B``.
    """

    @property
    def name(self) -> str:
        return "rank"

    @property
    def block_names(self) -> tuple[str, ...]:
        return ("Theta", "B", "M", "S")

    def validate(self, blocks: Blocks, data: CountData) -> None:
        n, p, d = data.n, data.p, data.d
        B_shape = np.shape(blocks.get("B"))
        if len(B_shape) != 2 or B_shape[0] != p:
            msg = f"{self.name}: block 'B' has shape {B_shape}, expected ({p}, q)."
            raise ValueError(msg)
        q = B_shape[1]
        _check_block_shapes(self.name, blocks, {"Theta": (p, d), "B": (p, q), "M": (n, q), "S": (n, q)})
        _check_scale(self.name, blocks["S"], data)

    def latent_mean(self, blocks: Blocks) -> np.ndarray:
        return blocks["M"] @ blocks["B"].T

    def variance_term(self, blocks: Blocks) -> np.ndarray:
        S, B = blocks["S"], blocks["B"]
        return (S * S) @ (B * B).T

    def _latent_objective(self, blocks: Blocks, grads: GradBlocks, data: CountData, A: np.ndarray) -> float:
        B, M, S = blocks["B"], blocks["M"], blocks["S"]
        S2 = S * S
        residual = weight_rows(data.w, A - data.Y)
        grads["B"][...] = residual.T @ M + (weight_rows(data.w, A).T @ S2) * B
        weight_rows(data.w, (A - data.Y) @ B + M, out=grads["M"])
        weight_rows(data.w, S - 1.0 / S + (A @ (B * B)) * S, out=grads["S"])
        return 0.5 * weighted_total(data.w, M * M + S2 - np.log(S2) - 1.0)

    def _latent_loglik(self, blocks: Blocks, data: CountData) -> tuple[np.ndarray, np.ndarray, None]:
        B, M, S = blocks["B"], blocks["M"], blocks["S"]
        S2 = S * S
        rows = -0.5 * (M * M + S2 - np.log(S2) - 1.0).sum(axis=1)
        sigma = B @ _second_moment(M, S2, data.w) @ B.T / data.w_bar
        return rows, sigma, None


# ------------------------------------------------------------------ #
# Sparse / fixed precision
# ------------------------------------------------------------------ #


def _as_precision(omega: Any, label: str) -> tuple[np.ndarray, float]:
    """Validate a fixed precision matrix; return it with its log-determinant."""
    arr = np.array(omega, dtype=float)
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
        msg = f"{label}: Omega must be a square matrix, got shape {arr.shape}."
        raise ValueError(msg)
    if not np.allclose(arr, arr.T):
        msg = f"{label}: Omega must be symmetric."
        raise ValueError(msg)
    try:
        _, logdet = spd_inverse_logdet(arr)
    except np.linalg.LinAlgError as exc:
        msg = f"{label}: Omega must be positive definite."
        raise ValueError(msg) from exc
    return arr, logdet


@dataclass(frozen=True, eq=False)
class SparseVariant(_PoissonLayer):
    """Precision ``Ω`` supplied externally (e.g. a graphical-lasso estimate).

    ``Ω`` is held fixed; only ``Θ, M, S`` are optimised.  The latent
    penalty is ``½ tr(Ω·nΣ̂) − ½ w̄ (log|Ω| + p)``.

    Attributes:
        omega: Symmetric positive-definite ``(p, p)`` precision.
    """

    omega: np.ndarray
    _logdet_omega: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        omega, logdet = _as_precision(self.omega, self.name)
        object.__setattr__(self, "omega", omega)
        object.__setattr__(self, "_logdet_omega", logdet)

    @property
    def name(self) -> str:
        return "sparse"

    @property
    def block_names(self) -> tuple[str, ...]:
        return ("Theta", "M", "S")

    def validate(self, blocks: Blocks, data: CountData) -> None:
        n, p, d = data.n, data.p, data.d
        if self.omega.shape != (p, p):
            msg = f"{self.name}: Omega has shape {self.omega.shape}, expected {(p, p)}."
            raise ValueError(msg)
        _check_block_shapes(self.name, blocks, {"Theta": (p, d), "M": (n, p), "S": (n, p)})
        _check_scale(self.name, blocks["S"], data)

    def _latent_objective(self, blocks: Blocks, grads: GradBlocks, data: CountData, A: np.ndarray) -> float:
        M, S = blocks["M"], blocks["S"]
        S2 = S * S
        n_sigma = _second_moment(M, S2, data.w)
        _precision_gradients(blocks, grads, data, A, self.omega)
        return (
            -0.5 * weighted_total(data.w, np.log(S2))
            + 0.5 * float(np.sum(self.omega * n_sigma))
            - 0.5 * data.w_bar * (self._logdet_omega + data.p)
        )

    def _latent_loglik(self, blocks: Blocks, data: CountData) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        M, S = blocks["M"], blocks["S"]
        S2 = S * S
        sigma = _second_moment(M, S2, data.w) / data.w_bar
        return _precision_loglik(M, S2, self.omega, self._logdet_omega), sigma, self.omega


# ------------------------------------------------------------------ #
# Variant registry
# ------------------------------------------------------------------ #

_VARIANTS: dict[str, type] = {}
"""Registry mapping variant name strings to concrete variant classes."""

_PROTOCOL_MEMBERS = ("name", "block_names", "validate", "objective_and_grad", "derive")


def register_variant(name: str, cls: type) -> None:
    """Register a concrete ``CovarianceVariant`` class under *name*.

    Args:
        name: Lookup key (e.g. ``"full"``).
        cls: A class implementing the ``CovarianceVariant`` protocol.

    Raises:
        TypeError: If *cls* lacks a protocol member.
    """
    # runtime_checkable protocols with property members do not support
    # issubclass(); variants with required fixed inputs (Omega, Theta)
    # cannot be instantiated blind either, so check the class itself.
    missing = [member for member in _PROTOCOL_MEMBERS if not hasattr(cls, member)]
    if missing:
        msg = f"{cls!r} does not implement the CovarianceVariant protocol (missing {missing})."
        raise TypeError(msg)
    _VARIANTS[name] = cls


def available_variants() -> tuple[str, ...]:
    return tuple(sorted(_VARIANTS))


def resolve_variant(variant: str | CovarianceVariant, **fixed: Any) -> CovarianceVariant:
    """Resolve a variant name or instance to a concrete ``CovarianceVariant``.

    Instances are returned as-is.  Names are looked up in the registry
    and instantiated with the non-``None`` entries of *fixed* (the
    externally supplied ``omega`` and, for VE-steps, ``theta``).

    Args:
        variant: Registered name or a ``CovarianceVariant`` instance.
        **fixed: Fixed model inputs forwarded to the constructor.

    Raises:
        ValueError: Unknown name, or fixed inputs the variant does not
            accept / requires but did not get.
    """
    if isinstance(variant, CovarianceVariant) and not isinstance(variant, str):
        return variant

    if variant not in _VARIANTS:
        available = ", ".join(available_variants()) or "(none registered)"
        msg = f"Unknown variant {variant!r}.  Available variants: {available}."
        raise ValueError(msg)

    kwargs = {key: value for key, value in fixed.items() if value is not None}
    try:
        instance: CovarianceVariant = _VARIANTS[variant](**kwargs)
    except TypeError as exc:
        msg = f"Variant {variant!r} cannot be built from fixed inputs {sorted(kwargs)}: {exc}"
        raise ValueError(msg) from exc
    return instance


register_variant("full", FullVariant)
register_variant("spherical", SphericalVariant)
register_variant("diagonal", DiagonalVariant)
register_variant("rank", RankVariant)
register_variant("sparse", SparseVariant)
