"""Optimization driver: data + initial blocks in, :class:`FitResult` out.

:func:`optimize` is the generic entry point.  For one run it:

1. validates the data matrices (:class:`~pln_optim.data.CountData`);
2. resolves the covariance variant and checks the initial blocks
   against it;
3. packs the blocks into one flat vector and resolves the per-element
   ``xtol_abs`` tolerances;
4. hands the flat vector and an objective closure to
   :func:`~pln_optim.optimizer.minimize_objective`, which mutates the
   vector in place;
5. unpacks the final blocks, derives ``Z``, ``A``, ``Sigma``,
   ``Omega`` and the per-observation log-likelihood, and returns them.

The per-variant functions (``optimize_full`` … ``optimize_vestep_spherical``)
are thin wrappers that fix the variant name and expose the fixed model
inputs (``Omega``, ``Theta``) as required arguments.

Every run owns its data, packer and buffers, so independent runs can
be executed concurrently; :func:`optimize_many` does so with
``joblib.Parallel(prefer="threads")``.  NumPy's BLAS calls and NLopt's
inner loop release the GIL for most of a run's wall time.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np
from joblib import Parallel, delayed

from . import variants_vestep  # noqa: F401  (registers the VE-step variants)
from ._compat import _as_float_array
from ._results import FitResult
from ._typing import ArrayLike, ObjectiveAndGrad
from .data import CountData
from .optimizer import OptimizerConfig, minimize_objective
from .packing import ParameterPacker
from .variants import CovarianceVariant, resolve_variant

logger = logging.getLogger(__name__)

ConfigLike = OptimizerConfig | Mapping[str, Any] | None


# ------------------------------------------------------------------ #
# Building blocks
# ------------------------------------------------------------------ #


def _resolve_config(config: ConfigLike) -> OptimizerConfig:
    if config is None:
        return OptimizerConfig()
    if isinstance(config, OptimizerConfig):
        return config
    return OptimizerConfig.from_mapping(config)


def _initial_blocks(
    kernel: CovarianceVariant,
    init_parameters: Mapping[str, Any],
    data: CountData,
) -> dict[str, np.ndarray]:
    """Select, convert and validate the blocks *kernel* optimises."""
    unexpected = sorted(set(init_parameters) - set(kernel.block_names))
    if unexpected:
        msg = (
            f"{kernel.name}: unexpected initial blocks {unexpected}; "
            f"this variant optimises {list(kernel.block_names)}."
        )
        raise ValueError(msg)
    blocks = {
        name: _as_float_array(init_parameters[name], name=name)
        for name in kernel.block_names
        if name in init_parameters
    }
    kernel.validate(blocks, data)
    return blocks


def make_objective(
    kernel: CovarianceVariant,
    packer: ParameterPacker,
    data: CountData,
) -> ObjectiveAndGrad:
    """Wrap *kernel* as a flat-vector ``f(x, grad) -> float`` callback.

    Block views of ``x`` and ``grad`` are handed to the kernel without
    copying, so the gradient is written straight into the optimizer's
    buffer.
    """

    def objective_and_grad(x: np.ndarray, grad: np.ndarray) -> float:
        return kernel.objective_and_grad(packer.unpack_all(x), packer.unpack_all(grad), data)

    return objective_and_grad


def evaluate(
    variant: str | CovarianceVariant,
    parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None = None,  # noqa: E741
    w: ArrayLike | None = None,
    *,
    omega: ArrayLike | None = None,
    theta: ArrayLike | None = None,
) -> tuple[float, dict[str, np.ndarray]]:
    """Objective value and gradient blocks at *parameters*, without optimising.

    Returns:
        ``(objective, gradients)`` where *gradients* maps every packed
        block name to an array of that block's shape.
    """
    data = CountData.from_arrays(Y, X, O, w)
    kernel = resolve_variant(variant, omega=omega, theta=theta)
    blocks = _initial_blocks(kernel, parameters, data)
    packer = ParameterPacker(blocks)
    x = packer.pack_all(blocks)
    grad = packer.new_vector()
    value = make_objective(kernel, packer, data)(x, grad)
    return value, {name: view.copy() for name, view in packer.unpack_all(grad).items()}


# ------------------------------------------------------------------ #
# Generic driver
# ------------------------------------------------------------------ #


def optimize(
    variant: str | CovarianceVariant,
    init_parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None = None,  # noqa: E741
    w: ArrayLike | None = None,
    *,
    config: ConfigLike = None,
    omega: ArrayLike | None = None,
    theta: ArrayLike | None = None,
) -> FitResult:
    """Fit one Poisson-lognormal variant by variational optimisation.

    Args:
        variant: Registered variant name (``"full"``, ``"spherical"``,
            ``"diagonal"``, ``"rank"``, ``"sparse"``, ``"vestep_full"``,
            ``"vestep_diagonal"``, ``"vestep_spherical"``) or a
            ``CovarianceVariant`` instance.
        init_parameters: Initial value of every block the variant
            optimises, by name (e.g. ``{"Theta": ..., "M": ..., "S": ...}``).
        Y: Counts ``(n, p)``.
        X: Covariates ``(n, d)``.
        O: Offsets ``(n, p)``; zeros when omitted.
        w: Observation weights ``(n,)``; ones when omitted.
        config: :class:`OptimizerConfig`, a plain mapping of its fields,
            or ``None`` for the package defaults.
        omega: Fixed precision ``(p, p)`` for ``"sparse"`` and the
            VE-step variants.
        theta: Fixed regression coefficients ``(p, d)`` for the VE-step
            variants.

    Returns:
        A :class:`FitResult`.  A run stopped by ``maxeval`` or
        ``maxtime`` still returns, with ``converged == False``.

    Raises:
        ValueError: Invalid data, unknown variant or mis-shaped blocks.
        OptimizerConfigurationError: Invalid optimizer configuration.
        numpy.linalg.LinAlgError: The estimated covariance lost
            positive-definiteness during the run.
    """
    data = CountData.from_arrays(Y, X, O, w)
    kernel = resolve_variant(variant, omega=omega, theta=theta)
    cfg = _resolve_config(config)
    blocks = _initial_blocks(kernel, init_parameters, data)

    packer = ParameterPacker(blocks)
    parameters = packer.pack_all(blocks)
    xtol_abs = cfg.xtol_abs_array(packer)

    logger.debug(
        "Optimising %s variant: n=%d, p=%d, d=%d, %d parameters, algorithm=%s",
        kernel.name,
        data.n,
        data.p,
        data.d,
        packer.size,
        cfg.algorithm,
    )
    outcome = minimize_objective(parameters, make_objective(kernel, packer, data), cfg, xtol_abs)
    logger.debug(
        "%s variant finished: status=%s, iterations=%d, objective=%.6g",
        kernel.name,
        outcome.status.name,
        outcome.iterations,
        outcome.objective,
    )

    final = {name: view.copy() for name, view in packer.unpack_all(parameters).items()}
    derived = kernel.derive(final, data)
    return FitResult(
        variant=kernel.name,
        status=outcome.status,
        iterations=outcome.iterations,
        objective=outcome.objective,
        parameters=final,
        Z=derived["Z"],
        A=derived["A"],
        Sigma=derived["Sigma"],
        Omega=derived["Omega"],
        loglik=derived["loglik"],
        weights=data.w,
    )


# ------------------------------------------------------------------ #
# Per-variant entry points
# ------------------------------------------------------------------ #


def optimize_full(
    init_parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None = None,  # noqa: E741
    w: ArrayLike | None = None,
    config: ConfigLike = None,
) -> FitResult:
    """Full covariance; blocks ``Theta (p,d)``, ``M (n,p)``, ``S (n,p)``."""
    return optimize("full", init_parameters, Y, X, O, w, config=config)


def optimize_spherical(
    init_parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None = None,  # noqa: E741
    w: ArrayLike | None = None,
    config: ConfigLike = None,
) -> FitResult:
    """Spherical covariance; blocks ``Theta (p,d)``, ``M (n,p)``, ``S (n,)``."""
    return optimize("spherical", init_parameters, Y, X, O, w, config=config)


def optimize_diagonal(
    init_parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None = None,  # noqa: E741
    w: ArrayLike | None = None,
    config: ConfigLike = None,
) -> FitResult:
    """Diagonal covariance; blocks ``Theta (p,d)``, ``M (n,p)``, ``S (n,p)``."""
    return optimize("diagonal", init_parameters, Y, X, O, w, config=config)


def optimize_rank(
    init_parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None = None,  # noqa: E741
    w: ArrayLike | None = None,
    config: ConfigLike = None,
) -> FitResult:
    """Rank-q covariance; blocks ``Theta (p,d)``, ``B (p,q)``, ``M (n,q)``, ``S (n,q)``."""
    return optimize("rank", init_parameters, Y, X, O, w, config=config)


def optimize_sparse(
    init_parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None,  # noqa: E741
    w: ArrayLike | None,
    Omega: ArrayLike,
    config: ConfigLike = None,
) -> FitResult:
    """Fixed precision *Omega*; blocks ``Theta (p,d)``, ``M (n,p)``, ``S (n,p)``."""
    return optimize("sparse", init_parameters, Y, X, O, w, config=config, omega=Omega)


def optimize_vestep_full(
    init_parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None,  # noqa: E741
    w: ArrayLike | None,
    Theta: ArrayLike,
    Omega: ArrayLike,
    config: ConfigLike = None,
) -> FitResult:
    """VE-step under fixed *Theta* and *Omega*; blocks ``M (n,p)``, ``S (n,p)``."""
    return optimize("vestep_full", init_parameters, Y, X, O, w, config=config, omega=Omega, theta=Theta)


def optimize_vestep_diagonal(
    init_parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None,  # noqa: E741
    w: ArrayLike | None,
    Theta: ArrayLike,
    Omega: ArrayLike,
    config: ConfigLike = None,
) -> FitResult:
    """VE-step using ``diag(Omega)``; blocks ``M (n,p)``, ``S (n,p)``."""
    return optimize(
        "vestep_diagonal", init_parameters, Y, X, O, w, config=config, omega=Omega, theta=Theta
    )


def optimize_vestep_spherical(
    init_parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike | None,  # noqa: E741
    w: ArrayLike | None,
    Theta: ArrayLike,
    Omega: ArrayLike,
    config: ConfigLike = None,
) -> FitResult:
    """VE-step using ``Omega[0, 0]``; blocks ``M (n,p)``, ``S (n,)``."""
    return optimize(
        "vestep_spherical", init_parameters, Y, X, O, w, config=config, omega=Omega, theta=Theta
    )


# ------------------------------------------------------------------ #
# Independent runs in parallel
# ------------------------------------------------------------------ #


def optimize_many(
    jobs: Sequence[Mapping[str, Any]],
    n_jobs: int = 1,
) -> list[FitResult]:
    """Run several independent optimisations.

    Args:
        jobs: Keyword-argument mappings for :func:`optimize`, one per
            run (each must at least name ``variant``,
            ``init_parameters``, ``Y`` and ``X``).
        n_jobs: Number of worker threads.  ``1`` runs sequentially;
            ``-1`` uses all cores.

    Returns:
        Results in the order of *jobs*.  An exception in any run
        propagates.
    """
    # Sequential path: no joblib overhead for a handful of runs.
    if n_jobs == 1:
        return [optimize(**job) for job in jobs]

    return list(Parallel(n_jobs=n_jobs, prefer="threads")(delayed(optimize)(**job) for job in jobs))
