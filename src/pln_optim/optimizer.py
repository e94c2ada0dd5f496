"""Adapter around the NLopt local gradient optimizers.

:func:`minimize_objective` is the single entry point: it builds an
``nlopt.opt`` for the requested algorithm, applies the six
convergence knobs, wires the objective callback and runs the
optimisation, mutating the caller's parameter vector in place.

Configuration vs. convergence
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Two classes of problems are kept strictly apart:

* **Configuration errors** — unknown algorithm, tolerance array of the
  wrong length, a knob rejected by NLopt, optimizer construction
  failure.  These raise :class:`OptimizerConfigurationError` before the
  first objective evaluation.

* **Non-convergence** — evaluation or time cap reached, line-search
  failure, roundoff limits.  These are *not* exceptions: the run
  returns an :class:`OptimizerResult` whose ``status`` says what
  happened, and the parameter vector holds the best iterate seen.
  Partial results from a capped run remain useful to the caller.

Exceptions raised by the objective function itself (for example a
covariance that lost positive-definiteness) are not caught here; NLopt
forwards them out of ``optimize`` and they propagate unchanged.
"""

from __future__ import annotations

import enum
import logging
import math
import numbers
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import nlopt
import numpy as np

from ._config import DEFAULT_OPTIONS, get_default_algorithm

if TYPE_CHECKING:
    from ._typing import ObjectiveAndGrad
    from .packing import ParameterPacker

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# Algorithm naming
# ------------------------------------------------------------------ #
#
# Public names map to NLopt constant names.  Only derivative-based
# local algorithms (``LD_*``) are exposed: every kernel supplies an
# analytic gradient.

SUPPORTED_ALGORITHMS: dict[str, str] = {
    "LBFGS_NOCEDAL": "LD_LBFGS_NOCEDAL",
    "LBFGS": "LD_LBFGS",
    "VAR1": "LD_VAR1",
    "VAR2": "LD_VAR2",
    "TNEWTON": "LD_TNEWTON",
    "TNEWTON_RESTART": "LD_TNEWTON_RESTART",
    "TNEWTON_PRECOND": "LD_TNEWTON_PRECOND",
    "TNEWTON_PRECOND_RESTART": "LD_TNEWTON_PRECOND_RESTART",
    "MMA": "LD_MMA",
    "CCSAQ": "LD_CCSAQ",
}


class OptimizerConfigurationError(ValueError):
    """Invalid optimizer configuration, detected before any iteration."""


def algorithm_from_name(name: str) -> int:
    """Return the NLopt algorithm constant for a supported *name*.

    Raises:
        OptimizerConfigurationError: If *name* is not supported; the
            message enumerates every supported name.
    """
    constant_name = SUPPORTED_ALGORITHMS.get(name)
    constant = getattr(nlopt, constant_name, None) if constant_name else None
    if constant is None:
        msg = (
            f"Unsupported algorithm name: {name!r}. "
            f"Supported names: {', '.join(SUPPORTED_ALGORITHMS)}."
        )
        raise OptimizerConfigurationError(msg)
    return constant


# ------------------------------------------------------------------ #
# Status codes
# ------------------------------------------------------------------ #


class OptimizationStatus(enum.IntEnum):
    """Termination status, numerically identical to NLopt result codes."""

    SUCCESS = 1
    STOPVAL_REACHED = 2
    FTOL_REACHED = 3
    XTOL_REACHED = 4
    MAXEVAL_REACHED = 5
    MAXTIME_REACHED = 6
    FAILURE = -1
    INVALID_ARGS = -2
    OUT_OF_MEMORY = -3
    ROUNDOFF_LIMITED = -4
    FORCED_STOP = -5

    @property
    def converged(self) -> bool:
        """``True`` when a convergence criterion (not a cap) stopped the run."""
        return self in _CONVERGED

    @property
    def is_failure(self) -> bool:
        return self.value < 0


_CONVERGED = frozenset(
    {
        OptimizationStatus.SUCCESS,
        OptimizationStatus.STOPVAL_REACHED,
        OptimizationStatus.FTOL_REACHED,
        OptimizationStatus.XTOL_REACHED,
    }
)


# ------------------------------------------------------------------ #
# Configuration
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class OptimizerConfig:
    """Algorithm choice and convergence knobs for one optimisation run.

    Attributes:
        algorithm: One of :data:`SUPPORTED_ALGORITHMS`.
        xtol_abs: Absolute parameter tolerance.  Either one number used
            for every element, or a mapping ``block name -> number or
            block-shaped array`` resolved by :meth:`xtol_abs_array`.
        xtol_rel: Relative parameter tolerance.
        ftol_abs: Absolute objective tolerance.
        ftol_rel: Relative objective tolerance.
        maxeval: Maximum number of objective evaluations (``<= 0``
            disables the cap).
        maxtime: Maximum wall-clock seconds (``<= 0`` disables the cap).
    """

    algorithm: str = field(default_factory=get_default_algorithm)
    xtol_abs: float | Mapping[str, Any] = DEFAULT_OPTIONS["xtol_abs"]
    xtol_rel: float = DEFAULT_OPTIONS["xtol_rel"]
    ftol_abs: float = DEFAULT_OPTIONS["ftol_abs"]
    ftol_rel: float = DEFAULT_OPTIONS["ftol_rel"]
    maxeval: int = DEFAULT_OPTIONS["maxeval"]
    maxtime: float = DEFAULT_OPTIONS["maxtime"]

    def __post_init__(self) -> None:
        # Fail on an unknown name now rather than at the first run.
        algorithm_from_name(self.algorithm)
        for knob in ("xtol_rel", "ftol_abs", "ftol_rel", "maxtime"):
            value = getattr(self, knob)
            if isinstance(value, bool) or not isinstance(value, numbers.Real) or math.isnan(value):
                msg = f"config.{knob} must be a number, got {value!r}."
                raise OptimizerConfigurationError(msg)
        if isinstance(self.maxeval, bool) or not isinstance(self.maxeval, numbers.Integral):
            msg = f"config.maxeval must be an integer, got {self.maxeval!r}."
            raise OptimizerConfigurationError(msg)
        if not isinstance(self.xtol_abs, Mapping):
            try:
                float(self.xtol_abs)
            except (TypeError, ValueError):
                msg = (
                    "config.xtol_abs must be a number or a mapping of "
                    f"by-block values, got {type(self.xtol_abs).__name__}."
                )
                raise OptimizerConfigurationError(msg) from None

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any] | None) -> OptimizerConfig:
        """Build a configuration from a plain record.

        Keys are the field names of this class; absent keys take the
        package defaults (see :mod:`pln_optim._config`).

        Raises:
            OptimizerConfigurationError: On unknown keys or bad values.
        """
        options = dict(options or {})
        known = {"algorithm", "xtol_abs", "xtol_rel", "ftol_abs", "ftol_rel", "maxeval", "maxtime"}
        unknown = sorted(set(options) - known)
        if unknown:
            msg = f"Unknown configuration keys: {', '.join(unknown)}."
            raise OptimizerConfigurationError(msg)
        return cls(**options)

    def xtol_abs_array(self, packer: ParameterPacker) -> np.ndarray:
        """Resolve ``xtol_abs`` into one tolerance per packed element.

        Raises:
            OptimizerConfigurationError: When a by-block mapping omits a
                packed block, names an unknown block, or holds a value
                of the wrong shape.
        """
        tolerances = packer.new_vector()
        if not isinstance(self.xtol_abs, Mapping):
            tolerances.fill(float(self.xtol_abs))
            return tolerances

        unknown = sorted(set(self.xtol_abs) - set(packer.names))
        missing = [name for name in packer.names if name not in self.xtol_abs]
        if unknown or missing:
            msg = (
                "config.xtol_abs must give exactly one entry per parameter "
                f"block {list(packer.names)}; missing={missing}, unknown={unknown}."
            )
            raise OptimizerConfigurationError(msg)
        for name in packer.names:
            try:
                packer.pack_scalar_or_shaped(name, tolerances, self.xtol_abs[name])
            except ValueError as exc:
                raise OptimizerConfigurationError(f"config.xtol_abs[{name!r}]: {exc}") from exc
        return tolerances


@dataclass(frozen=True)
class OptimizerResult:
    """Outcome of :func:`minimize_objective`.

    Attributes:
        status: Termination status.
        objective: Objective value at the returned parameters.
        iterations: Number of objective evaluations performed.
    """

    status: OptimizationStatus
    objective: float
    iterations: int

    @property
    def converged(self) -> bool:
        return self.status.converged


# ------------------------------------------------------------------ #
# Optimisation
# ------------------------------------------------------------------ #


@dataclass
class _RunState:
    """Mutable bookkeeping shared with the NLopt callback."""

    objective_and_grad: ObjectiveAndGrad
    best_x: np.ndarray
    scratch_grad: np.ndarray
    iterations: int = 0
    best_objective: float = math.inf
    callback_error: Exception | None = None

    def __call__(self, x: np.ndarray, grad: np.ndarray) -> float:
        self.iterations += 1
        # Derivative-free callers pass an empty gradient array.
        grad_out = grad if grad.size == x.size else self.scratch_grad
        try:
            value = float(self.objective_and_grad(x, grad_out))
        except Exception as exc:
            self.callback_error = exc
            raise
        if value < self.best_objective:
            self.best_objective = value
            np.copyto(self.best_x, x)
        return value


def _apply(setter: Any, value: Any, knob: str) -> None:
    try:
        setter(value)
    except (ValueError, RuntimeError, TypeError) as exc:
        msg = f"nlopt rejected {knob}={value!r}: {exc}"
        raise OptimizerConfigurationError(msg) from exc


def minimize_objective(
    parameters: np.ndarray,
    objective_and_grad: ObjectiveAndGrad,
    config: OptimizerConfig,
    xtol_abs: np.ndarray | None = None,
) -> OptimizerResult:
    """Minimise *objective_and_grad* starting from *parameters*.

    The callback receives the optimizer's own parameter and gradient
    arrays (no copy) and must write the gradient in place and return
    the objective value.  Every invocation counts as one iteration.

    On return, *parameters* holds the final iterate, also when the run
    stops on a cap or a numerical failure, in which case it holds the
    best iterate evaluated.

    Args:
        parameters: Initial point; mutated in place.
        objective_and_grad: ``f(x, grad) -> float``.
        config: Algorithm and convergence configuration.
        xtol_abs: Per-element absolute parameter tolerance.  When
            ``None``, ``config.xtol_abs`` must be a scalar.

    Returns:
        Status, final objective and iteration count.

    Raises:
        OptimizerConfigurationError: Invalid configuration.
    """
    if parameters.ndim != 1:
        msg = f"parameters must be a flat vector, got shape {parameters.shape}."
        raise OptimizerConfigurationError(msg)
    n = parameters.shape[0]
    if xtol_abs is None:
        if isinstance(config.xtol_abs, Mapping):
            msg = "config.xtol_abs is given by block; pass the resolved xtol_abs array."
            raise OptimizerConfigurationError(msg)
        xtol_abs = np.full(n, float(config.xtol_abs))
    xtol_abs = np.asarray(xtol_abs, dtype=float)
    if xtol_abs.shape != (n,):
        msg = f"config.xtol_abs size: got {xtol_abs.size} values for {n} parameters."
        raise OptimizerConfigurationError(msg)

    algorithm = algorithm_from_name(config.algorithm)
    try:
        opt = nlopt.opt(algorithm, n)
    except (ValueError, RuntimeError, MemoryError) as exc:
        msg = f"nlopt could not create optimizer {config.algorithm!r} for {n} parameters: {exc}"
        raise OptimizerConfigurationError(msg) from exc

    _apply(opt.set_xtol_abs, xtol_abs, "xtol_abs")
    _apply(opt.set_xtol_rel, float(config.xtol_rel), "xtol_rel")
    _apply(opt.set_ftol_abs, float(config.ftol_abs), "ftol_abs")
    _apply(opt.set_ftol_rel, float(config.ftol_rel), "ftol_rel")
    _apply(opt.set_maxeval, int(config.maxeval), "maxeval")
    _apply(opt.set_maxtime, float(config.maxtime), "maxtime")

    state = _RunState(
        objective_and_grad=objective_and_grad,
        best_x=parameters.copy(),
        scratch_grad=np.empty(n),
    )
    _apply(opt.set_min_objective, state, "objective")

    try:
        solution = opt.optimize(parameters)
    except Exception as exc:
        if state.callback_error is not None:
            # Objective errors propagate unchanged, whatever NLopt wrapped them in.
            if exc is state.callback_error:
                raise
            raise state.callback_error from None
        if isinstance(exc, ValueError):
            msg = f"nlopt rejected the problem setup: {exc}"
            raise OptimizerConfigurationError(msg) from exc
        if not isinstance(exc, (nlopt.RoundoffLimited, nlopt.ForcedStop, RuntimeError)):
            raise
        # Numerical failure of the optimizer: keep the best iterate.
        status = OptimizationStatus(opt.last_optimize_result())
        if math.isfinite(state.best_objective):
            np.copyto(parameters, state.best_x)
        logger.debug(
            "nlopt stopped with %s after %d evaluations: %s",
            status.name,
            state.iterations,
            exc,
        )
        return OptimizerResult(status, state.best_objective, state.iterations)

    np.copyto(parameters, solution)
    status = OptimizationStatus(opt.last_optimize_result())
    return OptimizerResult(status, float(opt.last_optimum_value()), state.iterations)
