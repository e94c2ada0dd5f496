"""Default optimizer configuration for the pln_optim package.

Controls which local gradient algorithm is used when a run's
configuration does not name one, and the numeric convergence defaults.

Resolution order for the algorithm (first match wins):
    1. Programmatic override via :func:`set_default_algorithm`.
    2. The ``PLN_OPTIM_ALGORITHM`` environment variable.
    3. ``"CCSAQ"``.

Valid names are those of
:data:`pln_optim.optimizer.SUPPORTED_ALGORITHMS` (case-insensitive on
input, stored upper-case).

Examples:
    Switch to L-BFGS from the shell::

        export PLN_OPTIM_ALGORITHM=LBFGS

    Switch programmatically::

        import pln_optim
        pln_optim.set_default_algorithm("LBFGS")

    Restore the default resolution order::

        pln_optim.set_default_algorithm("auto")
"""

from __future__ import annotations

import os
from types import MappingProxyType

_FALLBACK_ALGORITHM = "CCSAQ"

_ENV_VAR = "PLN_OPTIM_ALGORITHM"

# Numeric convergence defaults.  ``maxtime <= 0`` and ``maxeval <= 0``
# disable the corresponding cap; a zero tolerance disables that test.
DEFAULT_OPTIONS = MappingProxyType(
    {
        "xtol_abs": 0.0,
        "xtol_rel": 1e-6,
        "ftol_abs": 0.0,
        "ftol_rel": 1e-8,
        "maxeval": 10_000,
        "maxtime": -1.0,
    }
)

# Sentinel indicating "no programmatic override has been set".
_algorithm_override: str | None = None


def _supported_names() -> tuple[str, ...]:
    from .optimizer import SUPPORTED_ALGORITHMS

    return tuple(SUPPORTED_ALGORITHMS)


def get_default_algorithm() -> str:
    """Return the algorithm name used when a configuration omits one.

    Resolution order:
        1. Value set by :func:`set_default_algorithm`.
        2. ``PLN_OPTIM_ALGORITHM`` environment variable, when it names
           a supported algorithm.
        3. ``"CCSAQ"``.

    Returns:
        An upper-case algorithm name.
    """
    # 1. Programmatic override
    if _algorithm_override is not None:
        return _algorithm_override

    # 2. Environment variable
    env = os.environ.get(_ENV_VAR, "").strip().upper()
    if env in _supported_names():
        return env

    # 3. Fallback
    return _FALLBACK_ALGORITHM


def set_default_algorithm(name: str) -> None:
    """Override the default algorithm selection.

    Args:
        name: A supported algorithm name (case-insensitive) or
            ``"auto"`` to restore the default resolution order.

    Raises:
        ValueError: If *name* is not a supported algorithm.
    """
    global _algorithm_override
    normalised = name.strip().upper()
    if normalised == "AUTO":
        _algorithm_override = None
        return
    supported = _supported_names()
    if normalised not in supported:
        raise ValueError(
            f"Unknown algorithm '{name}'. Choose from: {', '.join(supported)} or 'auto'"
        )
    _algorithm_override = normalised
