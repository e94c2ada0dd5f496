"""pln_optim — Variational optimisation engine for Poisson-lognormal models.

Fits latent-variable count-data models (Poisson-lognormal with full,
spherical, diagonal, rank-constrained or fixed-precision covariance)
by minimising a closed-form negative ELBO with hand-derived gradients,
driven by NLopt's local gradient algorithms.  VE-step variants refit
only the variational parameters of an already fitted model.

Public API:
    .. autosummary::
        optimize
        optimize_full
        optimize_spherical
        optimize_diagonal
        optimize_rank
        optimize_sparse
        optimize_vestep_full
        optimize_vestep_diagonal
        optimize_vestep_spherical
        optimize_many
        evaluate
        initial_parameters
        get_default_algorithm
        set_default_algorithm
        CountData
        CovarianceVariant
        FullVariant
        SphericalVariant
        DiagonalVariant
        RankVariant
        SparseVariant
        VEStepFullVariant
        VEStepDiagonalVariant
        VEStepSphericalVariant
        register_variant
        resolve_variant
        ParameterPacker
        OptimizerConfig
        OptimizerConfigurationError
        OptimizationStatus
        FitResult
"""

from ._config import get_default_algorithm, set_default_algorithm
from ._results import FitResult
from .data import CountData
from .fitting import (
    evaluate,
    optimize,
    optimize_diagonal,
    optimize_full,
    optimize_many,
    optimize_rank,
    optimize_sparse,
    optimize_spherical,
    optimize_vestep_diagonal,
    optimize_vestep_full,
    optimize_vestep_spherical,
)
from .initialization import initial_parameters
from .optimizer import (
    SUPPORTED_ALGORITHMS,
    OptimizationStatus,
    OptimizerConfig,
    OptimizerConfigurationError,
    OptimizerResult,
    minimize_objective,
)
from .packing import BlockDescriptor, ParameterPacker
from .variants import (
    CovarianceVariant,
    DiagonalVariant,
    FullVariant,
    RankVariant,
    SparseVariant,
    SphericalVariant,
    available_variants,
    register_variant,
    resolve_variant,
)
from .variants_vestep import (
    VEStepDiagonalVariant,
    VEStepFullVariant,
    VEStepSphericalVariant,
)

__version__ = "0.1.0"

__all__ = [
    "SUPPORTED_ALGORITHMS",
    "BlockDescriptor",
    "CountData",
    "CovarianceVariant",
    "DiagonalVariant",
    "FitResult",
    "FullVariant",
    "OptimizationStatus",
    "OptimizerConfig",
    "OptimizerConfigurationError",
    "OptimizerResult",
    "ParameterPacker",
    "RankVariant",
    "SparseVariant",
    "SphericalVariant",
    "VEStepDiagonalVariant",
    "VEStepFullVariant",
    "VEStepSphericalVariant",
    "available_variants",
    "evaluate",
    "get_default_algorithm",
    "initial_parameters",
    "minimize_objective",
    "optimize",
    "optimize_diagonal",
    "optimize_full",
    "optimize_many",
    "optimize_rank",
    "optimize_sparse",
    "optimize_spherical",
    "optimize_vestep_diagonal",
    "optimize_vestep_full",
    "optimize_vestep_spherical",
    "register_variant",
    "resolve_variant",
    "set_default_algorithm",
]
