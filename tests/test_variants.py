"""Tests for the covariance-variant kernels and the variant registry.

Every kernel is checked against central finite differences on small
random instances, for zero-weight invariance, for invariance to the
sign of ``S`` and for the log-likelihood / objective identity
``Σ w·loglik = −objective − Σ w·log y!``.
"""

import warnings
from dataclasses import dataclass

import numpy as np
import pytest

from pln_optim import variants_vestep  # noqa: F401
from pln_optim.data import CountData
from pln_optim.fitting import make_objective
from pln_optim.packing import ParameterPacker
from pln_optim.variants import (
    CovarianceVariant,
    DiagonalVariant,
    FullVariant,
    SparseVariant,
    _PoissonLayer,
    available_variants,
    register_variant,
    resolve_variant,
)

ALL_VARIANTS = [
    "full",
    "spherical",
    "diagonal",
    "rank",
    "sparse",
    "vestep_full",
    "vestep_diagonal",
    "vestep_spherical",
]

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _random_precision(rng, p):
    L = rng.standard_normal((p, p))
    return L @ L.T / p + np.eye(p)


def make_instance(name, rng, n=6, p=3, d=2, q=2, w=None):
    """Random data, kernel and blocks for one variant."""
    Y = rng.poisson(2.0, size=(n, p)).astype(float)
    X = rng.standard_normal((n, d))
    O = 0.1 * rng.standard_normal((n, p))  # noqa: E741
    if w is None:
        w = rng.uniform(0.5, 1.5, size=n)
    data = CountData.from_arrays(Y, X, O, w)

    theta = 0.1 * rng.standard_normal((p, d))
    omega = _random_precision(rng, p)
    kernel = resolve_variant(
        name,
        omega=omega if name == "sparse" or name.startswith("vestep") else None,
        theta=theta if name.startswith("vestep") else None,
    )

    blocks = {}
    if "Theta" in kernel.block_names:
        blocks["Theta"] = theta
    if name == "rank":
        blocks["B"] = 0.5 * rng.standard_normal((p, q))
        blocks["M"] = 0.3 * rng.standard_normal((n, q))
        blocks["S"] = rng.uniform(0.2, 0.6, size=(n, q))
    elif name in ("spherical", "vestep_spherical"):
        blocks["M"] = 0.3 * rng.standard_normal((n, p))
        blocks["S"] = rng.uniform(0.2, 0.6, size=n)
    else:
        blocks["M"] = 0.3 * rng.standard_normal((n, p))
        blocks["S"] = rng.uniform(0.2, 0.6, size=(n, p))
    kernel.validate(blocks, data)
    return kernel, blocks, data


def evaluate_blocks(kernel, blocks, data):
    packer = ParameterPacker(blocks)
    x = packer.pack_all(blocks)
    grad = packer.new_vector()
    value = make_objective(kernel, packer, data)(x, grad)
    return value, packer.unpack_all(grad), packer, x


def numeric_gradient(f, x, eps=1e-6):
    scratch = np.empty_like(x)
    g = np.empty_like(x)
    for k in range(x.size):
        xp = x.copy()
        xm = x.copy()
        xp[k] += eps
        xm[k] -= eps
        g[k] = (f(xp, scratch) - f(xm, scratch)) / (2.0 * eps)
    return g


# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def rng():
    return np.random.default_rng(2024)


# ------------------------------------------------------------------ #
# Analytic gradients
# ------------------------------------------------------------------ #


class TestGradients:
    @pytest.mark.parametrize("name", ALL_VARIANTS)
    def test_matches_finite_differences(self, name, rng):
        kernel, blocks, data = make_instance(name, rng)
        _, _, packer, x = evaluate_blocks(kernel, blocks, data)
        f = make_objective(kernel, packer, data)
        analytic = packer.new_vector()
        f(x, analytic)
        np.testing.assert_allclose(analytic, numeric_gradient(f, x), rtol=1e-5, atol=1e-6)

    @pytest.mark.parametrize("name", ALL_VARIANTS)
    def test_with_zero_weight_row(self, name, rng):
        w = np.array([1.0, 0.0, 2.0, 0.5, 1.0, 1.5])
        kernel, blocks, data = make_instance(name, rng, w=w)
        _, _, packer, x = evaluate_blocks(kernel, blocks, data)
        f = make_objective(kernel, packer, data)
        analytic = packer.new_vector()
        f(x, analytic)
        np.testing.assert_allclose(analytic, numeric_gradient(f, x), rtol=1e-5, atol=1e-6)

    def test_rank_one_latent_dimension(self, rng):
        kernel, blocks, data = make_instance("rank", rng, q=1)
        _, _, packer, x = evaluate_blocks(kernel, blocks, data)
        f = make_objective(kernel, packer, data)
        analytic = packer.new_vector()
        f(x, analytic)
        np.testing.assert_allclose(analytic, numeric_gradient(f, x), rtol=1e-5, atol=1e-6)

    def test_no_covariates(self, rng):
        kernel, blocks, data = make_instance("full", rng, d=0)
        value, grads, _, _ = evaluate_blocks(kernel, blocks, data)
        assert np.isfinite(value)
        assert grads["Theta"].shape == (3, 0)


# ------------------------------------------------------------------ #
# Zero-weight rows
# ------------------------------------------------------------------ #


class TestZeroWeightRows:
    @pytest.mark.parametrize("name", ALL_VARIANTS)
    def test_excluded_row_has_no_influence(self, name, rng):
        w = np.array([1.0, 0.8, 0.0, 1.2, 1.0, 0.6])
        kernel, blocks, data = make_instance(name, rng, w=w)
        value, grads, _, _ = evaluate_blocks(kernel, blocks, data)

        # Perturb the excluded row wildly: nothing may change.
        Y = data.Y.copy()
        Y[2] = 500.0
        perturbed = CountData.from_arrays(Y, data.X, data.O, data.w)
        moved = {k: v.copy() for k, v in blocks.items()}
        moved["M"][2] = 40.0
        moved["S"][2] = 3.0
        with np.errstate(over="ignore", invalid="ignore"):
            value2, grads2, _, _ = evaluate_blocks(kernel, moved, perturbed)

        assert value2 == pytest.approx(value, rel=1e-12)
        keep = np.arange(6) != 2
        for block, grad in grads.items():
            if block in ("M", "S"):
                np.testing.assert_allclose(grads2[block][keep], grad[keep], rtol=1e-12)
                np.testing.assert_array_equal(grads2[block][2], 0.0)
            else:
                np.testing.assert_allclose(grads2[block], grad, rtol=1e-12)

    @pytest.mark.parametrize("name", ["full", "spherical", "diagonal", "rank", "sparse"])
    def test_same_as_dropping_the_row(self, name, rng):
        w = np.array([1.0, 0.8, 0.0, 1.2, 1.0, 0.6])
        kernel, blocks, data = make_instance(name, rng, w=w)
        value, grads, _, _ = evaluate_blocks(kernel, blocks, data)

        keep = w > 0
        reduced = CountData.from_arrays(data.Y[keep], data.X[keep], data.O[keep], data.w[keep])
        sub = {k: (v[keep] if k in ("M", "S") else v) for k, v in blocks.items()}
        value_r, grads_r, _, _ = evaluate_blocks(kernel, sub, reduced)

        assert value_r == pytest.approx(value, rel=1e-12)
        np.testing.assert_allclose(grads_r["Theta"], grads["Theta"], rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(grads_r["M"], grads["M"][keep], rtol=1e-10, atol=1e-12)


# ------------------------------------------------------------------ #
# Variance positivity
# ------------------------------------------------------------------ #


class TestScaleSign:
    @pytest.mark.parametrize("name", ALL_VARIANTS)
    def test_objective_depends_on_s_squared_only(self, name, rng):
        kernel, blocks, data = make_instance(name, rng)
        value, grads, _, _ = evaluate_blocks(kernel, blocks, data)
        flipped = dict(blocks, S=-blocks["S"])
        value_f, grads_f, _, _ = evaluate_blocks(kernel, flipped, data)
        assert value_f == pytest.approx(value, rel=1e-12)
        np.testing.assert_allclose(grads_f["S"], -grads["S"], rtol=1e-12)

    def test_zero_scale_rejected(self, rng):
        kernel, blocks, data = make_instance("full", rng)
        blocks["S"][1, 1] = 0.0
        with pytest.raises(ValueError, match="non-zero"):
            kernel.validate(blocks, data)

    def test_zero_scale_allowed_on_excluded_row(self, rng):
        w = np.array([1.0, 0.0, 1.0, 1.0, 1.0, 1.0])
        kernel, blocks, data = make_instance("diagonal", rng, w=w)
        blocks["S"][1] = 0.0
        kernel.validate(blocks, data)

    @pytest.mark.parametrize("name", ALL_VARIANTS)
    def test_zero_scale_on_excluded_row_stays_finite(self, name, rng):
        w = np.array([1.0, 0.0, 1.0, 1.0, 1.0, 1.0])
        kernel, blocks, data = make_instance(name, rng, w=w)
        blocks["S"][1] = 0.0
        with warnings.catch_warnings():
            warnings.simplefilter("error", RuntimeWarning)
            value, grads, _, _ = evaluate_blocks(kernel, blocks, data)
            derived = kernel.derive(blocks, data)
        assert np.isfinite(value)
        np.testing.assert_array_equal(grads["S"][1], 0.0)
        assert np.all(np.isfinite(derived["loglik"]))
        assert derived["loglik"][1] == 0.0
        total = float(np.sum(data.w * derived["loglik"]))
        assert total == pytest.approx(-value - float(np.sum(data.w * data.logfact)), rel=1e-10)


# ------------------------------------------------------------------ #
# Derived quantities
# ------------------------------------------------------------------ #


class TestDerive:
    @pytest.mark.parametrize("name", ALL_VARIANTS)
    def test_loglik_identity(self, name, rng):
        kernel, blocks, data = make_instance(name, rng)
        value, _, _, _ = evaluate_blocks(kernel, blocks, data)
        derived = kernel.derive(blocks, data)
        total = float(np.sum(data.w * derived["loglik"]))
        expected = -value - float(np.sum(data.w * data.logfact))
        assert total == pytest.approx(expected, rel=1e-10)

    @pytest.mark.parametrize("name", ALL_VARIANTS)
    def test_shapes(self, name, rng):
        kernel, blocks, data = make_instance(name, rng)
        derived = kernel.derive(blocks, data)
        assert derived["Z"].shape == (6, 3)
        assert derived["A"].shape == (6, 3)
        assert derived["Sigma"].shape == (3, 3)
        assert derived["loglik"].shape == (6,)
        if name == "rank":
            assert derived["Omega"] is None
        else:
            assert derived["Omega"].shape == (3, 3)

    def test_full_sigma_and_omega_are_inverse(self, rng):
        kernel, blocks, data = make_instance("full", rng)
        derived = kernel.derive(blocks, data)
        np.testing.assert_allclose(derived["Sigma"] @ derived["Omega"], np.eye(3), atol=1e-10)

    def test_full_sigma_closed_form(self, rng):
        kernel, blocks, data = make_instance("full", rng)
        M, S, w = blocks["M"], blocks["S"], data.w
        expected = (M.T @ (w[:, None] * M) + np.diag(w @ (S * S))) / w.sum()
        np.testing.assert_allclose(kernel.derive(blocks, data)["Sigma"], expected, rtol=1e-12)

    def test_rank_sigma_has_rank_q(self, rng):
        kernel, blocks, data = make_instance("rank", rng, p=4, q=2)
        sigma = kernel.derive(blocks, data)["Sigma"]
        assert np.linalg.matrix_rank(sigma) == 2

    def test_fitted_means(self, rng):
        kernel, blocks, data = make_instance("diagonal", rng)
        derived = kernel.derive(blocks, data)
        Z = data.O + data.X @ blocks["Theta"].T + blocks["M"]
        np.testing.assert_allclose(derived["Z"], Z)
        np.testing.assert_allclose(derived["A"], np.exp(Z + 0.5 * blocks["S"] ** 2))

    def test_sparse_reports_fixed_omega(self, rng):
        kernel, blocks, data = make_instance("sparse", rng)
        np.testing.assert_array_equal(kernel.derive(blocks, data)["Omega"], kernel.omega)


# ------------------------------------------------------------------ #
# Degeneracy and validation
# ------------------------------------------------------------------ #


class TestValidation:
    def test_wrong_block_shape_names_block(self, rng):
        kernel, blocks, data = make_instance("full", rng)
        blocks["M"] = blocks["M"][:, :2]
        with pytest.raises(ValueError, match="block 'M'"):
            kernel.validate(blocks, data)

    def test_missing_block(self, rng):
        kernel, blocks, data = make_instance("diagonal", rng)
        del blocks["Theta"]
        with pytest.raises(ValueError, match="missing initial block 'Theta'"):
            kernel.validate(blocks, data)

    def test_rank_loading_rows(self, rng):
        kernel, blocks, data = make_instance("rank", rng)
        blocks["B"] = blocks["B"][:2]
        with pytest.raises(ValueError, match="block 'B'"):
            kernel.validate(blocks, data)

    def test_spherical_scale_is_a_vector(self, rng):
        kernel, blocks, data = make_instance("spherical", rng)
        blocks["S"] = np.full((6, 3), 0.3)
        with pytest.raises(ValueError, match="block 'S'"):
            kernel.validate(blocks, data)

    def test_degenerate_covariance_raises_lin_alg_error(self, rng):
        kernel, blocks, data = make_instance("full", rng)
        blocks["M"] = np.zeros_like(blocks["M"])
        blocks["S"] = np.full_like(blocks["S"], 1e-200)
        with pytest.raises(np.linalg.LinAlgError, match="full"):
            evaluate_blocks(kernel, blocks, data)

    def test_sparse_rejects_non_symmetric_omega(self):
        with pytest.raises(ValueError, match="symmetric"):
            SparseVariant(omega=np.array([[1.0, 0.5], [0.0, 1.0]]))

    def test_sparse_rejects_indefinite_omega(self):
        with pytest.raises(ValueError, match="positive definite"):
            SparseVariant(omega=np.array([[1.0, 2.0], [2.0, 1.0]]))

    def test_sparse_omega_size(self, rng):
        kernel, blocks, data = make_instance("sparse", rng)
        wrong = SparseVariant(omega=np.eye(2))
        with pytest.raises(ValueError, match="Omega has shape"):
            wrong.validate(blocks, data)


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #


class TestRegistry:
    def test_all_variants_registered(self):
        assert set(ALL_VARIANTS) <= set(available_variants())

    def test_resolve_by_name(self):
        assert isinstance(resolve_variant("full"), FullVariant)
        assert resolve_variant("diagonal").name == "diagonal"

    def test_instance_passes_through(self):
        kernel = DiagonalVariant()
        assert resolve_variant(kernel) is kernel

    def test_protocol_conformance(self):
        assert isinstance(FullVariant(), CovarianceVariant)
        assert isinstance(SparseVariant(omega=np.eye(2)), CovarianceVariant)

    def test_unknown_name_lists_available(self):
        with pytest.raises(ValueError, match="Available variants: .*full"):
            resolve_variant("toeplitz")

    def test_sparse_requires_omega(self):
        with pytest.raises(ValueError, match="'sparse'"):
            resolve_variant("sparse")

    def test_full_rejects_omega(self):
        with pytest.raises(ValueError, match="'full'"):
            resolve_variant("full", omega=np.eye(2))

    def test_register_custom_variant(self):
        @dataclass(frozen=True, eq=False)
        class IdentityVariant(_PoissonLayer):
            name = "identity"
            block_names = ("Theta", "M", "S")

            def validate(self, blocks, data):
                pass

            def _latent_objective(self, blocks, grads, data, A):
                grads["M"][...] = data.w[:, None] * (blocks["M"] + A - data.Y)
                grads["S"][...] = data.w[:, None] * (blocks["S"] * A)
                return 0.5 * float(np.sum(data.w[:, None] * blocks["M"] ** 2))

        register_variant("identity", IdentityVariant)
        try:
            assert isinstance(resolve_variant("identity"), IdentityVariant)
        finally:
            from pln_optim import variants

            variants._VARIANTS.pop("identity")

    def test_register_rejects_incomplete_class(self):
        class NotAVariant:
            name = "broken"

        with pytest.raises(TypeError, match="missing"):
            register_variant("broken", NotAVariant)
