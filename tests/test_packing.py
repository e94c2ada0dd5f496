"""Tests for the flat-vector parameter packer."""

import numpy as np
import pytest

from pln_optim.packing import BlockDescriptor, ParameterPacker

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def rng():
    return np.random.default_rng(0)


@pytest.fixture()
def blocks(rng):
    return {
        "Theta": rng.standard_normal((3, 2)),
        "M": rng.standard_normal((5, 3)),
        "S": rng.standard_normal(5),
    }


@pytest.fixture()
def packer(blocks):
    return ParameterPacker(blocks)


# ------------------------------------------------------------------ #
# Layout
# ------------------------------------------------------------------ #


class TestLayout:
    def test_size_is_sum_of_block_sizes(self, packer):
        assert packer.size == 3 * 2 + 5 * 3 + 5

    def test_offsets_are_contiguous_in_declaration_order(self, packer):
        descriptors = list(packer)
        assert [d.name for d in descriptors] == ["Theta", "M", "S"]
        assert descriptors[0].offset == 0
        for prev, nxt in zip(descriptors, descriptors[1:]):
            assert nxt.offset == prev.stop
        assert descriptors[-1].stop == packer.size

    def test_names_and_len(self, packer):
        assert packer.names == ("Theta", "M", "S")
        assert len(packer) == 3

    def test_descriptor(self, packer):
        desc = packer.descriptor("M")
        assert desc == BlockDescriptor(name="M", offset=6, shape=(5, 3))
        assert desc.size == 15
        assert desc.span == slice(6, 21)

    def test_unknown_block_raises_key_error(self, packer):
        with pytest.raises(KeyError, match="Unknown block"):
            packer.descriptor("B")

    def test_zero_size_block(self):
        packer = ParameterPacker({"Theta": np.zeros((3, 0)), "M": np.zeros((2, 3))})
        assert packer.descriptor("Theta").size == 0
        assert packer.descriptor("M").offset == 0
        assert packer.size == 6

    def test_scalar_block_rejected(self):
        with pytest.raises(ValueError, match="vector or a matrix"):
            ParameterPacker({"c": 1.0})

    def test_repr_lists_blocks(self, packer):
        assert "Theta@0(3, 2)" in repr(packer)


# ------------------------------------------------------------------ #
# pack / unpack
# ------------------------------------------------------------------ #


class TestPackUnpack:
    def test_round_trip(self, packer, blocks):
        flat = packer.pack_all(blocks)
        for name, value in blocks.items():
            np.testing.assert_array_equal(packer.unpack(name, flat), value)

    def test_row_major_order(self):
        value = np.arange(6.0).reshape(2, 3)
        packer = ParameterPacker({"A": value})
        flat = packer.pack_all({"A": value})
        np.testing.assert_array_equal(flat, [0, 1, 2, 3, 4, 5])

    def test_unpack_returns_view(self, packer, blocks):
        flat = packer.pack_all(blocks)
        view = packer.unpack("M", flat)
        view[0, 0] = 123.0
        assert flat[packer.descriptor("M").offset] == 123.0
        assert np.shares_memory(view, flat)

    def test_pack_only_touches_its_slice(self, packer, blocks):
        flat = packer.pack_all(blocks)
        before = flat.copy()
        packer.pack("S", flat, np.full(5, 7.0))
        span = packer.descriptor("S").span
        np.testing.assert_array_equal(flat[span], 7.0)
        np.testing.assert_array_equal(flat[: span.start], before[: span.start])

    def test_pack_shape_mismatch(self, packer, blocks):
        flat = packer.pack_all(blocks)
        with pytest.raises(ValueError, match="'M'"):
            packer.pack("M", flat, np.zeros((3, 5)))

    def test_wrong_flat_length(self, packer):
        with pytest.raises(ValueError, match="expected"):
            packer.unpack("M", np.zeros(packer.size + 1))

    def test_non_contiguous_flat_rejected(self, packer):
        flat = np.zeros(2 * packer.size)[::2]
        with pytest.raises(ValueError, match="C-contiguous"):
            packer.unpack("M", flat)

    def test_pack_all_missing_block(self, packer, blocks):
        del blocks["S"]
        with pytest.raises(ValueError, match="S"):
            packer.pack_all(blocks)

    def test_unpack_all_views(self, packer, blocks):
        flat = packer.pack_all(blocks)
        views = packer.unpack_all(flat)
        assert set(views) == {"Theta", "M", "S"}
        for view in views.values():
            assert np.shares_memory(view, flat)


# ------------------------------------------------------------------ #
# pack_scalar_or_shaped
# ------------------------------------------------------------------ #


class TestPackScalarOrShaped:
    def test_scalar_broadcast(self, packer):
        flat = np.zeros(packer.size)
        packer.pack_scalar_or_shaped("Theta", flat, 0.5)
        np.testing.assert_array_equal(packer.unpack("Theta", flat), 0.5)
        np.testing.assert_array_equal(packer.unpack("M", flat), 0.0)

    def test_shaped_value(self, packer, rng):
        flat = np.zeros(packer.size)
        value = rng.random((5, 3))
        packer.pack_scalar_or_shaped("M", flat, value)
        np.testing.assert_array_equal(packer.unpack("M", flat), value)

    def test_wrong_shape_rejected(self, packer):
        flat = np.zeros(packer.size)
        with pytest.raises(ValueError, match="expected shape"):
            packer.pack_scalar_or_shaped("M", flat, np.zeros(4))
