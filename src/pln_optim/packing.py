"""Flat-vector packing of named parameter blocks.

Gradient-based optimizers work on a single flat vector, while the
variational kernels work on named, shaped blocks (regression
coefficients ``Theta``, variational means ``M``, scales ``S``, and the
loading matrix ``B`` of the rank-constrained model).  The
:class:`ParameterPacker` is the index between the two views: one
contiguous arena plus an immutable ``name -> (offset, shape)`` table
built once from the initial values.

Layout
~~~~~~
Blocks are laid out in declaration order with no gaps::

    ┌─────────── Theta ───────────┬──────── M ────────┬──────── S ────────┐
    │ offset 0, p·d elements      │ offset p·d, n·p    │ offset p·d+n·p    │
    └─────────────────────────────┴────────────────────┴───────────────────┘

Within a block, elements are flattened in **row-major (C) order**.
The same order is used by :meth:`ParameterPacker.pack` and
:meth:`ParameterPacker.unpack`, and because a 1-D slice of a
contiguous vector is itself contiguous, ``unpack`` returns a reshaped
*view*: no copy is made, and writing to the view writes into the
flat vector.  The optimizer adapter relies on this to hand kernels
block views of its own parameter and gradient buffers.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np


@dataclass(frozen=True)
class BlockDescriptor:
    """Position and shape of one block inside the flat vector.

    Attributes:
        name: Block identifier (e.g. ``"Theta"``).
        offset: Index of the block's first element.
        shape: Block shape; ``()`` is not allowed, vectors are ``(k,)``
            and matrices ``(rows, cols)``.
    """

    name: str
    offset: int
    shape: tuple[int, ...]

    @property
    def size(self) -> int:
        return math.prod(self.shape)

    @property
    def stop(self) -> int:
        return self.offset + self.size

    @property
    def span(self) -> slice:
        return slice(self.offset, self.stop)


class ParameterPacker:
    """Offset table mapping named blocks to slices of one flat vector.

    Construct from an ordered mapping of initial values; offsets are
    assigned in iteration order and never change afterwards.

    Example::

        packer = ParameterPacker({"Theta": theta0, "M": M0, "S": S0})
        x = packer.pack_all({"Theta": theta0, "M": M0, "S": S0})
        M_view = packer.unpack("M", x)   # (n, p) view into x

    Attributes:
        size: Total number of packed elements.
    """

    def __init__(self, blocks: Mapping[str, Any]) -> None:
        descriptors: dict[str, BlockDescriptor] = {}
        offset = 0
        for name, value in blocks.items():
            shape = np.shape(value)
            if len(shape) not in (1, 2):
                msg = (
                    f"Block '{name}' must be a vector or a matrix, "
                    f"got shape {shape}."
                )
                raise ValueError(msg)
            desc = BlockDescriptor(name=name, offset=offset, shape=tuple(shape))
            descriptors[name] = desc
            offset = desc.stop
        self._descriptors = descriptors
        self.size: int = offset

    # ---- Introspection ---------------------------------------------

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._descriptors)

    def descriptor(self, name: str) -> BlockDescriptor:
        """Return the descriptor for *name* (``KeyError`` if unknown)."""
        try:
            return self._descriptors[name]
        except KeyError:
            msg = f"Unknown block '{name}'. Known blocks: {', '.join(self._descriptors)}."
            raise KeyError(msg) from None

    def __iter__(self) -> Iterator[BlockDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)

    def __repr__(self) -> str:
        inner = ", ".join(f"{d.name}@{d.offset}{d.shape}" for d in self)
        return f"ParameterPacker({inner}; size={self.size})"

    # ---- Packing ---------------------------------------------------

    def new_vector(self) -> np.ndarray:
        """Allocate an uninitialised flat vector of the packed size."""
        return np.empty(self.size, dtype=float)

    def _check_flat(self, flat: np.ndarray) -> None:
        if flat.ndim != 1 or flat.shape[0] != self.size:
            msg = (
                f"Flat vector has shape {flat.shape}; expected ({self.size},) "
                f"for {len(self)} packed blocks."
            )
            raise ValueError(msg)
        if not flat.flags.c_contiguous:
            msg = "Flat vector must be C-contiguous so that blocks are views."
            raise ValueError(msg)

    def pack(self, name: str, flat: np.ndarray, value: Any) -> None:
        """Copy *value* into the slice of *flat* reserved for *name*.

        Raises:
            ValueError: If the shape of *value* differs from the block's
                declared shape.
        """
        desc = self.descriptor(name)
        self._check_flat(flat)
        value = np.asarray(value, dtype=float)
        if value.shape != desc.shape:
            msg = (
                f"Cannot pack block '{name}': expected shape {desc.shape}, "
                f"got {value.shape}."
            )
            raise ValueError(msg)
        np.copyto(flat[desc.span].reshape(desc.shape), value)

    def unpack(self, name: str, flat: np.ndarray) -> np.ndarray:
        """Return the block *name* as a shaped view of *flat*."""
        desc = self.descriptor(name)
        self._check_flat(flat)
        return flat[desc.span].reshape(desc.shape)

    def pack_scalar_or_shaped(self, name: str, flat: np.ndarray, raw: Any) -> None:
        """Fill block *name* with a broadcast scalar or a shaped value.

        Used for per-parameter tolerance configuration: a single number
        applies to every element of the block, an array must match the
        block's shape exactly.

        Raises:
            ValueError: If *raw* is neither a scalar nor block-shaped.
        """
        desc = self.descriptor(name)
        self._check_flat(flat)
        raw_arr = np.asarray(raw, dtype=float)
        if raw_arr.ndim == 0:
            flat[desc.span] = float(raw_arr)
            return
        self.pack(name, flat, raw_arr)

    # ---- Whole-vector helpers --------------------------------------

    def pack_all(self, values: Mapping[str, Any]) -> np.ndarray:
        """Allocate a flat vector and pack every block from *values*."""
        missing = [name for name in self._descriptors if name not in values]
        if missing:
            msg = f"Missing values for blocks: {', '.join(missing)}."
            raise ValueError(msg)
        flat = self.new_vector()
        for name in self._descriptors:
            self.pack(name, flat, values[name])
        return flat

    def unpack_all(self, flat: np.ndarray) -> dict[str, np.ndarray]:
        """Return a ``name -> view`` dict covering every block of *flat*."""
        self._check_flat(flat)
        return {d.name: flat[d.span].reshape(d.shape) for d in self._descriptors.values()}
