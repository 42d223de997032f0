# gguf_parser/model_formats/gguf/gguf_quantization.py
"""
GGML tensor types (quantization registry) and ggml memory helpers.

``GGML_TYPE_TRAITS`` is the single source of truth for byte-size math: every
tensor size, KV-cache row and compute buffer in the estimators goes through
:meth:`GGMLType.row_size_of` or :func:`tensor_bytes`.
"""
from __future__ import annotations

import bisect
from dataclasses import dataclass
from enum import IntEnum
from types import MappingProxyType
from typing import Mapping, Sequence


class GGMLType(IntEnum):
    """GGML tensor types, including quantization."""

    F32 = 0
    F16 = 1
    Q4_0 = 2
    Q4_1 = 3
    Q4_2 = 4  # deprecated
    Q4_3 = 5  # deprecated
    Q5_0 = 6
    Q5_1 = 7
    Q8_0 = 8
    Q8_1 = 9
    Q2_K = 10
    Q3_K = 11
    Q4_K = 12
    Q5_K = 13
    Q6_K = 14
    Q8_K = 15
    IQ2_XXS = 16
    IQ2_XS = 17
    IQ3_XXS = 18
    IQ1_S = 19
    IQ4_NL = 20
    IQ3_S = 21
    IQ2_S = 22
    IQ4_XS = 23
    I8 = 24
    I16 = 25
    I32 = 26
    I64 = 27
    F64 = 28
    IQ1_M = 29
    BF16 = 30
    Q4_0_4_4 = 31
    Q4_0_4_8 = 32
    Q4_0_8_8 = 33
    TQ1_0 = 34
    TQ2_0 = 35
    IQ4_NL_4_4 = 36
    IQ4_NL_4_8 = 37
    IQ4_NL_8_8 = 38
    MXFP4 = 39

    @property
    def trait(self) -> "GGMLTypeTrait":
        return GGML_TYPE_TRAITS[self]

    @property
    def is_quantized(self) -> bool:
        return self.trait.quantized

    @property
    def bits_per_element(self) -> float:
        """Average storage bits per element, scales included."""
        t = self.trait
        if t.block_size == 0:
            return 0.0
        return t.type_size * 8 / t.block_size

    def row_size_of(self, dims: Sequence[int]) -> int:
        """Byte size of a contiguous tensor with the given dimensions.

        ``dims[0]`` is the innermost (row) dimension; the row size is
        ``type_size * dims[0] / block_size`` and the other dimensions multiply.

        Args:
            dims: Element counts per dimension, innermost first.
        """
        if not dims:
            raise ValueError("no dimensions")
        t = self.trait
        if t.block_size == 0:
            return 0
        size = t.type_size * int(dims[0]) // t.block_size
        for d in dims[1:]:
            size *= int(d)
        return size


@dataclass(frozen=True)
class GGMLTypeTrait:
    """Storage properties of a GGML type.

    Attributes:
        block_size: Elements per block (1 for plain scalar types).
        type_size: Bytes per block.
        quantized: Block-quantized encoding.
    """

    block_size: int
    type_size: int
    quantized: bool = False


GGML_TYPE_TRAITS: Mapping[GGMLType, GGMLTypeTrait] = MappingProxyType(
    {
        GGMLType.F32: GGMLTypeTrait(1, 4),
        GGMLType.F16: GGMLTypeTrait(1, 2),
        GGMLType.Q4_0: GGMLTypeTrait(32, 18, True),
        GGMLType.Q4_1: GGMLTypeTrait(32, 20, True),
        GGMLType.Q4_2: GGMLTypeTrait(0, 0),
        GGMLType.Q4_3: GGMLTypeTrait(0, 0),
        GGMLType.Q5_0: GGMLTypeTrait(32, 22, True),
        GGMLType.Q5_1: GGMLTypeTrait(32, 24, True),
        GGMLType.Q8_0: GGMLTypeTrait(32, 34, True),
        GGMLType.Q8_1: GGMLTypeTrait(32, 36, True),
        GGMLType.Q2_K: GGMLTypeTrait(256, 84, True),
        GGMLType.Q3_K: GGMLTypeTrait(256, 110, True),
        GGMLType.Q4_K: GGMLTypeTrait(256, 144, True),
        GGMLType.Q5_K: GGMLTypeTrait(256, 176, True),
        GGMLType.Q6_K: GGMLTypeTrait(256, 210, True),
        GGMLType.Q8_K: GGMLTypeTrait(256, 292, True),
        GGMLType.IQ2_XXS: GGMLTypeTrait(256, 66, True),
        GGMLType.IQ2_XS: GGMLTypeTrait(256, 74, True),
        GGMLType.IQ3_XXS: GGMLTypeTrait(256, 98, True),
        GGMLType.IQ1_S: GGMLTypeTrait(256, 50, True),
        GGMLType.IQ4_NL: GGMLTypeTrait(32, 18, True),
        GGMLType.IQ3_S: GGMLTypeTrait(256, 110, True),
        GGMLType.IQ2_S: GGMLTypeTrait(256, 82, True),
        GGMLType.IQ4_XS: GGMLTypeTrait(256, 136, True),
        GGMLType.I8: GGMLTypeTrait(1, 1),
        GGMLType.I16: GGMLTypeTrait(1, 2),
        GGMLType.I32: GGMLTypeTrait(1, 4),
        GGMLType.I64: GGMLTypeTrait(1, 8),
        GGMLType.F64: GGMLTypeTrait(1, 8),
        GGMLType.IQ1_M: GGMLTypeTrait(256, 56, True),
        GGMLType.BF16: GGMLTypeTrait(1, 2),
        GGMLType.Q4_0_4_4: GGMLTypeTrait(32, 18, True),
        GGMLType.Q4_0_4_8: GGMLTypeTrait(32, 18, True),
        GGMLType.Q4_0_8_8: GGMLTypeTrait(32, 18, True),
        GGMLType.TQ1_0: GGMLTypeTrait(256, 54, True),
        GGMLType.TQ2_0: GGMLTypeTrait(256, 66, True),
        GGMLType.IQ4_NL_4_4: GGMLTypeTrait(32, 18, True),
        GGMLType.IQ4_NL_4_8: GGMLTypeTrait(32, 18, True),
        GGMLType.IQ4_NL_8_8: GGMLTypeTrait(32, 18, True),
        GGMLType.MXFP4: GGMLTypeTrait(32, 17, True),
    }
)


def tensor_elements(dims: Sequence[int]) -> int:
    """Number of elements of a tensor, 0 for a dimensionless entry."""
    if not dims:
        return 0
    n = 1
    for d in dims:
        n *= int(d)
    return n


def tensor_bytes(ggml_type: GGMLType, dims: Sequence[int]) -> int:
    """Byte size of a tensor as ggml lays it out (stride arithmetic).

    Args:
        ggml_type: Element encoding.
        dims: Element counts per dimension, innermost first.
    """
    if not dims:
        return 0
    t = ggml_type.trait
    if t.block_size == 0:
        return 0
    nb = [t.type_size, t.type_size * (int(dims[0]) // t.block_size)]
    for i in range(2, len(dims)):
        nb.append(nb[i - 1] * int(dims[i - 1]))

    if t.block_size == 1:
        size = t.type_size
        for i, d in enumerate(dims):
            size += (int(d) - 1) * nb[i]
        return size

    size = int(dims[0]) * nb[0] // t.block_size
    for i in range(1, len(dims)):
        size += (int(dims[i]) - 1) * nb[i]
    return size


# ggml object/tensor header sizes
GGML_OBJECT_SIZE = 32
GGML_TENSOR_SIZE = 368
GGML_GRAPH_SIZE = 80
GGML_BITSET_SIZE = 4

_HASH_PRIMES = (
    2, 3, 5, 11, 17, 37, 67, 131, 257, 521, 1031,
    2053, 4099, 8209, 16411, 32771, 65537, 131101,
    262147, 524309, 1048583, 2097169, 4194319, 8388617,
    16777259, 33554467, 67108879, 134217757, 268435459,
    536870923, 1073741827, 2147483659,
)  # fmt: skip


def ggml_padding(size: int, align: int) -> int:
    """Round ``size`` up to a multiple of ``align`` (a power of two)."""
    return (size + align - 1) & ~(align - 1)


def ggml_memory_padding(size: int) -> int:
    return ggml_padding(size, 16)


def ggml_tensor_overhead() -> int:
    return GGML_OBJECT_SIZE + GGML_TENSOR_SIZE


def ggml_hash_size(base: int) -> int:
    """Smallest tabulated prime >= base, else ``base | 1``."""
    i = bisect.bisect_left(_HASH_PRIMES, base)
    if i < len(_HASH_PRIMES):
        return _HASH_PRIMES[i]
    return base | 1


def ggml_bitset_size(n: int) -> int:
    return (n + (GGML_BITSET_SIZE * 8 - 1)) >> 5


def ggml_graph_overhead(nodes: int, grads: bool = False) -> int:
    """Bytes ggml reserves for a computation graph of ``nodes`` nodes."""
    ps = 8  # pointer size
    hs = ggml_hash_size(nodes * 2)
    g = GGML_GRAPH_SIZE
    g += ggml_padding(nodes * ps, ps)  # nodes
    g += ggml_padding(nodes * ps, ps)  # leafs
    g += ggml_padding(nodes * ps, ps)  # parents
    g += ggml_padding(hs * ps, ps)  # hash keys
    if grads:
        g += ggml_padding(hs * ps, ps)  # grads
        g += ggml_padding(hs * ps, ps)  # grad accumulators
    g += ggml_padding(ggml_bitset_size(hs) * GGML_BITSET_SIZE, GGML_BITSET_SIZE)
    return GGML_OBJECT_SIZE + ggml_memory_padding(g)
