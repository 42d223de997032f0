# gguf_parser/model_formats/gguf/gguf_filetype.py
"""
GGUF file types (``general.file_type``) and the majority-vote guess.

The guess table follows llama.cpp's historical labels verbatim, including the
entries that name a different quantization family (a Q4_K majority with Q3_K
secondaries is reported as Q3_K_M, an IQ2_S majority as IQ2_M, ...). Do not
"fix" them: quantizers and registries key on these names.
"""
from __future__ import annotations

from enum import IntEnum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple

from loguru import logger

from gguf_parser.model_formats.gguf.gguf import GGUFMetadataKVs, GGUFTensorInfo, GGUFTensorInfos
from gguf_parser.model_formats.gguf.gguf_quantization import GGMLType


class GGUFFileType(IntEnum):
    """Predominant tensor encoding of a file."""

    MOSTLY_F32 = 0
    MOSTLY_F16 = 1
    MOSTLY_Q4_0 = 2
    MOSTLY_Q4_1 = 3
    MOSTLY_Q4_1_SOME_F16 = 4
    MOSTLY_Q4_2 = 5
    MOSTLY_Q4_3 = 6
    MOSTLY_Q8_0 = 7
    MOSTLY_Q5_0 = 8
    MOSTLY_Q5_1 = 9
    MOSTLY_Q2_K = 10
    MOSTLY_Q3_K_S = 11
    MOSTLY_Q3_K_M = 12
    MOSTLY_Q3_K_L = 13
    MOSTLY_Q4_K_S = 14
    MOSTLY_Q4_K_M = 15
    MOSTLY_Q5_K_S = 16
    MOSTLY_Q5_K_M = 17
    MOSTLY_Q6_K = 18
    MOSTLY_IQ2_XXS = 19
    MOSTLY_IQ2_XS = 20
    MOSTLY_Q2_K_S = 21
    MOSTLY_IQ3_XS = 22
    MOSTLY_IQ3_XXS = 23
    MOSTLY_IQ1_S = 24
    MOSTLY_IQ4_NL = 25
    MOSTLY_IQ3_S = 26
    MOSTLY_IQ3_M = 27
    MOSTLY_IQ2_S = 28
    MOSTLY_IQ2_M = 29
    MOSTLY_IQ4_XS = 30
    MOSTLY_IQ1_M = 31
    MOSTLY_BF16 = 32
    MOSTLY_Q4_0_4_4 = 33
    MOSTLY_Q4_0_4_8 = 34
    MOSTLY_Q4_0_8_8 = 35
    MOSTLY_TQ1_0 = 36
    MOSTLY_TQ2_0 = 37
    MOSTLY_MXFP4 = 38
    UNKNOWN = 39

    @property
    def label(self) -> str:
        """Name without the ``MOSTLY_`` prefix, ``Unknown`` for UNKNOWN."""
        if self is GGUFFileType.UNKNOWN:
            return "Unknown"
        return self.name[len("MOSTLY_") :]

    def ggml_type(self) -> Optional[GGMLType]:
        """GGML type ggml associates with this file type (legacy mapping)."""
        return _FILE_TYPE_TO_GGML.get(self)


_FT = GGUFFileType
_T = GGMLType

_FILE_TYPE_TO_GGML: Mapping[GGUFFileType, GGMLType] = MappingProxyType(
    {
        _FT.MOSTLY_F32: _T.F32,
        _FT.MOSTLY_F16: _T.F16,
        _FT.MOSTLY_Q4_0: _T.Q4_0,
        _FT.MOSTLY_Q4_1: _T.Q4_1,
        _FT.MOSTLY_Q4_1_SOME_F16: _T.Q4_1,
        _FT.MOSTLY_Q4_2: _T.Q4_2,
        _FT.MOSTLY_Q4_3: _T.Q4_3,
        _FT.MOSTLY_Q8_0: _T.Q8_0,
        _FT.MOSTLY_Q5_0: _T.Q5_0,
        _FT.MOSTLY_Q5_1: _T.Q5_1,
        _FT.MOSTLY_Q2_K: _T.Q2_K,
        _FT.MOSTLY_Q3_K_S: _T.Q3_K,
        _FT.MOSTLY_Q3_K_M: _T.Q4_K,
        _FT.MOSTLY_Q3_K_L: _T.Q5_K,
        _FT.MOSTLY_Q4_K_S: _T.Q6_K,
        _FT.MOSTLY_Q4_K_M: _T.Q4_K,
        _FT.MOSTLY_Q5_K_S: _T.Q5_K,
        _FT.MOSTLY_Q5_K_M: _T.Q5_K,
        _FT.MOSTLY_Q6_K: _T.Q6_K,
        _FT.MOSTLY_IQ2_XXS: _T.IQ2_XXS,
        _FT.MOSTLY_IQ2_XS: _T.IQ2_XS,
        _FT.MOSTLY_Q2_K_S: _T.Q2_K,
        _FT.MOSTLY_IQ3_XS: _T.IQ3_S,
        _FT.MOSTLY_IQ3_XXS: _T.IQ3_XXS,
        _FT.MOSTLY_IQ1_S: _T.IQ1_S,
        _FT.MOSTLY_IQ4_NL: _T.IQ4_NL,
        _FT.MOSTLY_IQ3_S: _T.IQ3_S,
        _FT.MOSTLY_IQ3_M: _T.IQ3_S,
        _FT.MOSTLY_IQ2_S: _T.IQ2_XS,
        _FT.MOSTLY_IQ2_M: _T.IQ2_S,
        _FT.MOSTLY_IQ4_XS: _T.IQ4_XS,
        _FT.MOSTLY_IQ1_M: _T.IQ1_M,
        _FT.MOSTLY_BF16: _T.BF16,
        _FT.MOSTLY_Q4_0_4_4: _T.Q4_0_4_4,
        _FT.MOSTLY_Q4_0_4_8: _T.Q4_0_4_8,
        _FT.MOSTLY_Q4_0_8_8: _T.Q4_0_8_8,
        _FT.MOSTLY_TQ1_0: _T.TQ1_0,
        _FT.MOSTLY_TQ2_0: _T.TQ2_0,
        _FT.MOSTLY_MXFP4: _T.MXFP4,
    }
)

# Majority types that map to a file type without looking at the runners-up.
_DIRECT: Mapping[GGMLType, GGUFFileType] = MappingProxyType(
    {
        _T.F16: _FT.MOSTLY_F16,
        _T.Q4_0: _FT.MOSTLY_Q4_0,
        _T.Q4_1: _FT.MOSTLY_Q4_1,
        _T.Q4_2: _FT.MOSTLY_Q4_2,
        _T.Q4_3: _FT.MOSTLY_Q4_3,
        _T.Q5_0: _FT.MOSTLY_Q5_0,
        _T.Q5_1: _FT.MOSTLY_Q5_1,
        _T.Q8_0: _FT.MOSTLY_Q8_0,
        _T.Q6_K: _FT.MOSTLY_Q6_K,
        _T.IQ2_XXS: _FT.MOSTLY_IQ2_XXS,
        _T.IQ2_S: _FT.MOSTLY_IQ2_M,
        _T.IQ3_XXS: _FT.MOSTLY_IQ3_XXS,
        _T.IQ1_S: _FT.MOSTLY_IQ1_S,
        _T.IQ4_NL: _FT.MOSTLY_IQ4_NL,
        _T.IQ4_XS: _FT.MOSTLY_IQ4_XS,
        _T.IQ1_M: _FT.MOSTLY_IQ1_M,
        _T.BF16: _FT.MOSTLY_BF16,
        _T.Q4_0_4_4: _FT.MOSTLY_Q4_0_4_4,
        _T.Q4_0_4_8: _FT.MOSTLY_Q4_0_4_8,
        _T.Q4_0_8_8: _FT.MOSTLY_Q4_0_8_8,
        _T.TQ1_0: _FT.MOSTLY_TQ1_0,
        _T.TQ2_0: _FT.MOSTLY_TQ2_0,
        _T.MXFP4: _FT.MOSTLY_MXFP4,
    }
)

# "_L" descriptors: file type -> token embedding types that upgrade the label
_LARGE_EMBEDDING_DESCRIPTORS: Mapping[GGUFFileType, Tuple[Tuple[GGMLType, ...], str]] = (
    MappingProxyType(
        {
            _FT.MOSTLY_Q4_0: ((_T.Q8_0, _T.Q5_0, _T.Q5_1), "Q4_0_L"),
            _FT.MOSTLY_Q4_1: ((_T.Q8_0, _T.Q5_0, _T.Q5_1), "Q4_1_L"),
            _FT.MOSTLY_Q5_0: ((_T.Q8_0,), "Q5_0_L"),
            _FT.MOSTLY_Q5_1: ((_T.Q8_0,), "Q5_1_L"),
            _FT.MOSTLY_Q2_K: ((_T.Q8_0, _T.Q4_K), "Q2_K_L"),
            _FT.MOSTLY_Q3_K_M: ((_T.Q8_0,), "Q3_K_L"),
            _FT.MOSTLY_Q4_K_M: ((_T.Q8_0,), "Q4_K_L"),
            _FT.MOSTLY_Q5_K_M: ((_T.Q8_0,), "Q5_K_L"),
            _FT.MOSTLY_Q6_K: ((_T.Q8_0,), "Q6_K_L"),
        }
    )
)


def guess_file_type(counts: Mapping[GGMLType, int]) -> GGUFFileType:
    """File type represented by a histogram of tensor GGML types.

    Ties in the histogram are broken by ascending GGML type value.

    Args:
        counts: Number of tensors per GGML type.
    """
    cm = {t: n for t, n in counts.items() if n > 0}
    if not cm:
        return _FT.UNKNOWN
    ts = sorted(cm, key=lambda t: (-cm[t], int(t)))

    def c(t: GGMLType) -> int:
        return cm.get(t, 0)

    top = ts[0]
    if top is _T.F32:
        if len(ts) == 1:
            return _FT.MOSTLY_F32
        top = ts[1]

    if top in _DIRECT:
        return _DIRECT[top]
    if top is _T.Q2_K:
        return _FT.MOSTLY_Q2_K_S if ts[-1] is _T.Q5_K else _FT.MOSTLY_Q2_K
    if top is _T.Q3_K:
        if c(_T.Q8_0) > 0 or (c(_T.Q5_K) > 1 and c(_T.Q4_K) == 0):
            return _FT.MOSTLY_Q3_K_L
        if c(_T.Q4_K) > 1:
            return _FT.MOSTLY_Q3_K_M
        return _FT.MOSTLY_Q3_K_S
    if top is _T.Q4_K:
        if c(_T.Q6_K) > 1:
            return _FT.MOSTLY_Q4_K_M
        if c(_T.Q3_K) > 1:
            return _FT.MOSTLY_Q3_K_M
        return _FT.MOSTLY_Q4_K_S
    if top is _T.Q5_K:
        return _FT.MOSTLY_Q5_K_M if c(_T.Q6_K) > 1 else _FT.MOSTLY_Q5_K_S
    if top is _T.IQ2_XS:
        return _FT.MOSTLY_IQ2_S if c(_T.IQ4_XS) > 1 else _FT.MOSTLY_IQ2_XS
    if top is _T.IQ3_S:
        return _FT.MOSTLY_IQ3_XS if c(_T.IQ3_XXS) > 1 else _FT.MOSTLY_IQ3_S
    return _FT.UNKNOWN


def _is_weight_tensor(name: str, diffusion: bool) -> bool:
    if diffusion:
        return name.endswith(".weight")
    return (
        name.startswith("token_embd")
        or name.startswith("blk.")
        or "_norm" in name
        or name.endswith(".weight")
    )


def count_tensor_types(tensors: Iterable[GGUFTensorInfo], *, diffusion: bool = False) -> dict:
    """Histogram of GGML types over the weight tensors."""
    counts: dict = {}
    for ti in tensors:
        if _is_weight_tensor(ti.name, diffusion):
            counts[ti.ggml_type] = counts.get(ti.ggml_type, 0) + 1
    return counts


def extract_file_type(
    kvs: GGUFMetadataKVs, tensors: GGUFTensorInfos, *, diffusion: bool = False
) -> Tuple[GGUFFileType, str]:
    """Declared or guessed file type plus its human descriptor.

    Args:
        kvs: Metadata of the file.
        tensors: Tensor infos used for the guess.
        diffusion: Count every ``*.weight`` tensor instead of the
            transformer naming convention.
    """
    file_type = _FT.UNKNOWN
    declared = kvs.int_value("general.file_type", -1)
    if 0 <= declared < _FT.UNKNOWN:
        file_type = _FT(declared)
    else:
        if declared != -1:
            logger.warning("Ignoring unknown general.file_type={ft}; guessing from tensors", ft=declared)
        if len(tensors):
            file_type = guess_file_type(count_tensor_types(tensors, diffusion=diffusion))
    if file_type is _FT.UNKNOWN:
        return file_type, "Unknown"

    descriptor = file_type.label
    upgrade = _LARGE_EMBEDDING_DESCRIPTORS.get(file_type)
    if upgrade is not None:
        embd = tensors.get("token_embd.weight")
        if embd is not None and embd.ggml_type in upgrade[0]:
            descriptor = upgrade[1]
    return file_type, descriptor
