# gguf_parser/model_formats/gguf/gguf.py
"""
GGUF shared structures: header, typed metadata KVs, arrays and tensor infos.

All structures are immutable once the decoder has produced them. Arrays are
either :class:`MaterializedArray` (elements decoded) or :class:`SkippedArray`
(only length and byte size known), so callers cannot index into data that was
never read.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Pattern, Tuple, Union, overload

from gguf_parser.errors import GGUFValueError
from gguf_parser.model_formats.gguf.gguf_quantization import GGMLType, tensor_bytes, tensor_elements
from gguf_parser.model_formats.gguf.gguf_values import GGUFValueType, coerce_numeric

GGUF_MAGIC_LE = 0x46554747  # b"GGUF" read little-endian
GGUF_MAGIC_BE = 0x47475546
LEGACY_MAGICS = {0x67676D6C: "GGML", 0x67676D66: "GGMF", 0x67676A74: "GGJT"}


@dataclass(frozen=True)
class GGUFHeader:
    magic: int
    version: int
    byte_order: str  # 'little' or 'big'
    tensor_count: int
    metadata_kv_count: int

    @property
    def little_endian(self) -> bool:
        return self.byte_order == "little"


@dataclass(frozen=True)
class MaterializedArray:
    """Array whose elements were decoded.

    Attributes:
        elem_type: Element value type (ARRAY for nested arrays).
        length: Number of elements.
        size: Payload bytes following the element-type tag and length.
        start_offset: Absolute file offset of the element-type tag.
        values: Decoded elements.
    """

    elem_type: GGUFValueType
    length: int
    size: int
    start_offset: int
    values: Tuple[Any, ...]

    def values_numeric(self, target: GGUFValueType) -> List[int | float]:
        """Every element coerced to ``target``; raises like :func:`coerce_numeric`."""
        return [coerce_numeric(v, target) for v in self.values]

    def values_string(self) -> List[str]:
        if self.elem_type is not GGUFValueType.STRING:
            raise GGUFValueError(f"array of {self.elem_type.name} is not an array of strings")
        return list(self.values)


@dataclass(frozen=True)
class SkippedArray:
    """Array that was stepped over without decoding its elements."""

    elem_type: GGUFValueType
    length: int
    size: int
    start_offset: int


GGUFArray = Union[MaterializedArray, SkippedArray]


@dataclass(frozen=True)
class GGUFMetadataKV:
    key: str
    value_type: GGUFValueType
    value: Any

    def value_numeric(self, target: GGUFValueType) -> int | float:
        """The scalar value converted explicitly to ``target``."""
        if self.value_type in (GGUFValueType.STRING, GGUFValueType.ARRAY):
            raise GGUFValueError(f"{self.key} holds {self.value_type.name}, not a number")
        return coerce_numeric(self.value, target)

    def value_bool(self) -> bool:
        if self.value_type is GGUFValueType.BOOL:
            return bool(self.value)
        if self.value_type.is_numeric:
            return self.value != 0
        raise GGUFValueError(f"{self.key} holds {self.value_type.name}, not a bool")

    def value_string(self) -> str:
        if self.value_type is not GGUFValueType.STRING:
            raise GGUFValueError(f"{self.key} holds {self.value_type.name}, not a string")
        return self.value

    def value_array(self) -> GGUFArray:
        if self.value_type is not GGUFValueType.ARRAY:
            raise GGUFValueError(f"{self.key} holds {self.value_type.name}, not an array")
        return self.value


class GGUFMetadataKVs:
    """Ordered, immutable metadata store with exact-key lookup.

    On duplicate keys the first record wins, matching what llama.cpp does.
    The ``*_value`` accessors never raise: a missing key or a value of an
    unexpected kind yields ``default``.
    """

    __slots__ = ("_items", "_by_key")

    def __init__(self, items: Iterable[GGUFMetadataKV] = ()):
        self._items: Tuple[GGUFMetadataKV, ...] = tuple(items)
        by_key: Dict[str, GGUFMetadataKV] = {}
        for kv in self._items:
            by_key.setdefault(kv.key, kv)
        self._by_key = by_key

    def __iter__(self) -> Iterator[GGUFMetadataKV]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GGUFMetadataKVs):
            return NotImplemented
        return self._items == other._items

    def __hash__(self) -> int:
        return hash(self._items)

    def __repr__(self) -> str:
        return f"GGUFMetadataKVs({len(self._items)} keys)"

    def keys(self) -> List[str]:
        return list(self._by_key)

    def get(self, key: str) -> Optional[GGUFMetadataKV]:
        return self._by_key.get(key)

    def index(self, keys: Iterable[str]) -> Dict[str, GGUFMetadataKV]:
        """Look up several keys at once; absent keys are left out."""
        return {k: self._by_key[k] for k in keys if k in self._by_key}

    def int_value(self, key: str, default: int = 0) -> int:
        kv = self._by_key.get(key)
        if kv is None or not kv.value_type.is_numeric:
            return default
        return int(kv.value)

    def float_value(self, key: str, default: float = 0.0) -> float:
        kv = self._by_key.get(key)
        if kv is None or not (kv.value_type.is_numeric or kv.value_type is GGUFValueType.BOOL):
            return default
        return float(kv.value)

    def bool_value(self, key: str, default: bool = False) -> bool:
        kv = self._by_key.get(key)
        if kv is None or not (kv.value_type.is_numeric or kv.value_type is GGUFValueType.BOOL):
            return default
        return bool(kv.value)

    def str_value(self, key: str, default: str = "") -> str:
        kv = self._by_key.get(key)
        if kv is None or kv.value_type is not GGUFValueType.STRING:
            return default
        return kv.value

    def array(self, key: str) -> Optional[GGUFArray]:
        kv = self._by_key.get(key)
        if kv is None or kv.value_type is not GGUFValueType.ARRAY:
            return None
        return kv.value

    def ints_value(self, key: str) -> Optional[List[int]]:
        """Scalar or numeric array as a list of ints; None if absent or unreadable."""
        kv = self._by_key.get(key)
        if kv is None:
            return None
        if kv.value_type.is_numeric:
            return [int(kv.value)]
        arr = self.array(key)
        if isinstance(arr, MaterializedArray) and arr.elem_type.is_numeric:
            return [int(v) for v in arr.values]
        return None


@dataclass(frozen=True)
class GGUFTensorInfo:
    name: str
    n_dims: int
    dims: Tuple[int, ...]
    ggml_type: GGMLType
    offset: int  # relative to data section
    start_offset: int = 0  # absolute offset of this record

    @property
    def elements(self) -> int:
        """Total number of elements in the tensor."""
        return tensor_elements(self.dims)

    @property
    def bytes(self) -> int:
        """Payload bytes of the tensor."""
        return tensor_bytes(self.ggml_type, self.dims)


class GGUFTensorInfos:
    """Ordered, immutable tensor-info table."""

    __slots__ = ("_items", "_by_name")

    def __init__(self, items: Iterable[GGUFTensorInfo] = ()):
        self._items: Tuple[GGUFTensorInfo, ...] = tuple(items)
        by_name: Dict[str, GGUFTensorInfo] = {}
        for ti in self._items:
            by_name.setdefault(ti.name, ti)
        self._by_name = by_name

    def __iter__(self) -> Iterator[GGUFTensorInfo]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    @overload
    def __getitem__(self, i: int) -> GGUFTensorInfo: ...
    @overload
    def __getitem__(self, i: slice) -> Tuple[GGUFTensorInfo, ...]: ...
    def __getitem__(self, i):
        return self._items[i]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GGUFTensorInfos):
            return NotImplemented
        return self._items == other._items

    def __hash__(self) -> int:
        return hash(self._items)

    def __repr__(self) -> str:
        return f"GGUFTensorInfos({len(self._items)} tensors)"

    def get(self, name: str) -> Optional[GGUFTensorInfo]:
        return self._by_name.get(name)

    def index(self, names: Iterable[str]) -> Dict[str, GGUFTensorInfo]:
        return {n: self._by_name[n] for n in names if n in self._by_name}

    def has_all(self, names: Iterable[str]) -> bool:
        return all(n in self._by_name for n in names)

    def search(self, pattern: str | Pattern[str]) -> List[GGUFTensorInfo]:
        rx = re.compile(pattern) if isinstance(pattern, str) else pattern
        return [ti for ti in self._items if rx.search(ti.name)]

    def bytes(self) -> int:
        return sum(ti.bytes for ti in self._items)

    def elements(self) -> int:
        return sum(ti.elements for ti in self._items)
