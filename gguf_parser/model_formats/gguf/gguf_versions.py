# gguf_parser/model_formats/gguf/gguf_versions.py
"""
Version-aware GGUF decoding with endianness detection (v1/v2/v3).

One strictly sequential pass over a :class:`ByteSource`:
magic → version → counts → metadata KVs → tensor infos → padding.
v1 stores counts, string lengths, array lengths and dimensions as 32-bit
integers, v2/v3 as 64-bit. Decoding stops at the first structural error.
"""

from __future__ import annotations

import struct
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from gguf_parser.errors import (
    MalformedHeaderError,
    ReadCancelledError,
    TruncatedReadError,
    UnsupportedValueTypeError,
)
from gguf_parser.io.file_reader import ByteSource
from gguf_parser.model_formats.gguf.gguf import (
    GGUF_MAGIC_BE,
    GGUF_MAGIC_LE,
    LEGACY_MAGICS,
    GGUFArray,
    GGUFHeader,
    GGUFMetadataKV,
    GGUFMetadataKVs,
    GGUFTensorInfo,
    GGUFTensorInfos,
    MaterializedArray,
    SkippedArray,
)
from gguf_parser.model_formats.gguf.gguf_quantization import GGMLType
from gguf_parser.model_formats.gguf.gguf_values import STRUCT_CODES, GGUFValueType
from gguf_parser.observability import Timer

DEFAULT_ALIGNMENT = 32
SUPPORTED_VERSIONS = (1, 2, 3)

_CHUNK_SIZE = 64 * 1024
_MAX_DIMS = 4


@dataclass(frozen=True)
class GGUFDecoded:
    """Structural result of one decode pass."""

    header: GGUFHeader
    metadata: GGUFMetadataKVs
    tensor_infos: GGUFTensorInfos
    alignment: int
    padding: int
    tensor_data_start_offset: int
    size: int
    approximate: bool = False


def align_up(x: int, a: int) -> int:
    return ((x + a - 1) // a) * a


class _Cursor:
    """Sequential reader over a ByteSource, served from a read-ahead chunk."""

    def __init__(self, source: ByteSource, check: Callable[[], None]):
        self.source = source
        self.size = source.size
        self.offset = 0
        self._check = check
        self._buf = memoryview(b"")
        self._buf_start = 0

    def _ensure(self, n: int) -> int:
        """Make ``n`` bytes at the cursor available; return their buffer index."""
        rel = self.offset - self._buf_start
        if 0 <= rel and rel + n <= len(self._buf):
            return rel
        self._check()
        if self.offset + n > self.size:
            raise TruncatedReadError(
                f"unexpected end of data: need {n} bytes at offset {self.offset}, "
                f"source has {self.size}",
                offset=self.offset,
                wanted=n,
                size=self.size,
            )
        want = min(max(n, _CHUNK_SIZE), self.size - self.offset)
        self._buf = memoryview(self.source.read_at(self.offset, want))
        self._buf_start = self.offset
        return 0

    def read(self, n: int) -> bytes:
        if n == 0:
            return b""
        rel = self._ensure(n)
        self.offset += n
        return bytes(self._buf[rel : rel + n])

    def unpack(self, st: struct.Struct) -> Any:
        rel = self._ensure(st.size)
        self.offset += st.size
        return st.unpack_from(self._buf, rel)[0]

    def skip(self, n: int) -> None:
        if self.offset + n > self.size:
            raise TruncatedReadError(
                f"unexpected end of data: cannot skip {n} bytes at offset {self.offset}",
                offset=self.offset,
                wanted=n,
                size=self.size,
            )
        self.offset += n

    @property
    def remaining(self) -> int:
        return self.size - self.offset


class _GGUFReader:
    """Decodes records for one version/byte order."""

    def __init__(
        self,
        cur: _Cursor,
        *,
        version: int,
        byte_order: str,
        approximate: bool,
        skip_large_metadata: Optional[int],
    ):
        self.cur = cur
        self.version = version
        self.approximate = approximate
        self.skip_large_metadata = skip_large_metadata
        prefix = "<" if byte_order == "little" else ">"
        self._structs: Dict[GGUFValueType, struct.Struct] = {
            vt: struct.Struct(prefix + code) for vt, code in STRUCT_CODES.items()
        }
        self._u32 = struct.Struct(prefix + "I")
        self._u64 = struct.Struct(prefix + "Q")
        self._len = self._u32 if version == 1 else self._u64

    # primitives

    @property
    def len_size(self) -> int:
        return self._len.size

    def read_u32(self) -> int:
        return self.cur.unpack(self._u32)

    def read_u64(self) -> int:
        return self.cur.unpack(self._u64)

    def read_len(self) -> int:
        return self.cur.unpack(self._len)

    def read_raw_string(self) -> str:
        n = self.read_len()
        if n > self.cur.remaining:
            raise TruncatedReadError(
                f"string of {n} bytes at offset {self.cur.offset} exceeds remaining data",
                offset=self.cur.offset,
                wanted=n,
                size=self.cur.size,
            )
        return self.cur.read(n).decode("utf-8", "replace")

    def read_string(self) -> str:
        return self.read_raw_string().strip()

    def skip_string(self) -> int:
        n = self.read_len()
        self.cur.skip(n)
        return self._len.size + n

    def read_value_type(self, what: str) -> GGUFValueType:
        tag = self.read_u32()
        try:
            return GGUFValueType(tag)
        except ValueError:
            raise UnsupportedValueTypeError(
                f"unknown {what} type tag {tag} at offset {self.cur.offset - 4}", tag=tag
            ) from None

    # values

    def read_scalar(self, vt: GGUFValueType) -> Any:
        if vt is GGUFValueType.STRING:
            return self.read_string()
        return self.cur.unpack(self._structs[vt])

    def read_value(self, vt: GGUFValueType) -> Any:
        if vt is GGUFValueType.ARRAY:
            return self.read_array()
        return self.read_scalar(vt)

    def _skip_elements(self, vt: GGUFValueType, count: int) -> int:
        """Step over ``count`` elements and return their byte size."""
        if vt.fixed_size:
            size = vt.fixed_size * count
            self.cur.skip(size)
            return size
        total = 0
        for _ in range(count):
            if vt is GGUFValueType.STRING:
                total += self.skip_string()
            else:
                total += self._skip_array_record()
        return total

    def _skip_array_record(self) -> int:
        vt = self.read_value_type("array element")
        n = self.read_len()
        return 4 + self._len.size + self._skip_elements(vt, n)

    def read_array(self) -> GGUFArray:
        start = self.cur.offset
        vt = self.read_value_type("array element")
        n = self.read_len()
        min_elem = vt.fixed_size or self._len.size
        if n * min_elem > self.cur.remaining:
            raise TruncatedReadError(
                f"array of {n} {vt.name} elements at offset {start} exceeds remaining data",
                offset=start,
                wanted=n * min_elem,
                size=self.cur.size,
            )

        threshold = self.skip_large_metadata
        if self.approximate or (
            threshold is not None and vt.fixed_size and vt.fixed_size * n > threshold
        ):
            size = self._skip_elements(vt, n)
            return SkippedArray(elem_type=vt, length=n, size=size, start_offset=start)

        if vt.fixed_size:
            st = self._structs[vt]
            raw = self.cur.read(st.size * n)
            values: Tuple[Any, ...] = tuple(v for (v,) in st.iter_unpack(raw)) if n else ()
            return MaterializedArray(
                elem_type=vt, length=n, size=len(raw), start_offset=start, values=values
            )

        items: List[Any] = []
        size = 0
        skipping = False
        for _ in range(n):
            if skipping:
                size += self._skip_elements(vt, 1)
                continue
            before = self.cur.offset
            if vt is GGUFValueType.STRING:
                item: Any = self.read_raw_string()
            else:
                item = self.read_array()
            size += self.cur.offset - before
            items.append(item)
            if threshold is not None and size > threshold:
                skipping = True
                items = []
        if skipping:
            return SkippedArray(elem_type=vt, length=n, size=size, start_offset=start)
        return MaterializedArray(
            elem_type=vt, length=n, size=size, start_offset=start, values=tuple(items)
        )

    # records

    def read_kv(self) -> GGUFMetadataKV:
        key = self.read_string()
        vt = self.read_value_type(f"value of {key!r}")
        return GGUFMetadataKV(key=key, value_type=vt, value=self.read_value(vt))

    def read_tensor_info(self) -> GGUFTensorInfo:
        start = self.cur.offset
        name = self.read_string()
        n_dims = self.read_u32()
        if n_dims > _MAX_DIMS:
            raise MalformedHeaderError(f"tensor {name!r} declares {n_dims} dimensions")
        dims = tuple(self.read_len() for _ in range(n_dims))
        tag = self.read_u32()
        try:
            ggml_type = GGMLType(tag)
        except ValueError:
            raise UnsupportedValueTypeError(
                f"tensor {name!r} has unknown GGML type {tag}", tag=tag
            ) from None
        offset = self.read_u64()
        return GGUFTensorInfo(
            name=name,
            n_dims=n_dims,
            dims=dims,
            ggml_type=ggml_type,
            offset=offset,
            start_offset=start,
        )

    def skip_tensor_info(self) -> None:
        self.skip_string()
        n_dims = self.read_u32()
        if n_dims > _MAX_DIMS:
            raise MalformedHeaderError(f"tensor info declares {n_dims} dimensions")
        self.cur.skip(n_dims * self._len.size + 4 + 8)


def _make_check(
    cancel: Optional[threading.Event], deadline: Optional[float]
) -> Callable[[], None]:
    def check() -> None:
        if cancel is not None and cancel.is_set():
            raise ReadCancelledError("decode cancelled")
        if deadline is not None and time.monotonic() >= deadline:
            raise ReadCancelledError("decode deadline exceeded")

    return check


def _read_header(cur: _Cursor) -> Tuple[int, int, str]:
    if cur.size < 4:
        raise MalformedHeaderError(f"file too small for GGUF header ({cur.size} bytes)")
    raw = cur.read(4)
    magic = int.from_bytes(raw, "little")
    if magic in LEGACY_MAGICS:
        raise MalformedHeaderError(f"unsupported format: {LEGACY_MAGICS[magic]}")
    if magic not in (GGUF_MAGIC_LE, GGUF_MAGIC_BE):
        raise MalformedHeaderError(f"invalid magic {raw!r}; not GGUF")

    raw_version = cur.read(4)
    byte_order = "little" if magic == GGUF_MAGIC_LE else "big"
    version = int.from_bytes(raw_version, byte_order)
    if version not in SUPPORTED_VERSIONS:
        # big-endian writers keep the "GGUF" bytes and only swap the numbers
        swapped = "big" if byte_order == "little" else "little"
        if int.from_bytes(raw_version, swapped) in SUPPORTED_VERSIONS:
            byte_order = swapped
            version = int.from_bytes(raw_version, swapped)
        else:
            raise MalformedHeaderError(f"unsupported GGUF version {version}")
    return magic, version, byte_order


def decode_gguf(
    source: ByteSource,
    *,
    approximate: bool = False,
    skip_large_metadata: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    deadline: Optional[float] = None,
) -> GGUFDecoded:
    """Decode header, metadata and tensor-info table of a GGUF source.

    Args:
        source: Entered byte source.
        approximate: Skip all arrays and do not keep tensor infos.
        skip_large_metadata: Byte threshold above which arrays are skipped.
        cancel: Event that aborts decoding once set.
        deadline: ``time.monotonic()`` value after which decoding aborts.

    Raises:
        MalformedHeaderError: Bad magic, version or counts.
        TruncatedReadError: The source ended inside a record.
        UnsupportedValueTypeError: Unknown value or tensor type tag.
        ReadCancelledError: Cancelled or past the deadline.
    """
    check = _make_check(cancel, deadline)
    check()
    cur = _Cursor(source, check)

    with Timer("decode") as t:
        magic, version, byte_order = _read_header(cur)
        rd = _GGUFReader(
            cur,
            version=version,
            byte_order=byte_order,
            approximate=approximate,
            skip_large_metadata=skip_large_metadata,
        )
        tensor_count = rd.read_len()
        kv_count = rd.read_len()
        # smallest possible records: empty key + tag + 1 byte, empty name + dims + type + offset
        min_kv = rd.len_size + 4 + 1
        min_ti = rd.len_size + 4 + 4 + 8
        if kv_count * min_kv + tensor_count * min_ti > cur.remaining:
            raise MalformedHeaderError(
                f"header declares {kv_count} metadata KVs and {tensor_count} tensors, "
                f"more than {cur.remaining} remaining bytes can hold"
            )
        header = GGUFHeader(
            magic=magic,
            version=version,
            byte_order=byte_order,
            tensor_count=tensor_count,
            metadata_kv_count=kv_count,
        )

        kvs: List[GGUFMetadataKV] = []
        seen: Dict[str, int] = {}
        for i in range(kv_count):
            kv = rd.read_kv()
            if kv.key in seen:
                logger.warning(
                    "Duplicate metadata key {key} (records {a} and {b}); keeping the first",
                    key=kv.key,
                    a=seen[kv.key],
                    b=i,
                )
            else:
                seen[kv.key] = i
            kvs.append(kv)
        metadata = GGUFMetadataKVs(kvs)

        tis: List[GGUFTensorInfo] = []
        for _ in range(tensor_count):
            if approximate:
                rd.skip_tensor_info()
            else:
                tis.append(rd.read_tensor_info())
        tensor_infos = GGUFTensorInfos(tis)

        alignment = metadata.int_value("general.alignment", DEFAULT_ALIGNMENT)
        if alignment <= 0:
            logger.warning(
                "Ignoring general.alignment={value}; using {default}",
                value=alignment,
                default=DEFAULT_ALIGNMENT,
            )
            alignment = DEFAULT_ALIGNMENT
        data_start = align_up(cur.offset, alignment)
        if tensor_count and data_start > cur.size:
            raise TruncatedReadError(
                f"tensor data section starts at {data_start}, beyond end of data {cur.size}",
                offset=data_start,
                size=cur.size,
            )

    logger.debug(
        "Decoded GGUF v{version} ({order}) with {kvs} KVs, {tensors} tensors in {ms:.2f}ms",
        version=version,
        order=byte_order,
        kvs=kv_count,
        tensors=tensor_count,
        ms=t.duration_ms,
    )
    return GGUFDecoded(
        header=header,
        metadata=metadata,
        tensor_infos=tensor_infos,
        alignment=alignment,
        padding=data_start - cur.offset,
        tensor_data_start_offset=data_start,
        size=cur.size,
        approximate=approximate,
    )
