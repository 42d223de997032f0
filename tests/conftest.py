"""
Shared fixtures: an in-memory GGUF writer producing v1/v2/v3 files in either
byte order, plus builders for small synthetic models.
"""
from __future__ import annotations

import struct
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

import pytest

from gguf_parser.file import GGUFFile
from gguf_parser.io.file_reader import BytesSource
from gguf_parser.model_formats.gguf.gguf_quantization import GGMLType, tensor_bytes
from gguf_parser.model_formats.gguf.gguf_values import STRUCT_CODES, GGUFValueType as VT
from gguf_parser.model_formats.gguf.gguf_versions import decode_gguf


def _align(x: int, a: int) -> int:
    return ((x + a - 1) // a) * a


class GGUFWriter:
    """Serializes metadata and tensor infos the way GGUF writers do."""

    def __init__(self, version: int = 3, byte_order: str = "little", alignment: int = 32):
        self.version = version
        self.prefix = "<" if byte_order == "little" else ">"
        self.alignment = alignment
        self.kvs: List[Tuple[str, VT, Any, Optional[VT]]] = []
        self.tensors: List[Tuple[str, Tuple[int, ...], GGMLType]] = []

    # metadata

    def add(self, key: str, vt: VT, value: Any, elem: Optional[VT] = None) -> "GGUFWriter":
        self.kvs.append((key, vt, value, elem))
        return self

    def add_string(self, key: str, value: str) -> "GGUFWriter":
        return self.add(key, VT.STRING, value)

    def add_u32(self, key: str, value: int) -> "GGUFWriter":
        return self.add(key, VT.UINT32, value)

    def add_i32(self, key: str, value: int) -> "GGUFWriter":
        return self.add(key, VT.INT32, value)

    def add_f32(self, key: str, value: float) -> "GGUFWriter":
        return self.add(key, VT.FLOAT32, value)

    def add_bool(self, key: str, value: bool) -> "GGUFWriter":
        return self.add(key, VT.BOOL, value)

    def add_array(self, key: str, elem: VT, values: Sequence[Any]) -> "GGUFWriter":
        return self.add(key, VT.ARRAY, list(values), elem)

    def add_tensor(
        self, name: str, dims: Sequence[int], ggml_type: GGMLType = GGMLType.F32
    ) -> "GGUFWriter":
        self.tensors.append((name, tuple(dims), ggml_type))
        return self

    # encoding

    def _pack(self, code: str, value: Any) -> bytes:
        return struct.pack(self.prefix + code, value)

    def _len(self, n: int) -> bytes:
        return self._pack("I" if self.version == 1 else "Q", n)

    def _string(self, s: str) -> bytes:
        raw = s.encode("utf-8")
        return self._len(len(raw)) + raw

    def _value(self, vt: VT, value: Any, elem: Optional[VT]) -> bytes:
        if vt is VT.STRING:
            return self._string(value)
        if vt is VT.ARRAY:
            assert elem is not None
            out = self._pack("I", int(elem)) + self._len(len(value))
            for v in value:
                if elem is VT.ARRAY:
                    inner_elem, inner_values = v
                    out += self._value(VT.ARRAY, inner_values, inner_elem)
                else:
                    out += self._value(elem, v, None)
            return out
        return self._pack(STRUCT_CODES[vt], value)

    def header_bytes(self) -> bytes:
        out = bytearray(b"GGUF")
        out += self._pack("I", self.version)
        out += self._len(len(self.tensors))
        out += self._len(len(self.kvs))
        for key, vt, value, elem in self.kvs:
            out += self._string(key)
            out += self._pack("I", int(vt))
            out += self._value(vt, value, elem)
        offset = 0
        for name, dims, t in self.tensors:
            out += self._string(name)
            out += self._pack("I", len(dims))
            for d in dims:
                out += self._len(d)
            out += self._pack("I", int(t))
            out += self._pack("Q", offset)
            offset += _align(tensor_bytes(t, dims), self.alignment)
        return bytes(out)

    def data_size(self) -> int:
        return sum(_align(tensor_bytes(t, dims), self.alignment) for _, dims, t in self.tensors)

    def to_bytes(self) -> bytes:
        head = self.header_bytes()
        start = _align(len(head), self.alignment) if self.tensors else len(head)
        return head + bytes(start - len(head)) + bytes(self.data_size())

    def write(self, path: Path) -> Path:
        path.write_bytes(self.to_bytes())
        return path


def parse_blob(data: bytes, **kwargs: Any) -> GGUFFile:
    return GGUFFile.from_decoded(decode_gguf(BytesSource(data), **kwargs))


def llama_writer(
    *,
    arch: str = "llama",
    blocks: int = 32,
    embedding: int = 4096,
    heads: int = 32,
    heads_kv: Optional[int] = 32,
    context: int = 2048,
    vocab: int = 0,
    tensors: bool = True,
) -> GGUFWriter:
    """Small stand-in for a llama-family checkpoint: full metadata, tiny tensors."""
    w = GGUFWriter()
    w.add_string("general.architecture", arch)
    w.add_string("general.name", "synthetic")
    w.add_u32(f"{arch}.context_length", context)
    w.add_u32(f"{arch}.embedding_length", embedding)
    w.add_u32(f"{arch}.block_count", blocks)
    w.add_u32(f"{arch}.feed_forward_length", embedding * 4)
    w.add_u32(f"{arch}.attention.head_count", heads)
    if heads_kv is not None:
        w.add_u32(f"{arch}.attention.head_count_kv", heads_kv)
    if vocab:
        w.add_string("tokenizer.ggml.model", "llama")
        w.add_array("tokenizer.ggml.tokens", VT.STRING, [f"t{i}" for i in range(vocab)])
    if tensors:
        w.add_tensor("token_embd.weight", [embedding, 8], GGMLType.Q4_0)
        for i in range(blocks):
            w.add_tensor(f"blk.{i}.attn_norm.weight", [embedding])
            w.add_tensor(f"blk.{i}.ffn_norm.weight", [embedding])
        w.add_tensor("output_norm.weight", [embedding])
    return w


@pytest.fixture
def writer() -> GGUFWriter:
    return GGUFWriter()


@pytest.fixture
def small_file(tmp_path: Path) -> Path:
    w = GGUFWriter()
    w.add_string("general.architecture", "llama")
    w.add_string("general.name", "tiny")
    w.add_u32("general.alignment", 32)
    w.add_u32("llama.block_count", 2)
    w.add_u32("llama.embedding_length", 64)
    w.add_u32("llama.attention.head_count", 4)
    w.add_u32("llama.context_length", 128)
    w.add_string("tokenizer.ggml.model", "gpt2")
    w.add_array("tokenizer.ggml.tokens", VT.STRING, ["<s>", "</s>", "a", "b"])
    w.add_array("tokenizer.ggml.merges", VT.STRING, ["a b"])
    w.add_u32("tokenizer.ggml.bos_token_id", 0)
    w.add_tensor("token_embd.weight", [64, 4], GGMLType.F16)
    for i in range(2):
        w.add_tensor(f"blk.{i}.attn_norm.weight", [64])
        w.add_tensor(f"blk.{i}.attn_q.weight", [64, 64], GGMLType.Q8_0)
    w.add_tensor("output_norm.weight", [64])
    return w.write(tmp_path / "tiny.gguf")
