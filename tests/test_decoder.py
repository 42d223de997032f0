"""
Decoder tests: header variants, metadata and tensor-info records, padding,
the skip/approximate modes and structural failures.
"""
import struct
import threading

import pytest

from conftest import GGUFWriter, parse_blob
from gguf_parser.errors import (
    GGUFParseError,
    MalformedHeaderError,
    ReadCancelledError,
    TruncatedReadError,
    UnsupportedValueTypeError,
)
from gguf_parser.file import ReadOptions, parse_gguf_file
from gguf_parser.io.file_reader import BytesSource
from gguf_parser.model_formats.gguf.gguf import MaterializedArray, SkippedArray
from gguf_parser.model_formats.gguf.gguf_quantization import GGMLType
from gguf_parser.model_formats.gguf.gguf_values import GGUFValueType as VT
from gguf_parser.model_formats.gguf.gguf_versions import decode_gguf


def _basic(version: int = 3, byte_order: str = "little") -> GGUFWriter:
    w = GGUFWriter(version=version, byte_order=byte_order)
    w.add_string("general.architecture", "llama")
    w.add_u32("llama.block_count", 1)
    w.add_f32("llama.rope.freq_base", 10000.0)
    w.add_bool("llama.attention.causal", True)
    w.add_array("llama.feed_forward_length", VT.INT32, [11008])
    w.add_tensor("blk.0.attn_norm.weight", [4096])
    w.add_tensor("blk.0.attn_q.weight", [4096, 4096], GGMLType.Q4_0)
    return w


class TestHeader:
    @pytest.mark.parametrize("version", [1, 2, 3])
    def test_versions_decode_the_same_records(self, version: int) -> None:
        gf = parse_blob(_basic(version=version).to_bytes())
        assert gf.header.version == version
        assert gf.header.tensor_count == 2
        assert gf.header.metadata_kv_count == 5
        assert gf.kvs.str_value("general.architecture") == "llama"
        assert [ti.name for ti in gf.tensor_infos] == [
            "blk.0.attn_norm.weight",
            "blk.0.attn_q.weight",
        ]
        assert gf.tensor_infos[1].dims == (4096, 4096)

    def test_big_endian(self) -> None:
        gf = parse_blob(_basic(byte_order="big").to_bytes())
        assert gf.header.byte_order == "big"
        assert not gf.header.little_endian
        assert not gf.metadata().little_endian
        assert gf.kvs.int_value("llama.block_count") == 1
        assert gf.kvs.float_value("llama.rope.freq_base") == 10000.0
        assert gf.tensor_infos[1].ggml_type is GGMLType.Q4_0

    def test_little_endian_flag(self) -> None:
        gf = parse_blob(_basic().to_bytes())
        assert gf.header.little_endian
        assert gf.metadata().little_endian

    def test_bad_magic(self) -> None:
        data = b"GGUX" + _basic().to_bytes()[4:]
        with pytest.raises(MalformedHeaderError, match="magic"):
            parse_blob(data)

    @pytest.mark.parametrize("magic", [b"lmgg", b"fmgg", b"tjgg"])
    def test_legacy_formats_are_reported_as_unsupported(self, magic: bytes) -> None:
        data = magic + _basic().to_bytes()[4:]
        with pytest.raises(MalformedHeaderError, match="unsupported format"):
            parse_blob(data)

    def test_unknown_version(self) -> None:
        data = b"GGUF" + struct.pack("<I", 7) + _basic().to_bytes()[8:]
        with pytest.raises(MalformedHeaderError, match="version"):
            parse_blob(data)

    def test_absurd_counts(self) -> None:
        data = b"GGUF" + struct.pack("<IQQ", 3, 2**40, 2**40)
        with pytest.raises(MalformedHeaderError):
            parse_blob(data)


class TestRecords:
    def test_padding_to_default_alignment(self) -> None:
        w = _basic()
        head = w.header_bytes()
        gf = parse_blob(w.to_bytes())
        assert gf.alignment == 32
        assert gf.tensor_data_start_offset % 32 == 0
        assert gf.tensor_data_start_offset == len(head) + gf.padding
        assert 0 <= gf.padding < 32

    def test_custom_alignment(self) -> None:
        w = GGUFWriter(alignment=64)
        w.add_u32("general.alignment", 64)
        w.add_tensor("a", [16])
        gf = parse_blob(w.to_bytes())
        assert gf.alignment == 64
        assert gf.tensor_data_start_offset % 64 == 0

    def test_non_positive_alignment_falls_back(self) -> None:
        w = GGUFWriter()
        w.add_i32("general.alignment", 0)
        w.add_tensor("a", [16])
        gf = parse_blob(w.to_bytes())
        assert gf.alignment == 32

    def test_model_size_and_parameters(self) -> None:
        gf = parse_blob(_basic().to_bytes())
        q4 = 4096 * 4096 // 32 * 18
        assert gf.model_size == 4096 * 4 + q4
        assert gf.parameters == 4096 + 4096 * 4096
        assert gf.bits_per_weight == pytest.approx(gf.model_size * 8 / gf.parameters)

    def test_decoding_is_deterministic(self) -> None:
        data = _basic().to_bytes()
        assert parse_blob(data) == parse_blob(data)

    def test_duplicate_keys_keep_the_first(self) -> None:
        w = GGUFWriter()
        w.add_u32("k", 1)
        w.add_u32("k", 2)
        gf = parse_blob(w.to_bytes())
        assert len(gf.kvs) == 2
        assert gf.kvs.int_value("k") == 1

    def test_array_strings_are_kept_verbatim(self) -> None:
        w = GGUFWriter()
        w.add_array("tokenizer.ggml.tokens", VT.STRING, [" a", "b "])
        w.add_string("general.name", "  padded  ")
        gf = parse_blob(w.to_bytes())
        arr = gf.kvs.array("tokenizer.ggml.tokens")
        assert isinstance(arr, MaterializedArray)
        assert arr.values == (" a", "b ")
        assert gf.kvs.str_value("general.name") == "padded"

    def test_nested_arrays(self) -> None:
        w = GGUFWriter()
        w.add_array("nested", VT.ARRAY, [(VT.UINT8, [1, 2]), (VT.UINT8, [3])])
        gf = parse_blob(w.to_bytes())
        arr = gf.kvs.array("nested")
        assert arr.length == 2
        assert arr.values[0].values == (1, 2)
        assert arr.values[1].values == (3,)


class TestFailures:
    def test_every_truncation_fails_structurally(self) -> None:
        data = _basic().header_bytes()
        for cut in range(0, len(data), 7):
            with pytest.raises(GGUFParseError):
                parse_blob(data[:cut])

    def test_truncated_read_reports_offset(self) -> None:
        data = _basic().header_bytes()
        with pytest.raises(TruncatedReadError) as ei:
            parse_blob(data[:-3])
        assert ei.value.offset > 0
        assert ei.value.size == len(data) - 3

    def test_unknown_value_type(self) -> None:
        w = GGUFWriter()
        w.add("weird", VT.UINT8, 1)
        data = bytearray(w.to_bytes())
        tag_at = 4 + 4 + 8 + 8 + 8 + len("weird")
        data[tag_at : tag_at + 4] = struct.pack("<I", 99)
        with pytest.raises(UnsupportedValueTypeError) as ei:
            parse_blob(bytes(data))
        assert ei.value.tag == 99

    def test_unknown_tensor_type(self) -> None:
        w = GGUFWriter()
        w.add_tensor("t", [32])
        head = bytearray(w.header_bytes())
        # type tag sits right before the trailing u64 offset
        head[-12:-8] = struct.pack("<I", 1000)
        with pytest.raises(UnsupportedValueTypeError):
            parse_blob(bytes(head) + bytes(64))

    def test_too_many_dimensions(self) -> None:
        w = GGUFWriter()
        w.add_tensor("t", [1, 1, 1, 1, 1])
        with pytest.raises(MalformedHeaderError):
            parse_blob(w.header_bytes() + bytes(64))

    def test_cancelled_before_start(self) -> None:
        ev = threading.Event()
        ev.set()
        with pytest.raises(ReadCancelledError):
            decode_gguf(BytesSource(_basic().to_bytes()), cancel=ev)

    def test_cancellation_is_not_a_parse_error(self) -> None:
        assert not issubclass(ReadCancelledError, GGUFParseError)

    def test_expired_deadline(self) -> None:
        with pytest.raises(ReadCancelledError):
            decode_gguf(BytesSource(_basic().to_bytes()), deadline=0.0)


class TestModes:
    def _with_vocab(self) -> GGUFWriter:
        w = _basic()
        w.add_array("tokenizer.ggml.tokens", VT.STRING, [f"tok{i}" for i in range(1000)])
        w.add_array("tokenizer.ggml.scores", VT.FLOAT32, [0.0] * 1000)
        return w

    def test_skip_large_metadata(self) -> None:
        gf = parse_blob(self._with_vocab().to_bytes(), skip_large_metadata=1024)
        tokens = gf.kvs.array("tokenizer.ggml.tokens")
        scores = gf.kvs.array("tokenizer.ggml.scores")
        assert isinstance(tokens, SkippedArray)
        assert isinstance(scores, SkippedArray)
        assert tokens.length == 1000
        assert scores.size == 4000
        full = parse_blob(self._with_vocab().to_bytes())
        assert full.kvs.array("tokenizer.ggml.tokens").size == tokens.size
        assert full.tensor_infos == gf.tensor_infos

    def test_small_arrays_survive_the_threshold(self) -> None:
        gf = parse_blob(self._with_vocab().to_bytes(), skip_large_metadata=1 << 20)
        assert isinstance(gf.kvs.array("tokenizer.ggml.tokens"), MaterializedArray)

    def test_approximate(self) -> None:
        data = self._with_vocab().to_bytes()
        gf = parse_blob(data, approximate=True)
        assert gf.approximate
        assert len(gf.tensor_infos) == 0
        assert gf.header.tensor_count == 2
        assert isinstance(gf.kvs.array("tokenizer.ggml.tokens"), SkippedArray)
        exact = parse_blob(data)
        assert gf.tensor_data_start_offset == exact.tensor_data_start_offset
        assert gf.model_size == len(data) - gf.tensor_data_start_offset


class TestLocalFiles:
    @pytest.mark.parametrize("use_mmap", [True, False])
    def test_mmap_and_buffered_agree(self, small_file, use_mmap: bool) -> None:
        gf = parse_gguf_file(small_file, ReadOptions(use_mmap=use_mmap))
        assert gf.size == small_file.stat().st_size
        assert gf.kvs.str_value("general.name") == "tiny"
        assert len(gf.tensor_infos) == 6

    def test_empty_file(self, tmp_path) -> None:
        p = tmp_path / "empty.gguf"
        p.write_bytes(b"")
        with pytest.raises(GGUFParseError):
            parse_gguf_file(p)

    def test_read_options_validation(self) -> None:
        with pytest.raises(ValueError):
            ReadOptions(buffer_size=1024)
        with pytest.raises(ValueError):
            ReadOptions(retries=-1)
        with pytest.raises(ValueError):
            ReadOptions(skip_large_metadata=-5)
