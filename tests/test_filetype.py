"""
File-type majority vote and descriptor resolution.
"""
import pytest

from conftest import GGUFWriter, parse_blob
from gguf_parser.model_formats.gguf.gguf_filetype import GGUFFileType, guess_file_type
from gguf_parser.model_formats.gguf.gguf_quantization import GGMLType as T


class TestGuess:
    @pytest.mark.parametrize(
        "counts, expected",
        [
            ({T.Q4_K: 40, T.Q6_K: 5}, GGUFFileType.MOSTLY_Q4_K_M),
            ({T.Q4_K: 40, T.Q3_K: 5}, GGUFFileType.MOSTLY_Q3_K_M),
            ({T.Q4_K: 40}, GGUFFileType.MOSTLY_Q4_K_S),
            ({T.F32: 10}, GGUFFileType.MOSTLY_F32),
            ({T.F32: 50, T.Q8_0: 20}, GGUFFileType.MOSTLY_Q8_0),
            ({T.Q3_K: 30, T.Q8_0: 1}, GGUFFileType.MOSTLY_Q3_K_L),
            ({T.Q5_K: 30, T.Q6_K: 2}, GGUFFileType.MOSTLY_Q5_K_M),
            ({T.IQ2_S: 30}, GGUFFileType.MOSTLY_IQ2_M),
            ({T.I32: 3}, GGUFFileType.UNKNOWN),
        ],
    )
    def test_majority(self, counts, expected) -> None:
        assert guess_file_type(counts) is expected

    def test_empty_histogram(self) -> None:
        assert guess_file_type({}) is GGUFFileType.UNKNOWN
        assert guess_file_type({T.Q4_0: 0}) is GGUFFileType.UNKNOWN

    def test_ties_prefer_the_lower_type(self) -> None:
        assert guess_file_type({T.Q8_0: 4, T.Q4_0: 4}) is GGUFFileType.MOSTLY_Q4_0

    def test_labels(self) -> None:
        assert GGUFFileType.MOSTLY_Q4_K_M.label == "Q4_K_M"
        assert GGUFFileType.UNKNOWN.label == "Unknown"


class TestFromFile:
    def _quantized(self, embd=T.Q4_K) -> GGUFWriter:
        w = GGUFWriter()
        w.add_tensor("token_embd.weight", [256, 4], embd)
        for i in range(4):
            w.add_tensor(f"blk.{i}.attn_q.weight", [256, 256], T.Q4_K)
            w.add_tensor(f"blk.{i}.attn_norm.weight", [256])
        w.add_tensor("blk.0.ffn_down.weight", [256, 256], T.Q6_K)
        w.add_tensor("blk.1.ffn_down.weight", [256, 256], T.Q6_K)
        return w

    def test_guessed_from_tensors(self) -> None:
        ft, desc = parse_blob(self._quantized().to_bytes()).file_type()
        assert ft is GGUFFileType.MOSTLY_Q4_K_M
        assert desc == "Q4_K_M"

    def test_large_embedding_descriptor(self) -> None:
        ft, desc = parse_blob(self._quantized(embd=T.Q8_0).to_bytes()).file_type()
        assert ft is GGUFFileType.MOSTLY_Q4_K_M
        assert desc == "Q4_K_L"

    def test_declared_file_type_wins(self) -> None:
        w = self._quantized()
        w.add_u32("general.file_type", int(GGUFFileType.MOSTLY_Q8_0))
        ft, desc = parse_blob(w.to_bytes()).file_type()
        assert ft is GGUFFileType.MOSTLY_Q8_0
        assert desc == "Q8_0"

    def test_out_of_range_declaration_is_ignored(self) -> None:
        w = self._quantized()
        w.add_u32("general.file_type", 500)
        ft, _ = parse_blob(w.to_bytes()).file_type()
        assert ft is GGUFFileType.MOSTLY_Q4_K_M

    def test_no_tensors(self) -> None:
        ft, desc = parse_blob(GGUFWriter().to_bytes()).file_type()
        assert ft is GGUFFileType.UNKNOWN
        assert desc == "Unknown"
