"""
GGML type registry and the ggml sizing helpers the estimators rely on.
"""
import pytest

from gguf_parser.model_formats.gguf.gguf_quantization import (
    GGMLType,
    ggml_graph_overhead,
    ggml_hash_size,
    ggml_padding,
    ggml_tensor_overhead,
    tensor_bytes,
    tensor_elements,
)


class TestTypes:
    def test_block_traits(self) -> None:
        assert GGMLType.Q4_0.trait.block_size == 32
        assert GGMLType.Q4_0.trait.type_size == 18
        assert GGMLType.Q4_0.is_quantized
        assert not GGMLType.F16.is_quantized

    def test_row_size(self) -> None:
        assert GGMLType.F16.row_size_of([128, 2048, 32]) == 128 * 2048 * 32 * 2
        assert GGMLType.Q8_0.row_size_of([64, 2]) == 2 * 34 * 2
        with pytest.raises(ValueError):
            GGMLType.F32.row_size_of([])

    def test_tensor_bytes(self) -> None:
        assert tensor_bytes(GGMLType.F32, [4096]) == 16384
        assert tensor_bytes(GGMLType.Q4_0, [4096, 4096]) == 4096 * 4096 // 32 * 18
        assert tensor_bytes(GGMLType.F32, []) == 0

    def test_tensor_elements(self) -> None:
        assert tensor_elements([4, 5, 6]) == 120
        assert tensor_elements([]) == 0


class TestGGMLHelpers:
    def test_padding(self) -> None:
        assert ggml_padding(2048, 32) == 2048
        assert ggml_padding(2049, 32) == 2080
        assert ggml_padding(1, 256) == 256

    def test_tensor_overhead(self) -> None:
        assert ggml_tensor_overhead() == 400

    def test_hash_size_picks_the_next_prime(self) -> None:
        assert ggml_hash_size(2048) == 2053
        assert ggml_hash_size(2053) == 2053
        assert ggml_hash_size(2**32) == 2**32 | 1

    def test_graph_overhead(self) -> None:
        # 80 + 3 * 8192 + 2053 * 8 + 65 * 4 = 41340, padded to 16, plus the object header
        assert ggml_graph_overhead(1024) == 41376
        assert ggml_graph_overhead(1024, grads=True) > ggml_graph_overhead(1024)
