"""
GGUF naming-convention parsing.
"""
import pytest

from gguf_parser.model_formats.gguf.gguf_filename import (
    GGUFFilename,
    is_shard_gguf_filename,
    parse_gguf_filename,
)


class TestParse:
    @pytest.mark.parametrize(
        "name, expected",
        [
            (
                "Mixtral-8x7B-V0.1-KQ2.gguf",
                GGUFFilename("Mixtral", size_label="8x7B", version="V0.1", encoding="KQ2"),
            ),
            (
                "Grok-100B-v1.0-Q4_0-00003-of-00009.gguf",
                GGUFFilename(
                    "Grok",
                    size_label="100B",
                    version="v1.0",
                    encoding="Q4_0",
                    shard=3,
                    shard_total=9,
                ),
            ),
            (
                "Hermes-2-Pro-Llama-3-8B-F16.gguf",
                GGUFFilename("Hermes 2 Pro Llama 3", size_label="8B", encoding="F16"),
            ),
            (
                "Phi-3-mini-3.8B-ContextLength4k-instruct-v1.0.gguf",
                GGUFFilename(
                    "Phi 3 mini",
                    size_label="3.8B-ContextLength4k",
                    fine_tune="instruct",
                    version="v1.0",
                ),
            ),
            (
                "Meta-Llama-3.1-405B-Instruct-XelotX-BF16-00001-of-00018.gguf",
                GGUFFilename(
                    "Meta Llama 3.1",
                    size_label="405B",
                    fine_tune="Instruct-XelotX",
                    encoding="BF16",
                    shard=1,
                    shard_total=18,
                ),
            ),
            (
                "qwen2-72b-instruct-q6_k-00001-of-00002.gguf",
                GGUFFilename(
                    "qwen2",
                    size_label="72b",
                    fine_tune="instruct",
                    encoding="q6_k",
                    shard=1,
                    shard_total=2,
                ),
            ),
            ("Meta-Llama-3.1-405B-Instruct.Q2_K.gguf-00001-of-00009.gguf", None),
            ("not-a-known-arrangement.gguf", None),
        ],
    )
    def test_parse(self, name: str, expected) -> None:
        assert parse_gguf_filename(name) == expected

    def test_suffix_is_optional(self) -> None:
        assert parse_gguf_filename("Hermes-2-Pro-Llama-3-8B-F16") == parse_gguf_filename(
            "Hermes-2-Pro-Llama-3-8B-F16.gguf"
        )

    def test_is_shard(self) -> None:
        assert parse_gguf_filename("Grok-100B-v1.0-Q4_0-00003-of-00009.gguf").is_shard
        assert not parse_gguf_filename("Hermes-2-Pro-Llama-3-8B-F16.gguf").is_shard


class TestString:
    @pytest.mark.parametrize(
        "fn, expected",
        [
            (
                GGUFFilename("Mixtral", size_label="8x7B", version="v0.1", encoding="KQ2"),
                "Mixtral-8x7B-v0.1-KQ2.gguf",
            ),
            (
                GGUFFilename(
                    "Grok",
                    size_label="100B",
                    version="v1.0",
                    encoding="Q4_0",
                    shard=3,
                    shard_total=9,
                ),
                "Grok-100B-v1.0-Q4_0-00003-of-00009.gguf",
            ),
            (
                GGUFFilename("Hermes 2 Pro Llama 3", size_label="8B", encoding="F16"),
                "Hermes-2-Pro-Llama-3-8B-F16.gguf",
            ),
            (
                GGUFFilename(
                    "Phi 3 mini",
                    size_label="3.8B-ContextLength4k",
                    fine_tune="instruct",
                    version="v1.0",
                ),
                "Phi-3-mini-3.8B-ContextLength4k-instruct-v1.0.gguf",
            ),
            (GGUFFilename(""), ""),
        ],
    )
    def test_str(self, fn: GGUFFilename, expected: str) -> None:
        assert str(fn) == expected


@pytest.mark.parametrize(
    "name, expected",
    [
        ("qwen2-72b-instruct-q6_k-00001-of-00002.gguf", True),
        ("Grok-100B-v1.0-Q4_0-00003-of-00009.gguf", True),
        ("Meta-Llama-3.1-405B-Instruct.Q2_K.gguf-00001-of-00009.gguf", True),
        ("Meta-Llama-3.1-405B-Instruct-XelotX-BF16-00001-of-00018.gguf", True),
        ("model-00000-of-00002.gguf", False),
        ("not-a-known-arrangement.gguf", False),
    ],
)
def test_is_shard_gguf_filename(name: str, expected: bool) -> None:
    assert is_shard_gguf_filename(name) is expected
