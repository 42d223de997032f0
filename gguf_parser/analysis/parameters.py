# gguf_parser/analysis/parameters.py
"""
Parameter-count guess for files decoded without their tensor-info table.

Known checkpoints are recognised from (architecture, block count, a few
hyper-parameters) using llama.cpp's historical model-size table; anything
else falls back to the decoder-only transformer estimate
``blocks * (12E^2 + 13E) + vocab * E``.
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Callable, Dict, Mapping, NamedTuple, Optional

from gguf_parser.model_formats.gguf.gguf import GGUFMetadataKVs, MaterializedArray, SkippedArray

K = 1e3
M = 1e6
B = 1e9


class _Hints(NamedTuple):
    embedding_length: int
    block_count: int
    feed_forward_length: int
    expert_count: int
    head_count: int
    head_count_kv: int
    vocabulary_length: int


def _blocks(table: Dict[int, float]) -> Callable[[_Hints], Optional[float]]:
    return lambda h: table.get(h.block_count)


def _keyed(table: Dict[tuple, float], attr: str) -> Callable[[_Hints], Optional[float]]:
    return lambda h: table.get((h.block_count, getattr(h, attr)))


def _llama(h: _Hints) -> Optional[float]:
    if h.expert_count == 8:
        return {32: 47 * B, 56: 141 * B}.get(h.block_count)
    if h.block_count == 32:
        return 7 * B if h.vocabulary_length < 40000 else 8 * B
    if h.block_count == 80:
        return 65 * B if h.head_count == h.head_count_kv else 70 * B
    return {22: 1 * B, 26: 3 * B, 40: 13 * B, 48: 34 * B, 60: 30 * B}.get(h.block_count)


def _qwen2(h: _Hints) -> Optional[float]:
    if h.block_count == 24:
        return 0.5 * B if h.embedding_length == 1024 else 1 * B
    if h.block_count == 40:
        return 4 * B if h.head_count == 20 else 13 * B
    return {32: 7 * B, 80: 70 * B}.get(h.block_count)


def _arctic(h: _Hints) -> Optional[float]:
    return 480 * B if (h.expert_count, h.block_count) == (128, 35) else None


_KNOWN: Mapping[str, Callable[[_Hints], Optional[float]]] = MappingProxyType(
    {
        "llama": _llama,
        "falcon": _blocks({32: 7 * B, 60: 40 * B}),
        "grok": _blocks({64: 314 * B}),
        "gpt2": _blocks({12: 0.1 * B, 24: 0.4 * B, 36: 0.8 * B, 48: 1.5 * B}),
        "gptneox": _keyed(
            {
                (6, 512): 14 * M,
                (6, 2048): 70 * M,
                (12, 3072): 160 * M,
                (16, 8192): 1 * B,
                (24, 4096): 410 * M,
                (24, 8192): 1.4 * B,
                (32, 10240): 2.8 * B,
                (32, 16384): 6.9 * B,
                (36, 20480): 12 * B,
                (44, 24576): 20 * B,
            },
            "feed_forward_length",
        ),
        "mpt": _blocks({32: 7 * B, 48: 30 * B}),
        "baichuan": _blocks({32: 7 * B, 40: 13 * B}),
        "starcoder": _blocks({24: 1 * B, 36: 3 * B, 42: 7 * B, 40: 15 * B}),
        "refact": _blocks({32: 1 * B}),
        "bert": lambda h: (
            {384: 33 * M, 768: 109 * M}.get(h.embedding_length)
            if h.block_count == 12
            else {3: 17 * M, 6: 22 * M, 24: 335 * M}.get(h.block_count)
        ),
        "nomic-bert": _keyed({(12, 768): 137 * M}, "embedding_length"),
        "jina-bert-v2": _blocks({4: 33 * M, 12: 137 * M}),
        "bloom": lambda h: (
            {2560: 3 * B, 4096: 7 * B}.get(h.embedding_length)
            if h.block_count == 30
            else {24: 1 * B}.get(h.block_count)
        ),
        "stablelm": _blocks({24: 1 * B, 32: 3 * B, 40: 12 * B}),
        "qwen": _blocks({32: 7 * B, 40: 13 * B}),
        "qwen2": _qwen2,
        "qwen2moe": _blocks({24: 14.3 * B}),
        "phi2": _blocks({24: 1 * B, 32: 3 * B}),
        "phi3": _blocks({24: 1 * B, 32: 3 * B, 40: 14 * B}),
        "plamo": _blocks({40: 13 * B}),
        "codeshell": _blocks({42: 0.1 * B}),
        "orion": _blocks({40: 14 * B}),
        "internlm2": _blocks({32: 7 * B, 48: 20 * B}),
        "minicpm": _blocks({40: 2 * B}),
        "gemma": _blocks({18: 2 * B, 28: 7 * B}),
        "starcoder2": _blocks({30: 3 * B, 32: 7 * B, 40: 15 * B}),
        "mamba": _keyed(
            {
                (24, 768): 0.1 * B,
                (48, 1024): 0.4 * B,
                (48, 1536): 0.8 * B,
                (48, 2048): 1.5 * B,
                (64, 2560): 3 * B,
            },
            "embedding_length",
        ),
        "xverse": _blocks({32: 7 * B, 40: 13 * B, 80: 65 * B}),
        "command-r": _blocks({40: 35 * B}),
        "dbrx": _blocks({40: 132 * B}),
        "olmo": _blocks({22: 1 * B, 32: 7 * B, 80: 70 * B}),
        "arctic": _arctic,
    }
)


def _hints(kvs: GGUFMetadataKVs, arch: str) -> _Hints:
    head = kvs.int_value(f"{arch}.attention.head_count")
    vocab = kvs.int_value(f"{arch}.vocab_size", -1)
    if vocab < 0:
        tokens = kvs.array("tokenizer.ggml.tokens")
        vocab = tokens.length if isinstance(tokens, (MaterializedArray, SkippedArray)) else 0
    return _Hints(
        embedding_length=kvs.int_value(f"{arch}.embedding_length"),
        block_count=kvs.int_value(f"{arch}.block_count"),
        feed_forward_length=kvs.int_value(f"{arch}.feed_forward_length"),
        expert_count=kvs.int_value(f"{arch}.expert_count"),
        head_count=head,
        head_count_kv=kvs.int_value(f"{arch}.attention.head_count_kv", head),
        vocabulary_length=vocab,
    )


def guess_parameters(kvs: GGUFMetadataKVs) -> int:
    """Approximate parameter count from metadata alone.

    Args:
        kvs: Metadata of the file.

    Returns:
        The tabulated size of a recognised checkpoint, otherwise the
        decoder-only estimate.
    """
    arch = kvs.str_value("general.architecture", "llama")
    h = _hints(kvs, arch)
    rule = _KNOWN.get(arch)
    if rule is not None:
        known = rule(h)
        if known is not None:
            return int(known)
    e = h.embedding_length
    return h.block_count * (12 * e * e + 13 * e) + h.vocabulary_length * e
