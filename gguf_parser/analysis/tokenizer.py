# gguf_parser/analysis/tokenizer.py
"""
Tokenizer view: vocabulary/merge counts and the special token ids.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Tuple

from gguf_parser.model_formats.gguf.gguf import GGUFMetadataKVs

if TYPE_CHECKING:
    from gguf_parser.file import GGUFFile

NO_TOKEN = -1

_MODEL_KEY = "tokenizer.ggml.model"
_TOKENS_KEY = "tokenizer.ggml.tokens"
_MERGES_KEY = "tokenizer.ggml.merges"
_ADDED_TOKENS_KEY = "tokenizer.ggml.added_tokens"


@dataclass(frozen=True)
class GGUFTokenizer:
    """Tokenizer metadata of a GGUF file.

    Token ids are ``-1`` when the file does not declare them. Counts and byte
    sizes are available even when the arrays were skipped while decoding.
    """

    model: str = ""
    tokens_length: int = 0
    tokens_size: int = 0
    merges_length: int = 0
    merges_size: int = 0
    added_tokens_length: int = 0
    bos_token_id: int = NO_TOKEN
    eos_token_id: int = NO_TOKEN
    eot_token_id: int = NO_TOKEN
    eom_token_id: int = NO_TOKEN
    unknown_token_id: int = NO_TOKEN
    separator_token_id: int = NO_TOKEN
    padding_token_id: int = NO_TOKEN


def _array_shape(kvs: GGUFMetadataKVs, key: str) -> Tuple[int, int]:
    arr = kvs.array(key)
    if arr is None:
        return 0, 0
    return arr.length, arr.size


def _token_id(kvs: GGUFMetadataKVs, *keys: str) -> int:
    for key in keys:
        kv = kvs.get(key)
        if kv is not None and kv.value_type.is_numeric:
            return int(kv.value)
    return NO_TOKEN


def tokenizer_of(gf: "GGUFFile") -> GGUFTokenizer:
    """Extract the tokenizer view of a parsed file."""
    kvs = gf.kvs
    tokens_length, tokens_size = _array_shape(kvs, _TOKENS_KEY)
    merges_length, merges_size = _array_shape(kvs, _MERGES_KEY)
    added_length, _ = _array_shape(kvs, _ADDED_TOKENS_KEY)
    return GGUFTokenizer(
        model=kvs.str_value(_MODEL_KEY),
        tokens_length=tokens_length,
        tokens_size=tokens_size,
        merges_length=merges_length,
        merges_size=merges_size,
        added_tokens_length=added_length,
        bos_token_id=_token_id(kvs, "tokenizer.ggml.bos_token_id"),
        eos_token_id=_token_id(kvs, "tokenizer.ggml.eos_token_id"),
        eot_token_id=_token_id(kvs, "tokenizer.ggml.eot_token_id"),
        eom_token_id=_token_id(kvs, "tokenizer.ggml.eom_token_id"),
        unknown_token_id=_token_id(kvs, "tokenizer.ggml.unknown_token_id"),
        # llama.cpp writes the misspelled key
        separator_token_id=_token_id(
            kvs, "tokenizer.ggml.separator_token_id", "tokenizer.ggml.seperator_token_id"
        ),
        padding_token_id=_token_id(kvs, "tokenizer.ggml.padding_token_id"),
    )
