"""
gguf_parser
===========

Pure-Python reader for GGUF model containers: decodes headers, metadata and
tensor-info tables without touching tensor payloads (mmap, buffered or ranged
HTTP sources), normalizes the architecture/tokenizer description and estimates
the RAM/VRAM a llama.cpp or stable-diffusion.cpp run would need.
"""
from __future__ import annotations

from importlib.metadata import version as _pkg_version

from loguru import logger

from gguf_parser.errors import (
    GGUFError,
    GGUFParseError,
    MalformedHeaderError,
    NetworkError,
    ReadCancelledError,
    TruncatedReadError,
    UnsupportedValueTypeError,
)
from gguf_parser.file import (
    GGUFFile,
    ReadOptions,
    parse_gguf_file,
    parse_gguf_file_from_huggingface,
    parse_gguf_file_from_modelscope,
    parse_gguf_file_remote,
)
from gguf_parser.model_formats.gguf.gguf_filename import GGUFFilename, parse_gguf_filename

__all__ = [
    "__version__",
    "GGUFError",
    "GGUFFile",
    "GGUFFilename",
    "GGUFParseError",
    "MalformedHeaderError",
    "NetworkError",
    "ReadCancelledError",
    "ReadOptions",
    "TruncatedReadError",
    "UnsupportedValueTypeError",
    "parse_gguf_file",
    "parse_gguf_file_from_huggingface",
    "parse_gguf_file_from_modelscope",
    "parse_gguf_file_remote",
    "parse_gguf_filename",
]

try:
    # Read version dynamically from installed package metadata
    __version__: str = _pkg_version("gguf-parser")
except Exception:  # pragma: no cover - fallback for development environments
    __version__ = "0.0.0-dev"

# Library code only emits records; gguf_parser.logging.configure_logging enables them.
logger.disable("gguf_parser")
